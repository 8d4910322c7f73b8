"""Base calendar provider interface."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import pytz

from ..config import Settings
from ..database import CalendarEventDB
from ..models import CalendarInfo, ChangeSet, Provider, ProviderEvent, ProviderUserInfo, TokenSet

logger = logging.getLogger(__name__)

# Names of the private properties that carry back-references to local rows
BACKREF_EVENT_ID = "pit_event_id"
BACKREF_EVENT_TYPE = "pit_event_type"
BACKREF_APPEARANCE_ID = "pit_appearance_id"


class CalendarServiceError(Exception):
    """Base exception for calendar provider errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors."""
    pass


class RateLimitError(CalendarServiceError):
    """Rate limiting errors."""
    pass


class CalendarNotFoundError(CalendarServiceError):
    """Calendar not found errors."""
    pass


class EventNotFoundError(CalendarServiceError):
    """Event not found errors."""
    pass


class SyncTokenExpiredError(CalendarServiceError):
    """The provider rejected the incremental sync cursor; a full resync is needed."""
    pass


class ProviderNotConfiguredError(CalendarServiceError):
    """No OAuth application credentials are configured for the provider."""

    def __init__(self, provider: Provider):
        super().__init__(f"{provider.label} integration is not configured")
        self.provider = provider


class BaseCalendarProvider(ABC):
    """Abstract base class for OAuth calendar providers.

    Every call that touches the provider API takes the plaintext access
    token as its first argument; token storage and refresh happen upstream.
    """

    provider: Provider

    def __init__(self, settings: Settings):
        """Initialize calendar provider.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.logger = logger.getChild(self.provider.value)
        self._rate_limiter = asyncio.Semaphore(settings.max_concurrent_requests)

    @property
    def redirect_uri(self) -> str:
        return self.settings.redirect_uri(self.provider)

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Whether client credentials are available."""
        pass

    @abstractmethod
    def get_auth_url(self, state: str, code_verifier: Optional[str] = None) -> str:
        """Build the consent URL the user is redirected to.

        Args:
            state: CSRF state token bound to the user
            code_verifier: PKCE verifier, if the provider uses one

        Returns:
            Authorization URL
        """
        pass

    def new_code_verifier(self) -> Optional[str]:
        """Create a PKCE verifier for a new authorization, if the provider uses one."""
        return None

    @abstractmethod
    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        """Exchange an authorization code for tokens.

        Raises:
            AuthenticationError: If the provider rejects the code
        """
        pass

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenSet:
        """Obtain a fresh access token.

        Raises:
            AuthenticationError: If the refresh token is rejected
        """
        pass

    @abstractmethod
    async def get_user_info(self, access_token: str) -> ProviderUserInfo:
        """Identity of the authorized account."""
        pass

    @abstractmethod
    async def get_calendars(self, access_token: str) -> List[CalendarInfo]:
        """Calendars the account can write to.

        Raises:
            CalendarServiceError: If calendars cannot be retrieved
        """
        pass

    @abstractmethod
    async def create_event(self, access_token: str, calendar_id: str, event: CalendarEventDB) -> str:
        """Create a provider copy of a local event.

        Returns:
            Provider event ID

        Raises:
            CalendarServiceError: If the event cannot be created
        """
        pass

    @abstractmethod
    async def update_event(
        self, access_token: str, calendar_id: str, remote_id: str, event: CalendarEventDB
    ) -> str:
        """Overwrite the provider copy of a local event.

        Returns:
            Provider event ID

        Raises:
            EventNotFoundError: If the provider copy no longer exists
            CalendarServiceError: If the event cannot be updated
        """
        pass

    @abstractmethod
    async def delete_event(self, access_token: str, calendar_id: str, remote_id: str) -> bool:
        """Delete a provider event. Already-deleted events count as success.

        Raises:
            CalendarServiceError: If the provider refuses the delete
        """
        pass

    @abstractmethod
    async def get_events(
        self, access_token: str, calendar_id: str, sync_token: Optional[str] = None
    ) -> ChangeSet[ProviderEvent]:
        """Fetch changes since ``sync_token``, or a full window snapshot.

        Raises:
            SyncTokenExpiredError: If the provider no longer accepts the cursor
            CalendarServiceError: If events cannot be retrieved
        """
        pass

    async def close(self) -> None:
        pass

    async def _rate_limited_request(self, coro):
        """Execute a coroutine with concurrency limiting.

        Args:
            coro: Coroutine to execute

        Returns:
            Coroutine result
        """
        async with self._rate_limiter:
            return await coro

    # Shared event translation helpers

    def _full_sync_start(self) -> datetime:
        return datetime.now(pytz.UTC) - timedelta(days=self.settings.sync_config.sync_past_days)

    def _event_timezone(self, event: CalendarEventDB) -> str:
        tz_name = event.timezone or self.settings.sync_config.default_timezone
        if tz_name not in pytz.all_timezones_set:
            raise CalendarServiceError(f"Unknown timezone '{tz_name}' on local event {event.id}")
        return tz_name

    def _event_body(
        self, translate: Callable[[CalendarEventDB], Dict[str, Any]], event: CalendarEventDB
    ) -> Dict[str, Any]:
        """Build the provider resource for a local event.

        Raises:
            CalendarServiceError: If the local row cannot be expressed for the provider
        """
        try:
            return translate(event)
        except (KeyError, TypeError, ValueError) as e:
            raise CalendarServiceError(f"Cannot translate local event {event.id}: {e}")

    @staticmethod
    def _event_end(event: CalendarEventDB) -> datetime:
        if event.end_datetime is not None:
            return event.end_datetime
        if event.is_all_day:
            return event.start_datetime
        return event.start_datetime + timedelta(hours=1)

    @staticmethod
    def _all_day_bounds(event: CalendarEventDB):
        """Wire dates for an all-day event; the end date is exclusive."""
        start_date = event.start_datetime.date()
        last_day = BaseCalendarProvider._event_end(event).date()
        if last_day < start_date:
            last_day = start_date
        return start_date, last_day + timedelta(days=1)

    @staticmethod
    def _backrefs(event: CalendarEventDB) -> Dict[str, str]:
        refs = {
            BACKREF_EVENT_ID: str(event.id),
            BACKREF_EVENT_TYPE: event.event_type or 'other',
        }
        if event.appearance_id:
            refs[BACKREF_APPEARANCE_ID] = str(event.appearance_id)
        return refs

    @staticmethod
    def _parse_int(value: Any) -> Optional[int]:
        try:
            return int(value) if value not in (None, "") else None
        except (TypeError, ValueError):
            return None
