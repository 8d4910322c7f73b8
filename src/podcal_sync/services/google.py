"""Google Calendar provider."""

import asyncio
import secrets
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, List, Optional

from dateutil import parser as date_parser
from google.auth.exceptions import GoogleAuthError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import httpx
import pytz
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import (
    BACKREF_APPEARANCE_ID, BACKREF_EVENT_ID, BACKREF_EVENT_TYPE,
    AuthenticationError, BaseCalendarProvider, CalendarNotFoundError, CalendarServiceError,
    EventNotFoundError, RateLimitError, SyncTokenExpiredError,
)
from ..config import Settings
from ..database import CalendarEventDB
from ..models import CalendarInfo, ChangeSet, Provider, ProviderEvent, ProviderUserInfo, TokenSet

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
USERINFO_URI = "https://www.googleapis.com/oauth2/v2/userinfo"
DEFAULT_CALENDAR_COLOR = "#4285f4"
WRITABLE_ROLES = ("owner", "writer")


class GoogleCalendarProvider(BaseCalendarProvider):
    """Google Calendar over the v3 API.

    OAuth runs through ``google_auth_oauthlib``'s web flow; calendar calls go
    through the discovery client, executed in the default thread pool since
    the client is blocking.
    """

    provider = Provider.GOOGLE

    def __init__(self, settings: Settings, service_factory: Optional[Callable[[str], Any]] = None):
        """Initialize Google Calendar provider.

        Args:
            settings: Application settings
            service_factory: Builds a calendar API resource from an access token
        """
        super().__init__(settings)
        self._service_factory = service_factory or self._build_service

    @property
    def is_configured(self) -> bool:
        return self.settings.provider_configured(Provider.GOOGLE)

    def _client_config(self) -> Dict[str, Any]:
        return {
            "web": {
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
                "redirect_uris": [self.redirect_uri],
            }
        }

    def _flow(self, code_verifier: Optional[str] = None) -> Flow:
        return Flow.from_client_config(
            self._client_config(),
            scopes=self.settings.google_scopes,
            redirect_uri=self.redirect_uri,
            code_verifier=code_verifier,
            autogenerate_code_verifier=False,
        )

    def _build_service(self, access_token: str):
        credentials = Credentials(token=access_token)
        return build('calendar', 'v3', credentials=credentials, cache_discovery=False)

    async def _execute(self, request_factory: Callable[[], Any]) -> Dict[str, Any]:
        """Run a blocking API request in the thread pool.

        Raises:
            HttpError: If the API answered with an error status
            CalendarServiceError: If the request never got an answer
        """
        try:
            return await self._rate_limited_request(
                asyncio.get_event_loop().run_in_executor(None, lambda: request_factory().execute())
            )
        except (OSError, TransportError) as e:
            raise CalendarServiceError(f"Google API request failed: {e}")

    # OAuth

    def new_code_verifier(self) -> Optional[str]:
        return secrets.token_urlsafe(64)[:96]

    def get_auth_url(self, state: str, code_verifier: Optional[str] = None) -> str:
        auth_url, _ = self._flow(code_verifier).authorization_url(
            access_type='offline',
            prompt='consent',
            include_granted_scopes='true',
            state=state,
        )
        return auth_url

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        flow = self._flow(code_verifier)
        try:
            await asyncio.get_event_loop().run_in_executor(None, lambda: flow.fetch_token(code=code))
        except Exception as e:
            raise AuthenticationError(f"Google token exchange failed: {e}")
        return self._token_set(flow.credentials)

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            scopes=self.settings.google_scopes,
        )
        try:
            await asyncio.get_event_loop().run_in_executor(None, lambda: credentials.refresh(Request()))
        except (GoogleAuthError, OSError) as e:
            raise AuthenticationError(f"Google token refresh failed: {e}")
        return self._token_set(credentials)

    @staticmethod
    def _token_set(credentials: Credentials) -> TokenSet:
        expires_in = 3600
        if credentials.expiry is not None:
            # google-auth reports expiry as naive UTC
            now = datetime.now(pytz.UTC).replace(tzinfo=None)
            expires_in = max(int((credentials.expiry - now).total_seconds()), 0)
        return TokenSet(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_in=expires_in,
        )

    async def get_user_info(self, access_token: str) -> ProviderUserInfo:
        async with httpx.AsyncClient(timeout=self.settings.crud_timeout_seconds) as client:
            response = await client.get(USERINFO_URI, headers={"Authorization": f"Bearer {access_token}"})
        if response.status_code != 200:
            raise AuthenticationError(
                f"Google user info request failed with status {response.status_code}",
                status_code=response.status_code,
            )
        data = response.json()
        return ProviderUserInfo(id=data.get('id'), email=data.get('email'), name=data.get('name'))

    # Calendars

    async def get_calendars(self, access_token: str) -> List[CalendarInfo]:
        service = self._service_factory(access_token)
        try:
            result = await self._execute(lambda: service.calendarList().list())
        except HttpError as e:
            raise self._translate_error(e, "Failed to list Google calendars")

        calendars = []
        for item in result.get('items', []):
            if item.get('accessRole') not in WRITABLE_ROLES:
                continue
            calendars.append(CalendarInfo(
                id=item['id'],
                name=item.get('summaryOverride') or item.get('summary') or item['id'],
                primary=bool(item.get('primary', False)),
                color=item.get('backgroundColor') or DEFAULT_CALENDAR_COLOR,
            ))
        return calendars

    # Events

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type(RateLimitError)
    )
    async def create_event(self, access_token: str, calendar_id: str, event: CalendarEventDB) -> str:
        service = self._service_factory(access_token)
        body = self._event_body(self._to_google_format, event)
        try:
            created = await self._execute(
                lambda: service.events().insert(calendarId=calendar_id, body=body)
            )
        except HttpError as e:
            raise self._translate_error(e, f"Failed to create Google event for {event.id}")
        self.logger.debug(f"Created Google event {created.get('id')} for local event {event.id}")
        return created['id']

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type(RateLimitError)
    )
    async def update_event(
        self, access_token: str, calendar_id: str, remote_id: str, event: CalendarEventDB
    ) -> str:
        service = self._service_factory(access_token)
        body = self._event_body(self._to_google_format, event)
        try:
            updated = await self._execute(
                lambda: service.events().update(calendarId=calendar_id, eventId=remote_id, body=body)
            )
        except HttpError as e:
            if e.resp.status in (404, 410):
                raise EventNotFoundError(f"Google event {remote_id} not found", status_code=e.resp.status)
            raise self._translate_error(e, f"Failed to update Google event {remote_id}")
        return updated.get('id', remote_id)

    async def delete_event(self, access_token: str, calendar_id: str, remote_id: str) -> bool:
        service = self._service_factory(access_token)
        try:
            await self._execute(
                lambda: service.events().delete(calendarId=calendar_id, eventId=remote_id)
            )
        except HttpError as e:
            if e.resp.status in (404, 410):
                self.logger.debug(f"Google event {remote_id} already gone ({e.resp.status})")
                return True
            raise self._translate_error(e, f"Failed to delete Google event {remote_id}")
        return True

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type(RateLimitError)
    )
    async def get_events(
        self, access_token: str, calendar_id: str, sync_token: Optional[str] = None
    ) -> ChangeSet[ProviderEvent]:
        service = self._service_factory(access_token)
        events: List[ProviderEvent] = []
        next_sync_token: Optional[str] = None
        page_token: Optional[str] = None

        while True:
            params: Dict[str, Any] = {
                'calendarId': calendar_id,
                'maxResults': self.settings.sync_config.pull_page_size,
                'singleEvents': True,
            }
            if sync_token:
                params['syncToken'] = sync_token
                params['showDeleted'] = True
            else:
                params['timeMin'] = self._full_sync_start().isoformat()
            if page_token:
                params['pageToken'] = page_token

            try:
                result = await self._execute(lambda: service.events().list(**params))
            except HttpError as e:
                if e.resp.status == 410 and sync_token:
                    self.logger.warning("Google sync token expired/invalid (410)")
                    raise SyncTokenExpiredError("Google sync token expired", status_code=410)
                raise self._translate_error(e, f"Failed to list Google events for {calendar_id}")

            for item in result.get('items', []):
                try:
                    events.append(self._from_google_format(item))
                except (KeyError, ValueError) as e:
                    self.logger.warning(f"Skipping unparseable Google event {item.get('id')}: {e}")

            page_token = result.get('nextPageToken')
            next_sync_token = result.get('nextSyncToken') or next_sync_token
            if not page_token:
                break

        return ChangeSet[ProviderEvent](
            events=events,
            next_sync_token=next_sync_token,
            used_sync_token=bool(sync_token),
        )

    # Translation

    def _to_google_format(self, event: CalendarEventDB) -> Dict[str, Any]:
        """Convert a local event to a Google Calendar resource."""
        tz_name = self._event_timezone(event)
        body: Dict[str, Any] = {
            'summary': event.title,
            'description': event.description or '',
            'location': event.location or '',
            'extendedProperties': {'private': self._backrefs(event)},
        }

        if event.is_all_day:
            start_date, end_date = self._all_day_bounds(event)
            body['start'] = {'date': start_date.isoformat()}
            body['end'] = {'date': end_date.isoformat()}
        else:
            tz = pytz.timezone(tz_name)
            body['start'] = {
                'dateTime': tz.localize(event.start_datetime).isoformat(),
                'timeZone': tz_name,
            }
            body['end'] = {
                'dateTime': tz.localize(self._event_end(event)).isoformat(),
                'timeZone': tz_name,
            }

        if event.reminders:
            body['reminders'] = {
                'useDefault': False,
                'overrides': [
                    {'method': r.get('method', 'popup'), 'minutes': int(r.get('minutes', 30))}
                    for r in event.reminders
                ],
            }
        return body

    def _from_google_format(self, item: Dict[str, Any]) -> ProviderEvent:
        """Convert a Google Calendar resource to a provider-neutral event."""
        remote_id = item['id']
        if item.get('status') == 'cancelled':
            return ProviderEvent(remote_id=remote_id, cancelled=True)

        private = item.get('extendedProperties', {}).get('private', {})
        start = item.get('start', {})
        end = item.get('end', {})
        all_day = 'date' in start and 'dateTime' not in start
        tz_name = start.get('timeZone') or self.settings.sync_config.default_timezone

        if all_day:
            start_dt = datetime.combine(date.fromisoformat(start['date']), time.min)
            if end.get('date'):
                last_day = date.fromisoformat(end['date']) - timedelta(days=1)
            else:
                last_day = start_dt.date()
            end_dt = datetime.combine(last_day, time(23, 59, 59))
        else:
            start_dt = self._to_wall_clock(start['dateTime'], tz_name)
            end_dt = self._to_wall_clock(end['dateTime'], tz_name) if end.get('dateTime') else None

        updated = date_parser.isoparse(item['updated']) if item.get('updated') else None
        return ProviderEvent(
            remote_id=remote_id,
            title=item.get('summary') or '(No title)',
            description=item.get('description'),
            location=item.get('location'),
            start=start_dt,
            end=end_dt,
            is_all_day=all_day,
            timezone=tz_name,
            html_link=item.get('htmlLink'),
            updated=updated,
            local_event_id=self._parse_int(private.get(BACKREF_EVENT_ID)),
            local_event_type=private.get(BACKREF_EVENT_TYPE),
            local_appearance_id=self._parse_int(private.get(BACKREF_APPEARANCE_ID)),
        )

    @staticmethod
    def _to_wall_clock(value: str, tz_name: str) -> datetime:
        parsed = date_parser.isoparse(value)
        if parsed.tzinfo is None:
            return parsed
        return parsed.astimezone(pytz.timezone(tz_name)).replace(tzinfo=None)

    def _translate_error(self, error: HttpError, context: str) -> CalendarServiceError:
        status = error.resp.status
        if status == 429:
            self.logger.warning("Google API rate limited, retrying...")
            return RateLimitError(f"{context}: rate limited", status_code=status)
        if status in (401, 403):
            return AuthenticationError(f"{context}: {error}", status_code=status)
        if status == 404:
            return CalendarNotFoundError(f"{context}: not found", status_code=status)
        return CalendarServiceError(f"{context}: {error}", status_code=status)
