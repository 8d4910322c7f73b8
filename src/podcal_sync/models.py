"""Data models for podcast calendar synchronization."""

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Generic, List, Optional, TypeVar
from dataclasses import dataclass, field

from pydantic import BaseModel, Field, validator
import pytz


class Provider(str, Enum):
    """External calendar providers."""

    GOOGLE = "google"
    OUTLOOK = "outlook"

    @property
    def label(self) -> str:
        return "Google Calendar" if self is Provider.GOOGLE else "Outlook Calendar"

    @property
    def default_calendar_name(self) -> str:
        return "Primary" if self is Provider.GOOGLE else "Calendar"


class SyncDirection(str, Enum):
    """Which passes a sync run performs."""

    BOTH = "both"
    PUSH = "push"
    PULL = "pull"

    @property
    def pushes(self) -> bool:
        return self in (SyncDirection.BOTH, SyncDirection.PUSH)

    @property
    def pulls(self) -> bool:
        return self in (SyncDirection.BOTH, SyncDirection.PULL)


class InvalidTransitionError(ValueError):
    """Raised when an event is moved into a sync status it cannot reach."""

    def __init__(self, current: "SyncStatus", target: "SyncStatus"):
        super().__init__(f"Invalid sync status transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


class SyncStatus(str, Enum):
    """Per-event sync state.

    A row in ``pending_delete`` is waiting for its provider copies to go away.
    It is terminal: the row is removed once every remote delete succeeds, and
    a failed delete leaves it in place with an error message for the next run.
    """

    LOCAL_ONLY = "local_only"
    PENDING_SYNC = "pending_sync"
    PENDING_DELETE = "pending_delete"
    SYNCED = "synced"
    SYNC_ERROR = "sync_error"

    def can_transition_to(self, target: "SyncStatus") -> bool:
        if target is self:
            return True
        return target in _TRANSITIONS[self]

    def transition(self, target: "SyncStatus") -> "SyncStatus":
        """Validate a status change.

        Args:
            target: Requested status

        Returns:
            The target status

        Raises:
            InvalidTransitionError: If the move is not allowed
        """
        target = SyncStatus(target)
        if not self.can_transition_to(target):
            raise InvalidTransitionError(self, target)
        return target


_TRANSITIONS: Dict[SyncStatus, FrozenSet[SyncStatus]] = {
    SyncStatus.LOCAL_ONLY: frozenset({
        SyncStatus.PENDING_SYNC, SyncStatus.PENDING_DELETE, SyncStatus.SYNCED, SyncStatus.SYNC_ERROR,
    }),
    SyncStatus.PENDING_SYNC: frozenset({
        SyncStatus.LOCAL_ONLY, SyncStatus.PENDING_DELETE, SyncStatus.SYNCED, SyncStatus.SYNC_ERROR,
    }),
    SyncStatus.PENDING_DELETE: frozenset(),
    SyncStatus.SYNCED: frozenset({
        SyncStatus.LOCAL_ONLY, SyncStatus.PENDING_SYNC, SyncStatus.PENDING_DELETE, SyncStatus.SYNC_ERROR,
    }),
    SyncStatus.SYNC_ERROR: frozenset({
        SyncStatus.LOCAL_ONLY, SyncStatus.PENDING_SYNC, SyncStatus.PENDING_DELETE, SyncStatus.SYNCED,
    }),
}


class EventType(str, Enum):
    """Calendar event categories."""

    RECORDING = "recording"
    AIR_DATE = "air_date"
    PREP_CALL = "prep_call"
    FOLLOW_UP = "follow_up"
    PROMOTION = "promotion"
    DEADLINE = "deadline"
    PODREC = "podrec"  # legacy recording type
    OTHER = "other"

    @property
    def label(self) -> str:
        return _EVENT_TYPE_LABELS[self]


_EVENT_TYPE_LABELS = {
    EventType.RECORDING: "Recording",
    EventType.AIR_DATE: "Air Date",
    EventType.PREP_CALL: "Prep Call",
    EventType.FOLLOW_UP: "Follow Up",
    EventType.PROMOTION: "Promotion",
    EventType.DEADLINE: "Deadline",
    EventType.PODREC: "Podrec",
    EventType.OTHER: "Other",
}


# Appearance date field -> event type it produces
DATE_FIELD_EVENT_TYPES: Dict[str, EventType] = {
    "record_date": EventType.RECORDING,
    "air_date": EventType.AIR_DATE,
    "promotion_date": EventType.PROMOTION,
}


class ProviderEvent(BaseModel):
    """Provider-neutral view of a remote calendar event.

    ``start``/``end`` are naive wall-clock values in ``timezone``. For
    all-day events ``end`` is the inclusive last day at 23:59:59.
    """

    remote_id: str = Field(..., description="Provider event ID")
    title: str = Field("(No title)", description="Event title")
    description: Optional[str] = Field(None, description="Event description")
    location: Optional[str] = Field(None, description="Event location")
    start: Optional[datetime] = Field(None, description="Start, wall-clock")
    end: Optional[datetime] = Field(None, description="End, wall-clock")
    is_all_day: bool = Field(False, description="Whether event is all-day")
    timezone: Optional[str] = Field(None, description="IANA timezone")
    cancelled: bool = Field(False, description="Provider reports the event as removed")
    html_link: Optional[str] = Field(None, description="Link to the event in the provider UI")
    updated: Optional[datetime] = Field(None, description="Provider modification time")
    local_event_id: Optional[int] = Field(None, description="Back-reference to the local row")
    local_event_type: Optional[str] = Field(None, description="Back-reference event type")
    local_appearance_id: Optional[int] = Field(None, description="Back-reference appearance")

    @validator('start', 'end', pre=True)
    def strip_timezone(cls, v):
        """Wall-clock values are stored without tzinfo."""
        if isinstance(v, datetime) and v.tzinfo is not None:
            return v.replace(tzinfo=None)
        return v

    @property
    def is_echo(self) -> bool:
        """True when the event was originally pushed from this system."""
        return self.local_event_id is not None


class CalendarInfo(BaseModel):
    """A writable calendar offered by a provider."""

    id: str
    name: str
    primary: bool = False
    color: Optional[str] = None


class ProviderUserInfo(BaseModel):
    """Identity of the account that authorized a connection."""

    id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


class TokenSet(BaseModel):
    """Result of an authorization-code exchange or token refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = Field(3600, description="Lifetime of the access token in seconds")
    token_type: Optional[str] = "Bearer"
    issued_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.expires_in)


T = TypeVar('T')


@dataclass
class ChangeSet(Generic[T]):
    events: List[T]
    next_sync_token: Optional[str]
    used_sync_token: bool


@dataclass
class SyncResults:
    """Counters produced by a single sync run."""

    pushed: int = 0
    pulled: int = 0
    updated: int = 0
    deleted: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pushed': self.pushed,
            'pulled': self.pulled,
            'updated': self.updated,
            'deleted': self.deleted,
            'errors': list(self.errors),
        }


@dataclass
class EventSyncOutcome:
    """Result of syncing one local event to a provider."""

    success: bool
    remote_id: Optional[str] = None
    created: bool = False
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class CleanupStats:
    enabled: bool
    days_old: int
    cutoff: Optional[datetime]
    eligible: int


class SyncConfiguration(BaseModel):
    """Sync tuning knobs, overridable with ``SYNC_CONFIG__*`` variables."""

    sync_past_days: int = Field(30, ge=0, description="Push window into the past (0 = unbounded)")
    sync_future_days: int = Field(365, ge=0, description="Push window into the future (0 = unbounded)")
    push_batch_limit: int = Field(50, ge=1)
    delete_batch_limit: int = Field(20, ge=1)
    pull_page_size: int = Field(100, ge=1, le=250)
    token_refresh_margin_seconds: int = Field(300, ge=0)
    oauth_state_ttl_seconds: int = Field(600, ge=30)
    default_timezone: str = Field("America/Chicago", description="Timezone for generated events")
    default_event_start: str = Field("09:00", description="Start time for events created from appearance dates")
    default_event_duration_minutes: int = Field(60, ge=1)
    sync_interval_minutes: int = Field(15, ge=1)
    min_resync_minutes: int = Field(10, ge=0)
    login_resync_minutes: int = Field(5, ge=0)
    max_connections_per_run: int = Field(10, ge=1)
    delay_between_users_seconds: float = Field(0.5, ge=0)
    cleanup_enabled: bool = Field(True)
    cleanup_days_old: int = Field(90, ge=0, description="0 disables cleanup")

    @validator('default_timezone')
    def validate_timezone(cls, v):
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @validator('default_event_start')
    def validate_start_time(cls, v):
        datetime.strptime(v, "%H:%M")
        return v

    def push_window(self, now: datetime):
        """Return the (earliest, latest) start bounds for the push pass."""
        earliest = now - timedelta(days=self.sync_past_days) if self.sync_past_days else None
        latest = now + timedelta(days=self.sync_future_days) if self.sync_future_days else None
        return earliest, latest


def parse_date(value: Any) -> Optional[date]:
    """Parse an appearance date field; empty values mean "no date"."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text or text.startswith("0000-00-00"):
        return None
    return datetime.strptime(text[:10], "%Y-%m-%d").date()
