"""Repositories for calendar connections and calendar events.

Every read and write is scoped by an explicit ``UserContext``; nothing here
consults ambient request state.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_, func
import pytz

from .database import (
    AppearanceDB, CalendarConnectionDB, CalendarEventDB, DatabaseManager, PodcastDB, utcnow
)
from .models import EventType, Provider, ProviderEvent, ProviderUserInfo, SyncDirection, SyncStatus

logger = logging.getLogger(__name__)

# Fields a user (or the trigger layer) may edit on an event
EVENT_CONTENT_FIELDS = (
    'title', 'description', 'location', 'start_datetime', 'end_datetime',
    'is_all_day', 'timezone', 'event_type', 'appearance_id', 'podcast_id', 'reminders',
)
EVENT_WRITABLE_FIELDS = EVENT_CONTENT_FIELDS + ('sync_enabled',)

SORTABLE_COLUMNS = ('start_datetime', 'created_at', 'updated_at', 'title', 'event_type')

# Statuses the cleanup job may remove
CLEANUP_STATUSES = (SyncStatus.SYNCED.value, SyncStatus.LOCAL_ONLY.value, SyncStatus.SYNC_ERROR.value)

TOKEN_REFRESH_FAILED_PREFIX = "Token refresh failed"


@dataclass(frozen=True)
class UserContext:
    """The user on whose behalf an operation runs."""

    user_id: int


@dataclass
class EventQuery:
    """Filters and paging for event listings."""

    appearance_id: Optional[int] = None
    podcast_id: Optional[int] = None
    event_type: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    sync_status: Optional[str] = None
    orderby: str = 'start_datetime'
    order: str = 'ASC'
    page: int = 1
    per_page: int = 50

    def __post_init__(self):
        if self.orderby not in SORTABLE_COLUMNS:
            self.orderby = 'start_datetime'
        self.order = 'DESC' if str(self.order).upper() == 'DESC' else 'ASC'
        self.per_page = min(max(int(self.per_page), 1), 100)
        self.page = max(int(self.page), 1)


class ConnectionStore:
    """Persistence for per-user provider connections.

    Token columns hold ciphertext only; encryption belongs to the token manager.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    def get(self, ctx: UserContext, provider: Provider) -> Optional[CalendarConnectionDB]:
        with self.db.get_session() as session:
            return session.query(CalendarConnectionDB).filter(
                CalendarConnectionDB.user_id == ctx.user_id,
                CalendarConnectionDB.provider == provider.value,
            ).first()

    def list_for_user(self, ctx: UserContext) -> List[CalendarConnectionDB]:
        with self.db.get_session() as session:
            return session.query(CalendarConnectionDB).filter(
                CalendarConnectionDB.user_id == ctx.user_id
            ).order_by(CalendarConnectionDB.id).all()

    def save_connection(
        self,
        ctx: UserContext,
        provider: Provider,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime,
        user_info: ProviderUserInfo,
    ) -> CalendarConnectionDB:
        """Create or replace the connection after a successful authorization.

        Args:
            ctx: Owning user
            provider: Provider that was authorized
            access_token: Encrypted access token
            refresh_token: Encrypted refresh token, None keeps the stored one
            expires_at: Access token expiry (UTC)
            user_info: Identity of the authorized account

        Returns:
            The persisted connection
        """
        with self.db.get_session() as session:
            conn = session.query(CalendarConnectionDB).filter(
                CalendarConnectionDB.user_id == ctx.user_id,
                CalendarConnectionDB.provider == provider.value,
            ).first()
            if conn is None:
                conn = CalendarConnectionDB(
                    user_id=ctx.user_id,
                    provider=provider.value,
                    sync_enabled=True,
                    sync_direction=SyncDirection.BOTH.value,
                )
                session.add(conn)

            conn.access_token = access_token
            if refresh_token:
                conn.refresh_token = refresh_token
            conn.token_expires_at = _naive_utc(expires_at)
            conn.provider_email = user_info.email
            conn.provider_name = user_info.name
            conn.connected_at = utcnow()
            conn.sync_error = None
            session.commit()
            return conn

    def update_tokens(
        self,
        connection_id: int,
        access_token: str,
        expires_at: datetime,
        refresh_token: Optional[str] = None,
    ) -> None:
        with self.db.get_session() as session:
            conn = session.get(CalendarConnectionDB, connection_id)
            if conn is None:
                return
            conn.access_token = access_token
            conn.token_expires_at = _naive_utc(expires_at)
            if refresh_token:
                conn.refresh_token = refresh_token
            conn.sync_error = None
            session.commit()

    def select_calendar(
        self, ctx: UserContext, provider: Provider, calendar_id: str, calendar_name: Optional[str] = None
    ) -> Optional[CalendarConnectionDB]:
        with self.db.get_session() as session:
            conn = self._for_update(session, ctx, provider)
            if conn is None:
                return None
            if conn.calendar_id != calendar_id:
                # A different calendar invalidates the incremental cursor
                conn.last_sync_token = None
            conn.calendar_id = calendar_id
            conn.calendar_name = calendar_name or provider.default_calendar_name
            conn.sync_enabled = True
            session.commit()
            return conn

    def update_settings(
        self,
        ctx: UserContext,
        provider: Provider,
        sync_enabled: Optional[bool] = None,
        sync_direction: Optional[SyncDirection] = None,
    ) -> Optional[CalendarConnectionDB]:
        with self.db.get_session() as session:
            conn = self._for_update(session, ctx, provider)
            if conn is None:
                return None
            if sync_enabled is not None:
                conn.sync_enabled = bool(sync_enabled)
            if sync_direction is not None:
                conn.sync_direction = SyncDirection(sync_direction).value
            session.commit()
            return conn

    def disconnect(self, ctx: UserContext, provider: Provider) -> bool:
        """Remove a connection and unlink the user's events from that provider.

        Events left without any provider link fall back to ``local_only``;
        rows already waiting for deletion are removed outright.

        Returns:
            True if a connection was removed
        """
        id_column = getattr(CalendarEventDB, f"{provider.value}_event_id")
        with self.db.get_session() as session:
            conn = self._for_update(session, ctx, provider)
            if conn is None:
                return False
            session.delete(conn)

            linked = session.query(CalendarEventDB).filter(
                CalendarEventDB.user_id == ctx.user_id,
                id_column.isnot(None),
            ).all()
            for event in linked:
                event.set_remote(provider, None, None)
                if event.linked_providers():
                    continue
                if event.status is SyncStatus.PENDING_DELETE:
                    session.delete(event)
                    continue
                event.sync_status = event.status.transition(SyncStatus.LOCAL_ONLY).value
                event.sync_error_message = None

            session.commit()
            logger.info(f"User {ctx.user_id} disconnected {provider.value}; unlinked {len(linked)} events")
            return True

    def set_sync_error(self, connection_id: int, message: Optional[str]) -> None:
        with self.db.get_session() as session:
            conn = session.get(CalendarConnectionDB, connection_id)
            if conn is not None:
                conn.sync_error = message
                session.commit()

    def record_sync(
        self, connection_id: int, next_sync_token: Optional[str], errors: List[str]
    ) -> None:
        """Store the outcome of a full sync run on the connection."""
        with self.db.get_session() as session:
            conn = session.get(CalendarConnectionDB, connection_id)
            if conn is None:
                return
            if next_sync_token:
                conn.last_sync_token = next_sync_token
            conn.last_sync_at = utcnow()
            conn.sync_error = "; ".join(errors) if errors else None
            session.commit()

    def active_connection(self, ctx: UserContext) -> Optional[CalendarConnectionDB]:
        """First connection that is enabled and has a calendar selected."""
        for provider in Provider:
            conn = self.get(ctx, provider)
            if conn is not None and conn.sync_enabled and conn.calendar_id:
                return conn
        return None

    def has_active_connection(self, ctx: UserContext) -> bool:
        return self.active_connection(ctx) is not None

    def due_for_sync(self, min_age: timedelta, limit: int) -> List[CalendarConnectionDB]:
        """Connections the batch job should sync next, stalest first.

        Connections whose token refresh failed are skipped until the user
        reconnects.
        """
        cutoff = utcnow() - min_age
        with self.db.get_session() as session:
            return session.query(CalendarConnectionDB).filter(
                CalendarConnectionDB.sync_enabled.is_(True),
                CalendarConnectionDB.calendar_id.isnot(None),
                or_(
                    CalendarConnectionDB.last_sync_at.is_(None),
                    CalendarConnectionDB.last_sync_at < cutoff,
                ),
                or_(
                    CalendarConnectionDB.sync_error.is_(None),
                    ~CalendarConnectionDB.sync_error.startswith(TOKEN_REFRESH_FAILED_PREFIX),
                ),
            ).order_by(
                CalendarConnectionDB.last_sync_at.is_(None).desc(),
                CalendarConnectionDB.last_sync_at.asc(),
            ).limit(limit).all()

    def _for_update(self, session, ctx: UserContext, provider: Provider) -> Optional[CalendarConnectionDB]:
        return session.query(CalendarConnectionDB).filter(
            CalendarConnectionDB.user_id == ctx.user_id,
            CalendarConnectionDB.provider == provider.value,
        ).first()


class EventStore:
    """Persistence for calendar events and their sync bookkeeping."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    # Reads

    def get(self, ctx: UserContext, event_id: int) -> Optional[CalendarEventDB]:
        with self.db.get_session() as session:
            return session.query(CalendarEventDB).filter(
                CalendarEventDB.id == event_id,
                CalendarEventDB.user_id == ctx.user_id,
            ).first()

    def list(self, ctx: UserContext, query: EventQuery) -> Tuple[List[CalendarEventDB], int]:
        """List events matching ``query``.

        Rows awaiting deletion are hidden unless explicitly requested by status.

        Returns:
            Tuple of (page of events, total matching rows)
        """
        with self.db.get_session() as session:
            q = session.query(CalendarEventDB).filter(CalendarEventDB.user_id == ctx.user_id)
            if query.appearance_id is not None:
                q = q.filter(CalendarEventDB.appearance_id == query.appearance_id)
            if query.podcast_id is not None:
                q = q.filter(CalendarEventDB.podcast_id == query.podcast_id)
            if query.event_type:
                q = q.filter(CalendarEventDB.event_type == query.event_type)
            if query.start_date:
                q = q.filter(CalendarEventDB.start_datetime >= datetime.combine(query.start_date, time.min))
            if query.end_date:
                q = q.filter(CalendarEventDB.start_datetime <= datetime.combine(query.end_date, time(23, 59, 59)))
            if query.sync_status:
                q = q.filter(CalendarEventDB.sync_status == query.sync_status)
            else:
                q = q.filter(CalendarEventDB.sync_status != SyncStatus.PENDING_DELETE.value)

            total = q.count()
            column = getattr(CalendarEventDB, query.orderby)
            q = q.order_by(column.desc() if query.order == 'DESC' else column.asc(), CalendarEventDB.id.asc())
            rows = q.offset((query.page - 1) * query.per_page).limit(query.per_page).all()
            return rows, total

    def find_by_remote_id(self, ctx: UserContext, provider: Provider, remote_id: str) -> Optional[CalendarEventDB]:
        id_column = getattr(CalendarEventDB, f"{provider.value}_event_id")
        with self.db.get_session() as session:
            return session.query(CalendarEventDB).filter(
                CalendarEventDB.user_id == ctx.user_id,
                id_column == remote_id,
            ).first()

    def find_for_appearance(
        self, ctx: UserContext, appearance_id: int, event_type: EventType
    ) -> Optional[CalendarEventDB]:
        with self.db.get_session() as session:
            return session.query(CalendarEventDB).filter(
                CalendarEventDB.user_id == ctx.user_id,
                CalendarEventDB.appearance_id == appearance_id,
                CalendarEventDB.event_type == event_type.value,
                CalendarEventDB.sync_status != SyncStatus.PENDING_DELETE.value,
            ).order_by(CalendarEventDB.id.asc()).first()

    def list_for_appearance(self, ctx: UserContext, appearance_id: int) -> List[CalendarEventDB]:
        with self.db.get_session() as session:
            return session.query(CalendarEventDB).filter(
                CalendarEventDB.user_id == ctx.user_id,
                CalendarEventDB.appearance_id == appearance_id,
                CalendarEventDB.sync_status != SyncStatus.PENDING_DELETE.value,
            ).order_by(CalendarEventDB.start_datetime.asc()).all()

    def pending_push(
        self,
        ctx: UserContext,
        provider: Provider,
        earliest: Optional[datetime],
        latest: Optional[datetime],
        limit: int,
    ) -> List[CalendarEventDB]:
        """Events the push pass should send to ``provider``.

        Unlinked ``local_only`` rows, rows re-marked ``pending_sync`` and rows
        whose last attempt failed, restricted to the start window.
        """
        id_column = getattr(CalendarEventDB, f"{provider.value}_event_id")
        with self.db.get_session() as session:
            q = session.query(CalendarEventDB).filter(
                CalendarEventDB.user_id == ctx.user_id,
                CalendarEventDB.sync_enabled.is_(True),
                or_(
                    and_(id_column.is_(None), CalendarEventDB.sync_status == SyncStatus.LOCAL_ONLY.value),
                    CalendarEventDB.sync_status == SyncStatus.PENDING_SYNC.value,
                    CalendarEventDB.sync_status == SyncStatus.SYNC_ERROR.value,
                ),
            )
            if earliest is not None:
                q = q.filter(CalendarEventDB.start_datetime >= earliest)
            if latest is not None:
                q = q.filter(CalendarEventDB.start_datetime <= latest)
            return q.order_by(CalendarEventDB.start_datetime.asc()).limit(limit).all()

    def pending_delete(self, ctx: UserContext, provider: Provider, limit: int) -> List[CalendarEventDB]:
        id_column = getattr(CalendarEventDB, f"{provider.value}_event_id")
        with self.db.get_session() as session:
            return session.query(CalendarEventDB).filter(
                CalendarEventDB.user_id == ctx.user_id,
                id_column.isnot(None),
                CalendarEventDB.sync_status == SyncStatus.PENDING_DELETE.value,
            ).order_by(CalendarEventDB.id.asc()).limit(limit).all()

    # Writes

    def create(self, ctx: UserContext, data: Dict[str, Any]) -> CalendarEventDB:
        values = {k: v for k, v in data.items() if k in EVENT_WRITABLE_FIELDS}
        status = SyncStatus(data.get('sync_status', SyncStatus.LOCAL_ONLY))
        with self.db.get_session() as session:
            event = CalendarEventDB(user_id=ctx.user_id, sync_status=status.value, **values)
            session.add(event)
            session.commit()
            logger.debug(f"Created calendar event {event.id} for user {ctx.user_id}")
            return event

    def update(self, ctx: UserContext, event_id: int, data: Dict[str, Any]) -> Optional[CalendarEventDB]:
        """Apply user edits.

        Content changes on a linked event re-mark it ``pending_sync`` so the
        next push carries them to the provider.
        """
        with self.db.get_session() as session:
            event = session.query(CalendarEventDB).filter(
                CalendarEventDB.id == event_id,
                CalendarEventDB.user_id == ctx.user_id,
            ).first()
            if event is None:
                return None

            content_changed = False
            for key, value in data.items():
                if key not in EVENT_WRITABLE_FIELDS:
                    continue
                if key in EVENT_CONTENT_FIELDS and getattr(event, key) != value:
                    content_changed = True
                setattr(event, key, value)

            if content_changed and event.linked_providers() and event.status is not SyncStatus.PENDING_DELETE:
                event.sync_status = event.status.transition(SyncStatus.PENDING_SYNC).value
            session.commit()
            return event

    def delete(self, event_id: int) -> bool:
        with self.db.get_session() as session:
            event = session.get(CalendarEventDB, event_id)
            if event is None:
                return False
            session.delete(event)
            session.commit()
            return True

    def set_status(
        self, event_id: int, status: SyncStatus, error: Optional[str] = None
    ) -> Optional[CalendarEventDB]:
        """Move an event to ``status``, validating the transition.

        Raises:
            InvalidTransitionError: If the transition table forbids the move
        """
        with self.db.get_session() as session:
            event = session.get(CalendarEventDB, event_id)
            if event is None:
                return None
            event.sync_status = event.status.transition(status).value
            event.sync_error_message = error
            session.commit()
            return event

    def enable_sync(self, event_id: int) -> None:
        with self.db.get_session() as session:
            event = session.get(CalendarEventDB, event_id)
            if event is not None and not event.sync_enabled:
                event.sync_enabled = True
                session.commit()

    def mark_synced(self, event_id: int, provider: Provider, calendar_id: str, remote_id: str) -> None:
        with self.db.get_session() as session:
            event = session.get(CalendarEventDB, event_id)
            if event is None:
                return
            event.set_remote(provider, calendar_id, remote_id)
            event.sync_status = event.status.transition(SyncStatus.SYNCED).value
            event.sync_error_message = None
            event.last_synced_at = utcnow()
            session.commit()

    def mark_error(self, event_id: int, message: str) -> None:
        with self.db.get_session() as session:
            event = session.get(CalendarEventDB, event_id)
            if event is None:
                return
            if event.status is not SyncStatus.PENDING_DELETE:
                event.sync_status = event.status.transition(SyncStatus.SYNC_ERROR).value
            event.sync_error_message = message
            session.commit()

    def clear_remote(self, event_id: int, provider: Provider) -> None:
        with self.db.get_session() as session:
            event = session.get(CalendarEventDB, event_id)
            if event is not None:
                event.set_remote(provider, None, None)
                session.commit()

    def upsert_from_remote(
        self,
        ctx: UserContext,
        provider: Provider,
        calendar_id: str,
        remote: ProviderEvent,
        default_timezone: str,
    ) -> Optional[str]:
        """Mirror a provider event into the local store.

        Returns:
            ``"created"``, ``"updated"``, or None when the event was skipped
        """
        if remote.start is None:
            return None
        id_column = getattr(CalendarEventDB, f"{provider.value}_event_id")
        end = remote.end or remote.start + timedelta(hours=1)

        with self.db.get_session() as session:
            event = session.query(CalendarEventDB).filter(
                CalendarEventDB.user_id == ctx.user_id,
                id_column == remote.remote_id,
            ).first()

            if event is not None:
                if event.status is SyncStatus.PENDING_DELETE:
                    return None
                event.title = remote.title
                event.description = remote.description
                event.location = remote.location
                event.start_datetime = remote.start
                event.end_datetime = end
                event.is_all_day = remote.is_all_day
                if remote.timezone:
                    event.timezone = remote.timezone
                event.sync_status = event.status.transition(SyncStatus.SYNCED).value
                event.sync_error_message = None
                event.last_synced_at = utcnow()
                session.commit()
                return "updated"

            event = CalendarEventDB(
                user_id=ctx.user_id,
                event_type=EventType.OTHER.value,
                title=remote.title,
                description=remote.description,
                location=remote.location,
                start_datetime=remote.start,
                end_datetime=end,
                is_all_day=remote.is_all_day,
                timezone=remote.timezone or default_timezone,
                sync_enabled=True,
                sync_status=SyncStatus.SYNCED.value,
                last_synced_at=utcnow(),
            )
            event.set_remote(provider, calendar_id, remote.remote_id)
            session.add(event)
            session.commit()
            return "created"

    # Cleanup

    def count_before(self, cutoff: datetime) -> int:
        with self.db.get_session() as session:
            return self._cleanup_query(session, cutoff).count()

    def cleanup_before(self, cutoff: datetime) -> int:
        """Delete finished events that ended before ``cutoff``.

        Returns:
            Number of rows removed
        """
        with self.db.get_session() as session:
            deleted = self._cleanup_query(session, cutoff).delete(synchronize_session=False)
            session.commit()
            return deleted

    def _cleanup_query(self, session, cutoff: datetime):
        return session.query(CalendarEventDB).filter(
            CalendarEventDB.end_datetime.isnot(None),
            CalendarEventDB.end_datetime < cutoff,
            CalendarEventDB.sync_status.in_(CLEANUP_STATUSES),
        )


class AppearanceReader:
    """Read-only access to appearance date fields owned by the CRM."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def get(self, ctx: UserContext, appearance_id: int) -> Optional[Dict[str, Any]]:
        with self.db.get_session() as session:
            row = session.query(AppearanceDB).filter(
                AppearanceDB.id == appearance_id,
                AppearanceDB.user_id == ctx.user_id,
            ).first()
            return self._as_dict(session, row) if row is not None else None

    def with_dates(self, ctx: UserContext) -> List[Dict[str, Any]]:
        """Appearances with at least one mapped date set."""
        with self.db.get_session() as session:
            rows = session.query(AppearanceDB).filter(
                AppearanceDB.user_id == ctx.user_id,
                or_(
                    func.coalesce(AppearanceDB.record_date, '') != '',
                    func.coalesce(AppearanceDB.air_date, '') != '',
                    func.coalesce(AppearanceDB.promotion_date, '') != '',
                ),
            ).order_by(AppearanceDB.id.asc()).all()
            return [self._as_dict(session, row) for row in rows]

    def _as_dict(self, session, row: AppearanceDB) -> Dict[str, Any]:
        podcast_title = None
        if row.podcast_id is not None:
            podcast = session.get(PodcastDB, row.podcast_id)
            podcast_title = podcast.title if podcast is not None else None
        return {
            'id': row.id,
            'user_id': row.user_id,
            'podcast_id': row.podcast_id,
            'podcast_name': podcast_title,
            'record_date': row.record_date,
            'air_date': row.air_date,
            'promotion_date': row.promotion_date,
        }


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(pytz.UTC).replace(tzinfo=None)
    return value
