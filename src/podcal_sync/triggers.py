"""Keep calendar events in step with appearance date fields.

Each mapped date field (record, air and promotion date) owns at most one
event per appearance. Changing the date moves the event but keeps whatever
time of day the user picked; clearing it removes the event everywhere.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from .database import CalendarEventDB
from .models import DATE_FIELD_EVENT_TYPES, EventType, SyncStatus, parse_date
from .store import AppearanceReader, UserContext
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class AppearanceCalendarSync:
    """Reconciles appearance dates into calendar events."""

    def __init__(self, engine: SyncEngine, appearances: Optional[AppearanceReader] = None):
        self.engine = engine
        self.events = engine.events
        self.connections = engine.connections
        self.appearances = appearances or AppearanceReader(engine.db_manager)
        self.config = engine.settings.sync_config
        self.logger = logger.getChild('appearance_sync')

    async def sync_appearance_dates(
        self, ctx: UserContext, appearance_id: int, updated_fields: Iterable[str]
    ) -> Dict[str, str]:
        """React to an appearance update.

        Args:
            ctx: Owner of the appearance
            appearance_id: Appearance that was updated
            updated_fields: Names of the fields the update touched

        Returns:
            Mapping of date field to the action taken
            (``created``, ``updated``, ``deleted``, ``unchanged`` or ``none``)
        """
        date_fields = [f for f in DATE_FIELD_EVENT_TYPES if f in set(updated_fields)]
        if not date_fields:
            return {}

        appearance = self.appearances.get(ctx, appearance_id)
        if appearance is None:
            self.logger.debug(f"Appearance {appearance_id} not found for user {ctx.user_id}")
            return {}

        actions = {}
        for field in date_fields:
            actions[field] = await self._sync_date_field(ctx, appearance, field)
        return actions

    async def _sync_date_field(self, ctx: UserContext, appearance: Dict[str, Any], field: str) -> str:
        event_type = DATE_FIELD_EVENT_TYPES[field]
        new_date = parse_date(appearance.get(field))
        existing = self.events.find_for_appearance(ctx, appearance['id'], event_type)

        if new_date is None:
            if existing is None:
                return "none"
            await self.engine.delete_event(ctx, existing.id)
            self.logger.info(f"Removed {event_type.value} event {existing.id} for appearance {appearance['id']}")
            return "deleted"

        title = self._title(event_type, appearance.get('podcast_name'))

        if existing is not None:
            if existing.start_datetime.date() == new_date:
                # Same date: keep whatever the user did to the event
                return "unchanged"
            await self._move_event(ctx, existing, new_date, title)
            return "updated"

        await self._create_event(ctx, appearance, event_type, new_date, title)
        return "created"

    async def _move_event(self, ctx: UserContext, event: CalendarEventDB, new_date: date, title: str) -> None:
        shift = new_date - event.start_datetime.date()
        changes = {
            'title': title,
            'start_datetime': event.start_datetime + shift,
            'end_datetime': event.end_datetime + shift if event.end_datetime else None,
        }
        updated = self.events.update(ctx, event.id, changes)
        if updated is not None and updated.status is SyncStatus.PENDING_SYNC:
            await self.engine.sync_event(ctx, event.id)

    async def _create_event(
        self,
        ctx: UserContext,
        appearance: Dict[str, Any],
        event_type: EventType,
        event_date: date,
        title: str,
    ) -> CalendarEventDB:
        start_time = datetime.strptime(self.config.default_event_start, "%H:%M").time()
        start = datetime.combine(event_date, start_time)
        sync_enabled = self.connections.has_active_connection(ctx)

        event = self.events.create(ctx, {
            'title': title,
            'event_type': event_type.value,
            'appearance_id': appearance['id'],
            'podcast_id': appearance.get('podcast_id'),
            'start_datetime': start,
            'end_datetime': start + timedelta(minutes=self.config.default_event_duration_minutes),
            'is_all_day': False,
            'timezone': self.config.default_timezone,
            'sync_enabled': sync_enabled,
            'sync_status': SyncStatus.PENDING_SYNC if sync_enabled else SyncStatus.LOCAL_ONLY,
        })
        self.logger.info(f"Created {event_type.value} event {event.id} for appearance {appearance['id']}")

        if sync_enabled:
            await self.engine.sync_event(ctx, event.id)
        return event

    @staticmethod
    def _title(event_type: EventType, podcast_name: Optional[str]) -> str:
        return f"{event_type.label}: {podcast_name or 'Interview'}"

    async def migrate_existing_dates(self, ctx: UserContext) -> int:
        """Backfill events for appearances whose dates have no event yet.

        Safe to run repeatedly.

        Returns:
            Number of events created
        """
        created = 0
        for appearance in self.appearances.with_dates(ctx):
            for field, event_type in DATE_FIELD_EVENT_TYPES.items():
                if parse_date(appearance.get(field)) is None:
                    continue
                if self.events.find_for_appearance(ctx, appearance['id'], event_type) is not None:
                    continue
                if await self._sync_date_field(ctx, appearance, field) == "created":
                    created += 1
        if created:
            self.logger.info(f"Backfilled {created} calendar events for user {ctx.user_id}")
        return created

    def get_appearance_events(self, ctx: UserContext, appearance_id: int) -> List[CalendarEventDB]:
        return self.events.list_for_appearance(ctx, appearance_id)
