"""Sync orchestration between local calendar events and external providers."""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import httpx

from .config import Settings
from .crypto import TokenCipher
from .database import CalendarConnectionDB, CalendarEventDB, DatabaseManager, utcnow
from .errors import (
    LocalEventNotFoundError, NoCalendarSelectedError, NotConnectedError, SyncDisabledError, SyncError, TokenRefreshError
)
from .models import CleanupStats, EventSyncOutcome, Provider, SyncResults, SyncStatus
from .oauth import TokenManager
from .services.base import BaseCalendarProvider, CalendarServiceError, EventNotFoundError, SyncTokenExpiredError
from .services.registry import ProviderRegistry
from .store import ConnectionStore, EventStore, UserContext

logger = logging.getLogger(__name__)

# Errors a single provider call can surface without aborting a batch
PROVIDER_ERRORS = (CalendarServiceError, httpx.HTTPError)


class SyncEngine:
    """Runs push and pull passes for one user and provider at a time.

    All state lives in event and connection rows, so an interrupted run simply
    leaves rows in ``pending_sync`` or ``sync_error`` for the next run.
    """

    def __init__(
        self,
        settings: Settings,
        db_manager: Optional[DatabaseManager] = None,
        registry: Optional[ProviderRegistry] = None,
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            db_manager: Database manager, created from settings if omitted
            registry: Enabled providers, resolved from settings if omitted
        """
        self.settings = settings
        self.db_manager = db_manager or DatabaseManager(settings)
        self.registry = registry or ProviderRegistry.from_settings(settings)
        self.connections = ConnectionStore(self.db_manager)
        self.events = EventStore(self.db_manager)
        self.cipher = TokenCipher(settings.secret_key, settings.secret_salt)
        self.tokens = TokenManager(settings, self.connections, self.registry, self.cipher)
        self.logger = logger.getChild('sync_engine')

    async def __aenter__(self):
        """Async context manager entry."""
        self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.registry.close()

    def initialize(self) -> None:
        """Initialize the database schema."""
        self.db_manager.init_db()
        self.logger.info(f"Sync engine initialized with providers: {[p.value for p in self.registry.enabled()]}")

    # Full sync

    async def sync_user(self, ctx: UserContext, provider: Provider) -> SyncResults:
        """Run a full sync for one user and provider.

        Args:
            ctx: User to sync
            provider: Provider to sync with

        Returns:
            Counters and per-item errors of the run

        Raises:
            NotConnectedError: If the user has not connected the provider
            SyncDisabledError: If sync is turned off for the connection
            NoCalendarSelectedError: If no target calendar is selected
            TokenRefreshError: If no valid access token could be obtained
            ProviderNotConfiguredError: If the provider is not enabled
        """
        conn = self.connections.get(ctx, provider)
        if conn is None:
            raise NotConnectedError(provider)
        if not conn.sync_enabled:
            raise SyncDisabledError(provider)
        if not conn.calendar_id:
            raise NoCalendarSelectedError(provider)

        client = self.registry.get(provider)
        try:
            access_token = await self.tokens.get_valid_access_token(ctx, provider)
        except TokenRefreshError as e:
            self.logger.error(f"Sync aborted for user {ctx.user_id} ({provider.value}): {e}")
            raise

        results = SyncResults()
        next_sync_token = None
        direction = conn.direction

        if direction.pushes:
            await self._push_pass(ctx, client, conn, access_token, results)

        if direction.pulls:
            try:
                next_sync_token = await self._pull_pass(ctx, client, conn, access_token, results)
            except PROVIDER_ERRORS as e:
                self.logger.error(f"Pull failed for user {ctx.user_id} ({provider.value}): {e}")
                results.errors.append(f"Pull failed: {e}")

        self.connections.record_sync(conn.id, next_sync_token, results.errors)
        self.logger.info(
            f"Synced user {ctx.user_id} with {provider.value}: pushed={results.pushed} "
            f"pulled={results.pulled} updated={results.updated} deleted={results.deleted} "
            f"errors={len(results.errors)}"
        )
        return results

    async def _push_pass(
        self,
        ctx: UserContext,
        client: BaseCalendarProvider,
        conn: CalendarConnectionDB,
        access_token: str,
        results: SyncResults,
    ) -> None:
        config = self.settings.sync_config
        earliest, latest = config.push_window(utcnow())
        pending = self.events.pending_push(ctx, client.provider, earliest, latest, config.push_batch_limit)
        for event in pending:
            outcome = await self._push_event(client, conn, access_token, event)
            if not outcome.success:
                results.errors.append(outcome.error)
            elif outcome.created:
                results.pushed += 1
            else:
                results.updated += 1

        for event in self.events.pending_delete(ctx, client.provider, config.delete_batch_limit):
            remote_id = event.remote_id(client.provider)
            calendar_id = event.remote_calendar_id(client.provider) or conn.calendar_id
            try:
                await client.delete_event(access_token, calendar_id, remote_id)
            except PROVIDER_ERRORS as e:
                message = f"Delete failed for event {event.id}: {e}"
                self.events.mark_error(event.id, message)
                results.errors.append(message)
                continue

            self.events.clear_remote(event.id, client.provider)
            remaining = [p for p in event.linked_providers() if p is not client.provider]
            if not remaining:
                self.events.delete(event.id)
            results.deleted += 1

    async def _push_event(
        self,
        client: BaseCalendarProvider,
        conn: CalendarConnectionDB,
        access_token: str,
        event: CalendarEventDB,
    ) -> EventSyncOutcome:
        """Create or update the provider copy of one event.

        An update against a copy that no longer exists falls back to create.
        """
        provider = client.provider
        remote_id = event.remote_id(provider)
        calendar_id = conn.calendar_id
        if remote_id and event.remote_calendar_id(provider):
            calendar_id = event.remote_calendar_id(provider)
        created = False
        try:
            if remote_id:
                try:
                    new_id = await client.update_event(access_token, calendar_id, remote_id, event)
                except EventNotFoundError:
                    self.logger.info(f"{provider.value} copy of event {event.id} is gone, recreating")
                    calendar_id = conn.calendar_id
                    new_id = await client.create_event(access_token, calendar_id, event)
                    created = True
            else:
                new_id = await client.create_event(access_token, calendar_id, event)
                created = True
        except PROVIDER_ERRORS as e:
            action = "Update" if remote_id else "Create"
            message = f"{action} failed for event {event.id}: {e}"
            self.logger.warning(message)
            self.events.mark_error(event.id, message)
            return EventSyncOutcome(success=False, remote_id=remote_id, error=message)

        self.events.mark_synced(event.id, provider, calendar_id, new_id)
        return EventSyncOutcome(success=True, remote_id=new_id, created=created)

    async def _pull_pass(
        self,
        ctx: UserContext,
        client: BaseCalendarProvider,
        conn: CalendarConnectionDB,
        access_token: str,
        results: SyncResults,
    ) -> Optional[str]:
        provider = client.provider
        try:
            changes = await client.get_events(access_token, conn.calendar_id, conn.last_sync_token)
        except SyncTokenExpiredError:
            self.logger.info(f"Sync token expired for user {ctx.user_id} ({provider.value}), doing full resync")
            changes = await client.get_events(access_token, conn.calendar_id, None)

        for remote in changes.events:
            if remote.cancelled:
                existing = self.events.find_by_remote_id(ctx, provider, remote.remote_id)
                if existing is not None:
                    self.events.delete(existing.id)
                    results.deleted += 1
                continue

            if remote.is_echo:
                continue

            outcome = self.events.upsert_from_remote(
                ctx, provider, conn.calendar_id, remote, self.settings.sync_config.default_timezone
            )
            if outcome == "created":
                results.pulled += 1
            elif outcome == "updated":
                results.updated += 1

        return changes.next_sync_token

    # Single-event operations

    async def sync_event(
        self, ctx: UserContext, event_id: int, provider: Optional[Provider] = None
    ) -> EventSyncOutcome:
        """Push one event right after it was created or edited.

        Without a usable connection this is a no-op and the event stays as is.

        Raises:
            LocalEventNotFoundError: If the event does not belong to the user
        """
        event = self.events.get(ctx, event_id)
        if event is None:
            raise LocalEventNotFoundError(f"Event {event_id} not found")

        conn = self.connections.get(ctx, provider) if provider else self.connections.active_connection(ctx)
        if conn is None or not conn.sync_enabled or not conn.calendar_id:
            return EventSyncOutcome(success=False, skipped=True)
        client = self.registry.find(conn.provider_enum)
        if client is None or event.status is SyncStatus.PENDING_DELETE:
            return EventSyncOutcome(success=False, skipped=True)

        try:
            access_token = await self.tokens.get_valid_access_token(ctx, client.provider)
        except SyncError as e:
            self.events.set_status(event.id, SyncStatus.PENDING_SYNC)
            return EventSyncOutcome(success=False, error=str(e))

        self.events.enable_sync(event.id)
        event = self.events.get(ctx, event_id)
        return await self._push_event(client, conn, access_token, event)

    async def delete_event(self, ctx: UserContext, event_id: int) -> Dict[str, Any]:
        """Delete a local event together with its provider copies.

        When a provider copy cannot be removed now, the row is kept in
        ``pending_delete`` and the next push pass retries.

        Raises:
            LocalEventNotFoundError: If the event does not belong to the user
        """
        event = self.events.get(ctx, event_id)
        if event is None:
            raise LocalEventNotFoundError(f"Event {event_id} not found")

        if not event.linked_providers():
            self.events.delete(event.id)
            return {'deleted': True, 'deleted_external': False, 'providers': {}}

        self.events.set_status(event.id, SyncStatus.PENDING_DELETE)
        outcomes = await self.delete_remote_copies(ctx, event)
        for name, removed in outcomes.items():
            if removed:
                self.events.clear_remote(event.id, Provider(name))

        all_removed = all(outcomes.values())
        if all_removed:
            self.events.delete(event.id)
        return {'deleted': True, 'deleted_external': all_removed, 'providers': outcomes}

    async def delete_remote_copies(self, ctx: UserContext, event: CalendarEventDB) -> Dict[str, bool]:
        """Best-effort delete of every linked provider copy.

        Returns:
            Mapping of provider name to whether its copy is gone
        """
        outcomes: Dict[str, bool] = {}
        for provider in event.linked_providers():
            client = self.registry.find(provider)
            if client is None:
                outcomes[provider.value] = False
                continue
            calendar_id = event.remote_calendar_id(provider)
            try:
                access_token = await self.tokens.get_valid_access_token(ctx, provider)
                if not calendar_id:
                    conn = self.connections.get(ctx, provider)
                    calendar_id = conn.calendar_id if conn else None
                outcomes[provider.value] = await client.delete_event(
                    access_token, calendar_id, event.remote_id(provider)
                )
            except (SyncError,) + PROVIDER_ERRORS as e:
                self.logger.warning(f"Could not delete {provider.value} copy of event {event.id}: {e}")
                outcomes[provider.value] = False
        return outcomes

    # Cleanup

    def _cleanup_cutoff(self):
        config = self.settings.sync_config
        if not config.cleanup_enabled or config.cleanup_days_old <= 0:
            return None
        return utcnow() - timedelta(days=config.cleanup_days_old)

    def cleanup_old_events(self) -> int:
        """Delete finished events older than the configured threshold.

        Returns:
            Number of events removed
        """
        cutoff = self._cleanup_cutoff()
        if cutoff is None:
            return 0
        deleted = self.events.cleanup_before(cutoff)
        if deleted:
            self.logger.info(f"Cleaned up {deleted} calendar events older than {cutoff:%Y-%m-%d}")
        return deleted

    def get_cleanup_stats(self) -> CleanupStats:
        config = self.settings.sync_config
        cutoff = self._cleanup_cutoff()
        return CleanupStats(
            enabled=cutoff is not None,
            days_old=config.cleanup_days_old,
            cutoff=cutoff,
            eligible=self.events.count_before(cutoff) if cutoff is not None else 0,
        )
