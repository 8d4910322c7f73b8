"""Batch sync job and the background loop that drives it."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from .database import utcnow
from .errors import SyncError
from .models import SyncResults
from .services.base import CalendarServiceError
from .store import UserContext
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class CalendarSyncJob:
    """Syncs the connections that are due, a few users per run."""

    def __init__(self, engine: SyncEngine):
        self.engine = engine
        self.config = engine.settings.sync_config
        self.logger = logger.getChild('job')

    async def run_sync(self) -> Dict[str, int]:
        """Sync every due connection, oldest first.

        A failure for one user is logged and never stops the batch.

        Returns:
            Summary with ``users``, ``succeeded`` and ``failed`` counts
        """
        due = self.engine.connections.due_for_sync(
            timedelta(minutes=self.config.min_resync_minutes),
            self.config.max_connections_per_run,
        )
        summary = {'users': len(due), 'succeeded': 0, 'failed': 0}

        for index, conn in enumerate(due):
            if index:
                await asyncio.sleep(self.config.delay_between_users_seconds)
            ctx = UserContext(user_id=conn.user_id)
            try:
                results = await self.engine.sync_user(ctx, conn.provider_enum)
            except (SyncError, CalendarServiceError) as e:
                summary['failed'] += 1
                self.logger.error(f"Calendar sync failed for user {conn.user_id} ({conn.provider}): {e}")
                continue
            except Exception:
                summary['failed'] += 1
                self.logger.exception(f"Unexpected error syncing user {conn.user_id} ({conn.provider})")
                continue
            summary['succeeded'] += 1
            if results.errors:
                self.logger.warning(
                    f"Calendar sync for user {conn.user_id} ({conn.provider}) finished with "
                    f"{len(results.errors)} errors"
                )

        if due:
            self.logger.info(
                f"Calendar sync job processed {summary['users']} connections: "
                f"{summary['succeeded']} ok, {summary['failed']} failed"
            )
        return summary

    async def sync_on_login(self, ctx: UserContext) -> Optional[SyncResults]:
        """Sync a user's active connection if it has gone stale.

        Returns:
            Sync results, or None when no sync was needed or possible
        """
        conn = self.engine.connections.active_connection(ctx)
        if conn is None:
            return None
        threshold = utcnow() - timedelta(minutes=self.config.login_resync_minutes)
        if conn.last_sync_at is not None and conn.last_sync_at > threshold:
            return None
        try:
            return await self.engine.sync_user(ctx, conn.provider_enum)
        except (SyncError, CalendarServiceError) as e:
            self.logger.warning(f"Login sync failed for user {ctx.user_id}: {e}")
            return None
        except Exception:
            self.logger.exception(f"Unexpected error in login sync for user {ctx.user_id}")
            return None


class SyncRuntime:
    """Wakes the sync job on an interval or when signalled."""

    def __init__(self, job: CalendarSyncJob, interval_seconds: Optional[int] = None):
        self.job = job
        self.engine = job.engine
        self.trigger = asyncio.Event()
        self.running = True
        self.last_sync: Optional[datetime] = None
        self.last_summary: Optional[Dict[str, int]] = None
        self.sync_task: Optional[asyncio.Task] = None
        self.loop_interval_seconds = interval_seconds or job.config.sync_interval_minutes * 60

    async def run_once(self) -> Dict[str, int]:
        summary = await self.job.run_sync()
        summary['cleaned_up'] = self.engine.cleanup_old_events()
        self.last_sync = utcnow()
        self.last_summary = summary
        return summary

    async def run(self):
        while self.running:
            try:
                # Wait for either trigger or interval timeout
                try:
                    await asyncio.wait_for(self.trigger.wait(), timeout=self.loop_interval_seconds)
                except asyncio.TimeoutError:
                    pass
                finally:
                    self.trigger.clear()

                if not self.running:
                    break
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                # Keep the loop alive; the next cycle retries
                logger.exception("Calendar sync cycle failed")
                await asyncio.sleep(2)

    def signal(self):
        if not self.trigger.is_set():
            self.trigger.set()

    async def stop(self, timeout: float = 5) -> None:
        self.running = False
        self.signal()
        if self.sync_task:
            await asyncio.wait([self.sync_task], timeout=timeout)
