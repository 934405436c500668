"""Decides when the sync engine runs.

Syncs are started on startup, periodically, shortly after local edits, on
demand and before shutdown, according to the user's ``SyncSettings``.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set

from ..bookmark import BookmarkData
from ..config import ConflictPreference, SyncSettings
from ..exceptions import GistSyncError
from ..local_store import LocalStore
from .backup_service import BackupService
from .sync_engine import BeforeOverwrite, SyncEngine
from .sync_models import SyncAction, SyncResult, SyncTrigger


logger = logging.getLogger(__name__)

ResultListener = Callable[[SyncResult], None]


class SyncScheduler:
    """Runs the engine against the snapshot held in the local store."""

    def __init__(self, engine: SyncEngine, store: LocalStore, settings: SyncSettings,
                 backup_service: Optional[BackupService] = None,
                 debounce_seconds: float = 2.0,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        """Initialize the scheduler.

        Args:
            engine: Sync engine to drive
            store: Local store the snapshot is read from and written back to
            settings: Sync triggers and policies
            backup_service: Used for pre-sync backups when enabled
            debounce_seconds: Quiet period after a local change before syncing
            sleep: Awaitable sleep for the periodic loop, injectable for tests
        """
        self.engine = engine
        self.store = store
        self.settings = settings
        self.backup_service = backup_service
        self.debounce_seconds = debounce_seconds
        self._sleep = sleep
        self._listeners: List[ResultListener] = []
        self._periodic_task: Optional[asyncio.Task] = None
        self._periodic_sleeping = False
        self._debounce_timer: Optional[asyncio.TimerHandle] = None
        self._pending: Set[asyncio.Task] = set()
        self.running = False

    def add_listener(self, listener: ResultListener):
        """Register a callback invoked with every sync result."""
        self._listeners.append(listener)

    # Lifecycle

    async def start(self) -> Optional[SyncResult]:
        """Start scheduling; returns the startup sync result if one ran."""
        if self.running:
            return None
        self.running = True

        result = None
        if self.settings.sync_on_startup:
            result = await self.run_sync(SyncTrigger.STARTUP)

        if self.settings.auto_sync and self.settings.sync_interval_minutes > 0:
            self._periodic_task = asyncio.create_task(self._periodic_loop())
            logger.info(f"Automatic sync every {self.settings.sync_interval_minutes} minutes")
        return result

    async def stop(self) -> Optional[SyncResult]:
        """Stop scheduling; returns the before-close sync result if one ran."""
        if not self.running:
            return None
        self.running = False

        if self._debounce_timer is not None:
            self._debounce_timer.cancel()
            self._debounce_timer = None

        if self._periodic_task is not None:
            # A periodic sync in flight runs to completion; the loop then sees running=False
            if self._periodic_sleeping:
                self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None

        if self._pending:
            await asyncio.gather(*self._pending)

        if self.settings.sync_before_close:
            return await self.run_sync(SyncTrigger.BEFORE_CLOSE)
        return None

    # Triggers

    def notify_local_change(self):
        """Schedule an automatic sync once edits have been quiet for a while."""
        if not (self.running and self.settings.auto_sync):
            return
        if self._debounce_timer is not None:
            self._debounce_timer.cancel()
        loop = asyncio.get_running_loop()
        self._debounce_timer = loop.call_later(self.debounce_seconds, self._fire_debounced)

    def _fire_debounced(self):
        self._debounce_timer = None
        task = asyncio.create_task(self.run_sync(SyncTrigger.AUTO))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def trigger(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncResult:
        """Sync now, regardless of the automatic triggers."""
        return await self.run_sync(trigger)

    async def _periodic_loop(self):
        interval = self.settings.sync_interval_minutes * 60
        while self.running:
            self._periodic_sleeping = True
            try:
                await self._sleep(interval)
            finally:
                self._periodic_sleeping = False
            if not self.running:
                break
            if not self.engine.is_idle():
                logger.debug(f"Skipping periodic sync, engine is {self.engine.state.value}")
                continue
            try:
                await self.run_sync(SyncTrigger.AUTO)
            except Exception:
                logger.exception("Periodic sync failed")

    # Running

    def backup_hook(self) -> Optional[BeforeOverwrite]:
        """Hook that backs up remote data about to be overwritten, if enabled."""
        if self.settings.backup_before_sync and self.backup_service is not None:
            return self._backup_remote
        return None

    async def _backup_remote(self, remote: BookmarkData):
        try:
            info = await self.backup_service.create_backup(remote)
            logger.info(f"Backed up remote data to {info.id} before overwriting it")
        except GistSyncError as e:
            logger.warning(f"Pre-sync backup failed, syncing anyway: {e}")

    async def run_sync(self, trigger: SyncTrigger) -> SyncResult:
        """One full sync pass over the stored snapshot."""
        snapshot = self.store.load_snapshot()
        backup = self.backup_hook()

        result = await self.engine.sync(snapshot, trigger, before_overwrite=backup)

        preference = self.settings.conflict_resolution
        if result.action == SyncAction.CONFLICT and result.conflict and preference != ConflictPreference.ASK:
            logger.info(f"Resolving conflict automatically with '{preference.value}'")
            result = await self.engine.resolve_conflict(preference.value, result.conflict,
                                                        before_overwrite=backup)
            result.trigger = trigger

        if result.success and result.data is not None:
            self.store.save_snapshot(result.data)

        for listener in list(self._listeners):
            listener(result)
        return result
