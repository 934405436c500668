"""Offline-first synchronization of the bookmark snapshot with its gist.

The engine reconciles the local snapshot with the remote copy, decides between
upload, download, no-op and conflict, and reports every outcome as a
``SyncResult``. It never raises for remote failures: the local snapshot stays
usable offline and the next sync is a normal retry.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..bookmark import BookmarkData
from ..exceptions import ApiError, AuthError, DataIntegrityError, GistSyncError, RateLimitError
from ..local_store import LocalStore
from ..utils.datetime import to_iso_string, to_millis
from .checksum import build_metadata
from .conflict_detector import ConflictDetector
from .document_format import (
    DOCUMENT_DESCRIPTION,
    encode_document,
    is_bookmark_document,
    parse_document,
)
from .gist_client import GistClient, GistDocument
from .merger import merge_snapshots
from .sync_models import (
    ConflictResolution,
    SyncAction,
    SyncConflict,
    SyncMetadata,
    SyncResult,
    SyncState,
    SyncTrigger,
)


logger = logging.getLogger(__name__)

StateListener = Callable[[SyncState], None]
# Called with the remote snapshot just before an upload replaces it
BeforeOverwrite = Callable[[BookmarkData], Awaitable[Any]]


def describe_error(error: Exception) -> str:
    """User-facing message for a failed remote operation."""
    if isinstance(error, AuthError):
        return "Authentication failed. Please re-authenticate with GitHub."
    if isinstance(error, RateLimitError):
        return str(error) if str(error).startswith("Rate limit") else f"Rate limit exceeded. {error}"
    if isinstance(error, GistSyncError):
        return str(error)
    return f"Sync failed: {error}"


class SyncEngine:
    """Sync state machine for one device and one bookmark gist.

    States move ``idle -> syncing -> success | error | conflict``. Success and
    error settle back to ``idle`` when the call returns; ``conflict`` holds
    until the conflict is resolved or discarded. At most one remote operation
    runs at a time.
    """

    def __init__(self, client: GistClient, store: LocalStore,
                 detector: Optional[ConflictDetector] = None):
        """Initialize the engine.

        Args:
            client: Gist API client, shared with anything else talking to GitHub
            store: Local store holding the device id and cached gist id
            detector: Conflict detector, defaults to the standard window
        """
        self.client = client
        self.store = store
        self.detector = detector or ConflictDetector()
        self.device_id = store.device_id()
        self.pending_conflict: Optional[SyncConflict] = None
        self.last_result: Optional[SyncResult] = None
        self._state = SyncState.IDLE
        self._lock = asyncio.Lock()
        self._listeners: List[StateListener] = []

    # State

    @property
    def state(self) -> SyncState:
        return self._state

    def is_idle(self) -> bool:
        return self._state == SyncState.IDLE

    def add_state_listener(self, listener: StateListener):
        self._listeners.append(listener)

    def _set_state(self, state: SyncState):
        if state == self._state:
            return
        logger.debug(f"Sync state {self._state.value} -> {state.value}")
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    def _finish(self, result: SyncResult) -> SyncResult:
        """Record the outcome and move to the matching terminal state."""
        self.last_result = result
        if result.action == SyncAction.CONFLICT and result.conflict is not None:
            self.pending_conflict = result.conflict
            self._set_state(SyncState.CONFLICT)
            return result

        self._set_state(SyncState.SUCCESS if result.success else SyncState.ERROR)
        self._set_state(SyncState.IDLE)
        return result

    def _busy_result(self, trigger: SyncTrigger) -> Optional[SyncResult]:
        if self._lock.locked():
            logger.info(f"Ignoring {trigger.value} sync: another sync is in progress")
            return SyncResult.failure("Sync already in progress", trigger=trigger)
        return None

    # Sync

    async def sync(self, snapshot: BookmarkData,
                   trigger: SyncTrigger = SyncTrigger.MANUAL,
                   before_overwrite: Optional[BeforeOverwrite] = None) -> SyncResult:
        """Reconcile ``snapshot`` with the remote gist.

        Downloaded data is returned, not applied: the caller replaces its local
        state with ``result.data``.

        Args:
            snapshot: Current local data
            trigger: Reason for the sync, recorded on the result
            before_overwrite: Awaited with the remote snapshot right before an
                upload replaces readable remote data
        """
        if not self.client.is_authenticated():
            return SyncResult.failure("Not authenticated with GitHub", trigger=trigger)

        busy = self._busy_result(trigger)
        if busy:
            return busy

        if self.pending_conflict is not None:
            return SyncResult.failure(
                "Resolve the pending sync conflict before syncing again",
                action=SyncAction.CONFLICT,
                conflict=self.pending_conflict,
                remote_doc_id=self.pending_conflict.remote_doc_id,
                trigger=trigger,
            )

        async with self._lock:
            self._set_state(SyncState.SYNCING)
            logger.info(f"Starting {trigger.value} sync")
            try:
                result = await self._run_sync(snapshot, trigger, before_overwrite)
            except Exception as e:
                result = self._failure_from(e, trigger)
            except asyncio.CancelledError:
                self._cancelled(f"{trigger.value.capitalize()} sync")
                raise
            return self._finish(result)

    def _cancelled(self, what: str):
        logger.warning(f"{what} cancelled before it finished")
        self._set_state(SyncState.IDLE)

    async def _run_sync(self, snapshot: BookmarkData, trigger: SyncTrigger,
                        before_overwrite: Optional[BeforeOverwrite] = None) -> SyncResult:
        document = await self._locate_document()
        if document is None:
            logger.info("No bookmark gist found, uploading local data as a new gist")
            return await self._upload(snapshot, None, None, trigger)

        try:
            remote, remote_meta = parse_document(document)
        except DataIntegrityError as e:
            logger.warning(f"Remote bookmark data in gist {document.id} is unusable, overwriting it: {e}")
            return await self._upload(snapshot, document.id, None, trigger)

        conflict = self.detector.detect(snapshot, remote, remote_meta, self.device_id)
        if conflict is not None:
            conflict.remote_doc_id = document.id
            logger.warning(f"Sync conflict detected: {conflict.message}")
            return SyncResult(
                success=False,
                action=SyncAction.CONFLICT,
                conflict=conflict,
                remote_doc_id=document.id,
                trigger=trigger,
            )

        local_time = to_millis(snapshot.last_updated)
        remote_time = to_millis(remote.last_updated)

        if remote_time > local_time:
            logger.info(f"Remote data is newer (device {remote_meta.device_id}), downloading")
            return SyncResult(
                success=True,
                action=SyncAction.DOWNLOADED,
                data=remote,
                remote_doc_id=document.id,
                trigger=trigger,
            )

        if local_time > remote_time:
            logger.info("Local data is newer, uploading")
            if before_overwrite is not None:
                await before_overwrite(remote)
            return await self._upload(snapshot, document.id, remote_meta, trigger)

        logger.info("Local and remote data are identical")
        return SyncResult(
            success=True,
            action=SyncAction.NO_CHANGE,
            data=snapshot,
            remote_doc_id=document.id,
            trigger=trigger,
        )

    async def _locate_document(self) -> Optional[GistDocument]:
        """Fully fetched bookmark gist, via the cached id when it is still valid."""
        cached_id = self.store.get_document_id()
        if cached_id:
            try:
                document = await self.client.get_document(cached_id)
            except ApiError as e:
                if e.status_code != 404:
                    raise
                logger.warning(f"Cached gist {cached_id} no longer exists, searching for bookmark gist")
            else:
                if is_bookmark_document(document):
                    return document
                logger.warning(f"Cached gist {cached_id} holds no bookmark data, searching again")
            self.store.clear_document_id()

        handle = await self.client.find_document(is_bookmark_document)
        if handle is None:
            return None
        self.store.set_document_id(handle.id)
        return await self.client.get_document(handle.id)

    async def _upload(self, snapshot: BookmarkData, document_id: Optional[str],
                      remote_meta: Optional[SyncMetadata], trigger: SyncTrigger) -> SyncResult:
        previous_count = remote_meta.sync_count if remote_meta else 0
        metadata = build_metadata(snapshot, self.device_id, previous_count)
        files = encode_document(snapshot, metadata)

        if document_id:
            document = await self.client.update_document(document_id, files)
        else:
            document = await self.client.create_document(DOCUMENT_DESCRIPTION, files)
            logger.info(f"Created bookmark gist {document.id}")

        self.store.set_document_id(document.id)
        return SyncResult(
            success=True,
            action=SyncAction.UPLOADED,
            data=snapshot,
            remote_doc_id=document.id,
            trigger=trigger,
        )

    def _failure_from(self, error: Exception, trigger: SyncTrigger) -> SyncResult:
        if isinstance(error, GistSyncError):
            logger.error(f"Sync failed: {error}")
        else:
            logger.exception("Unexpected error during sync")
        return SyncResult.failure(describe_error(error), trigger=trigger)

    # Conflict resolution

    async def resolve_conflict(self, resolution: Union[ConflictResolution, str],
                               conflict: Optional[SyncConflict] = None,
                               before_overwrite: Optional[BeforeOverwrite] = None) -> SyncResult:
        """Settle a conflict found by :meth:`sync`.

        ``local`` uploads the local snapshot, ``remote`` returns the remote one
        for the caller to apply, ``merge`` uploads the union of both. The
        conflict is consumed either way: after a failure the next ``sync()``
        detects it afresh against the then-current remote copy.
        ``before_overwrite`` is awaited with the remote snapshot before an
        upload replaces it.

        Raises:
            ValueError: If ``resolution`` is not a known resolution
        """
        resolution = ConflictResolution(resolution)
        conflict = conflict or self.pending_conflict
        if conflict is None:
            return SyncResult.failure("No sync conflict to resolve")

        busy = self._busy_result(SyncTrigger.MANUAL)
        if busy:
            return busy

        async with self._lock:
            self._set_state(SyncState.SYNCING)
            self.pending_conflict = None
            logger.info(f"Resolving {conflict.kind.value} conflict with '{resolution.value}'")
            try:
                result = await self._apply_resolution(conflict, resolution, before_overwrite)
            except Exception as e:
                result = self._failure_from(e, SyncTrigger.MANUAL)
            except asyncio.CancelledError:
                self._cancelled("Conflict resolution")
                raise
            return self._finish(result)

    async def _apply_resolution(self, conflict: SyncConflict, resolution: ConflictResolution,
                                before_overwrite: Optional[BeforeOverwrite] = None) -> SyncResult:
        if resolution == ConflictResolution.REMOTE:
            return SyncResult(
                success=True,
                action=SyncAction.DOWNLOADED,
                data=conflict.remote,
                remote_doc_id=conflict.remote_doc_id,
            )

        if not self.client.is_authenticated():
            return SyncResult.failure("Not authenticated with GitHub")

        if resolution == ConflictResolution.LOCAL:
            snapshot = conflict.local
        else:
            snapshot = merge_snapshots(conflict.local, conflict.remote)
            logger.info(
                f"Merged {len(conflict.local.entries)} local and {len(conflict.remote.entries)} "
                f"remote bookmarks into {len(snapshot.entries)}"
            )

        if before_overwrite is not None:
            await before_overwrite(conflict.remote)
        return await self._upload(snapshot, conflict.remote_doc_id, conflict.remote_meta,
                                  SyncTrigger.MANUAL)

    def discard_conflict(self):
        """Drop the pending conflict without touching either copy."""
        if self.pending_conflict is not None:
            logger.info("Discarding pending sync conflict")
            self.pending_conflict = None
        if self._state == SyncState.CONFLICT:
            self._set_state(SyncState.IDLE)

    # Status

    def status(self) -> Dict[str, object]:
        """Current sync status for display."""
        rate_limit = self.client.get_rate_limit_status()
        last = self.last_result
        return {
            "state": self._state.value,
            "authenticated": self.client.is_authenticated(),
            "device_id": self.device_id,
            "gist_id": self.store.get_document_id(),
            "pending_conflict": self.pending_conflict.message if self.pending_conflict else None,
            "last_sync": to_iso_string(last.timestamp) if last else None,
            "last_action": last.action.value if last else None,
            "last_error": last.error if last else None,
            "rate_limit": {
                "limit": rate_limit.limit,
                "remaining": rate_limit.remaining,
                "reset_at": to_iso_string(rate_limit.reset_at),
            } if rate_limit else None,
        }
