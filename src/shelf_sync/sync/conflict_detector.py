"""Classify local/remote divergence as a clean update or a conflict."""

import logging
from typing import Optional

from ..bookmark import BookmarkData
from ..utils.datetime import to_millis
from .checksum import build_metadata, compute_checksum
from .sync_models import ConflictKind, SyncConflict, SyncMetadata


logger = logging.getLogger(__name__)

NEAR_SIMULTANEOUS_WINDOW_MS = 5000


class ConflictDetector:
    """Decides whether a local snapshot may silently replace, or be replaced by, the remote one.

    Timestamps alone are not enough: clocks drift, so the last writer is
    attributed by the device id recorded in the remote metadata.

    - remote newer and written by another device: no conflict, download
    - local newer and this device wrote the remote copy: no conflict, upload
    - anything else: conflict, ``near-simultaneous`` when the two timestamps
      are within the window, ``diverged`` otherwise
    """

    def __init__(self, window_ms: int = NEAR_SIMULTANEOUS_WINDOW_MS):
        self.window_ms = window_ms

    def detect(self, local: BookmarkData, remote: BookmarkData, remote_meta: SyncMetadata,
               device_id: str) -> Optional[SyncConflict]:
        """Return a conflict, or None if the caller may pick a direction by timestamp."""
        # Identical snapshots never conflict, whoever wrote them
        if compute_checksum(local) == compute_checksum(remote):
            return None

        local_time = to_millis(local.last_updated)
        remote_time = to_millis(remote.last_updated)
        remote_is_ours = remote_meta.device_id == device_id

        if remote_time > local_time and not remote_is_ours:
            return None
        if local_time > remote_time and remote_is_ours:
            return None

        gap = abs(local_time - remote_time)
        kind = ConflictKind.NEAR_SIMULTANEOUS if gap < self.window_ms else ConflictKind.DIVERGED
        logger.debug(
            f"Conflict ({kind.value}): local={local_time} remote={remote_time} "
            f"remote device={remote_meta.device_id} this device={device_id}"
        )

        return SyncConflict(
            kind=kind,
            local=local,
            remote=remote,
            local_meta=build_metadata(local, device_id, remote_meta.sync_count),
            remote_meta=remote_meta,
            message=self.conflict_message(kind, local_time, remote_time),
        )

    @staticmethod
    def conflict_message(kind: ConflictKind, local_time: int, remote_time: int) -> str:
        minutes = round(abs(local_time - remote_time) / 60000)
        if local_time == remote_time:
            side = "local and remote changes have the same timestamp"
        else:
            side = f"local changes are {'newer' if local_time > remote_time else 'older'} than remote"

        if kind == ConflictKind.NEAR_SIMULTANEOUS:
            return f"Changes made simultaneously on different devices ({minutes} minutes apart, {side})"
        return f"Data conflict: {side} ({minutes} minutes apart)"
