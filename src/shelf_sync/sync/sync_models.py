"""Data models and structures for gist synchronization.

This module contains the records that travel alongside a snapshot in the
remote store (metadata), and the values the sync engine hands back to its
callers (results, conflicts, backup info).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..bookmark import BookmarkData
from ..exceptions import DataIntegrityError
from ..utils.datetime import now_utc, parse_iso, to_iso_string


SCHEMA_VERSION = "1.0.0"


class SyncState(Enum):
    """Sync engine states."""
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"
    CONFLICT = "conflict"


class SyncAction(Enum):
    """What a sync attempt did (or would have to do)."""
    UPLOADED = "uploaded"
    DOWNLOADED = "downloaded"
    NO_CHANGE = "no_change"
    CONFLICT = "conflict"


class SyncTrigger(Enum):
    """Why a sync was started."""
    MANUAL = "manual"
    AUTO = "auto"
    STARTUP = "startup"
    BEFORE_CLOSE = "before_close"


class ConflictKind(Enum):
    """Types of sync conflicts."""
    NEAR_SIMULTANEOUS = "near-simultaneous"  # Independent edits seconds apart
    DIVERGED = "diverged"                    # A stale copy edited on its own


class ConflictResolution(Enum):
    """How the user chose to settle a conflict."""
    LOCAL = "local"
    REMOTE = "remote"
    MERGE = "merge"


@dataclass
class SyncMetadata:
    """Sync bookkeeping stored next to the snapshot, never inside it."""

    schema_version: str
    last_sync: datetime
    device_id: str
    sync_count: int
    checksum: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "lastSync": to_iso_string(self.last_sync),
            "deviceId": self.device_id,
            "syncCount": self.sync_count,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncMetadata":
        """Parse metadata written by any Shelf client.

        Older clients wrote ``version`` instead of ``schemaVersion``.

        Raises:
            DataIntegrityError: If a required field is missing or malformed
        """
        if not isinstance(data, dict):
            raise DataIntegrityError("Sync metadata must be a JSON object")
        device_id = data.get("deviceId")
        if not isinstance(device_id, str) or not device_id:
            raise DataIntegrityError(f"Invalid sync metadata: bad deviceId {device_id!r}")
        try:
            return cls(
                schema_version=str(data.get("schemaVersion", data.get("version", SCHEMA_VERSION))),
                last_sync=parse_iso(data["lastSync"]),
                device_id=device_id,
                sync_count=int(data.get("syncCount", 0)),
                checksum=str(data.get("checksum", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DataIntegrityError(f"Invalid sync metadata: {e}") from e


@dataclass
class SyncConflict:
    """Local and remote snapshots that cannot be reconciled silently.

    Lives only between the ``sync()`` call that found it and the resolution
    call that settles it.
    """

    kind: ConflictKind
    local: BookmarkData
    remote: BookmarkData
    local_meta: SyncMetadata
    remote_meta: SyncMetadata
    message: str
    remote_doc_id: Optional[str] = None
    detected_at: datetime = field(default_factory=now_utc)

    def describe(self) -> str:
        """Get human-readable description of the conflict."""
        return (
            f"{self.message} (local: {len(self.local.entries)} bookmarks, "
            f"remote: {len(self.remote.entries)} bookmarks from device {self.remote_meta.device_id})"
        )


@dataclass
class SyncResult:
    """Result of a sync or conflict-resolution attempt."""

    success: bool
    action: SyncAction
    data: Optional[BookmarkData] = None
    conflict: Optional[SyncConflict] = None
    error: Optional[str] = None
    remote_doc_id: Optional[str] = None
    trigger: SyncTrigger = SyncTrigger.MANUAL
    timestamp: datetime = field(default_factory=now_utc)

    @classmethod
    def failure(cls, error: str, action: SyncAction = SyncAction.NO_CHANGE,
                trigger: SyncTrigger = SyncTrigger.MANUAL, **kwargs) -> "SyncResult":
        """Build a failed result."""
        return cls(success=False, action=action, error=error, trigger=trigger, **kwargs)

    def status_message(self) -> str:
        """One-line summary suitable for a status bar or console."""
        if self.action == SyncAction.CONFLICT:
            if self.conflict:
                return self.conflict.message
            return self.error or "Sync conflict detected"
        if not self.success:
            return self.error or "Sync failed"
        return {
            SyncAction.UPLOADED: "Data uploaded to GitHub successfully",
            SyncAction.DOWNLOADED: "Data downloaded from GitHub successfully",
            SyncAction.NO_CHANGE: "Data is already up to date",
        }[self.action]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "success": self.success,
            "action": self.action.value,
            "error": self.error,
            "remote_doc_id": self.remote_doc_id,
            "trigger": self.trigger.value,
            "timestamp": to_iso_string(self.timestamp),
            "conflict": self.conflict.kind.value if self.conflict else None,
        }


@dataclass
class BackupInfo:
    """A backup gist as shown to the user."""

    id: str
    label: str
    created: datetime
    size: int = 0
    device_id: str = "unknown"
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "created": to_iso_string(self.created),
            "size": self.size,
            "device_id": self.device_id,
            "url": self.url,
        }
