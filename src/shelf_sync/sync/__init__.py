"""Gist synchronization subsystem for Shelf Sync."""

from .backup_service import BackupService
from .checksum import build_metadata, compute_checksum
from .conflict_detector import ConflictDetector
from .gist_client import GistClient, GistDocument, GistFile, RateLimitStatus
from .merger import merge_snapshots
from .scheduler import SyncScheduler
from .sync_engine import SyncEngine
from .sync_models import (
    BackupInfo,
    ConflictKind,
    ConflictResolution,
    SyncAction,
    SyncConflict,
    SyncMetadata,
    SyncResult,
    SyncState,
    SyncTrigger,
)

__all__ = [
    "BackupService",
    "build_metadata",
    "compute_checksum",
    "ConflictDetector",
    "GistClient",
    "GistDocument",
    "GistFile",
    "RateLimitStatus",
    "merge_snapshots",
    "SyncScheduler",
    "SyncEngine",
    "BackupInfo",
    "ConflictKind",
    "ConflictResolution",
    "SyncAction",
    "SyncConflict",
    "SyncMetadata",
    "SyncResult",
    "SyncState",
    "SyncTrigger",
]
