"""Snapshot checksums and sync metadata construction.

The checksum is a corruption signal, not a security primitive. It must not
depend on the order groups or entries happen to be stored in.
"""

import hashlib
import json
from datetime import datetime
from typing import Optional

from ..bookmark import BookmarkData
from ..utils.datetime import now_utc
from .sync_models import SCHEMA_VERSION, SyncMetadata


def _canonical_json(snapshot: BookmarkData) -> str:
    data = snapshot.to_dict()
    data["groups"] = sorted(data["groups"], key=lambda g: g["id"])
    data["entries"] = sorted(data["entries"], key=lambda e: e["id"])
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_checksum(snapshot: BookmarkData) -> str:
    """Deterministic, order-independent SHA-256 of a snapshot."""
    return hashlib.sha256(_canonical_json(snapshot).encode("utf-8")).hexdigest()


def build_metadata(snapshot: BookmarkData, device_id: str, previous_sync_count: int = 0,
                   now: Optional[datetime] = None) -> SyncMetadata:
    """Metadata for the next upload of ``snapshot`` from ``device_id``."""
    return SyncMetadata(
        schema_version=SCHEMA_VERSION,
        last_sync=now or now_utc(),
        device_id=device_id,
        sync_count=previous_sync_count + 1,
        checksum=compute_checksum(snapshot),
    )
