"""Layout of the bookmark gist and its backup gists.

A bookmark gist holds two files: the snapshot and its sync metadata. Backup
gists hold a timestamped snapshot file plus a small info file.
"""

import json
import logging
from typing import Dict, Tuple

from ..bookmark import BookmarkData
from ..exceptions import DataIntegrityError
from ..utils.datetime import now_utc
from .checksum import compute_checksum
from .gist_client import GistDocument
from .sync_models import SCHEMA_VERSION, SyncMetadata


logger = logging.getLogger(__name__)

DATA_FILENAME = "shelf-bookmarks.json"
METADATA_FILENAME = "shelf-metadata.json"
DOCUMENT_DESCRIPTION = "Shelf 3D Bookmark Manager - Bookmark Data"
BACKUP_FILENAME_PREFIX = "shelf-bookmarks-backup-"
BACKUP_INFO_FILENAME = "backup-info.json"
BACKUP_DESCRIPTION_MARKER = " - Backup: "

# Device id recorded for gists written before metadata existed
UNKNOWN_DEVICE = "unknown"


def dump_json(data) -> str:
    """Pretty-printed JSON, the way every Shelf client writes gist files."""
    return json.dumps(data, indent=2, ensure_ascii=False)


def is_bookmark_document(document: GistDocument) -> bool:
    """Matcher for the one gist that holds live bookmark data."""
    return DATA_FILENAME in document.files


def is_backup_document(document: GistDocument) -> bool:
    if BACKUP_INFO_FILENAME in document.files:
        return True
    return (BACKUP_DESCRIPTION_MARKER in document.description
            and any(name.startswith(BACKUP_FILENAME_PREFIX) for name in document.files))


def encode_document(snapshot: BookmarkData, metadata: SyncMetadata) -> Dict[str, str]:
    """Files for a bookmark gist upload."""
    return {
        DATA_FILENAME: dump_json(snapshot.to_dict()),
        METADATA_FILENAME: dump_json(metadata.to_dict()),
    }


def load_json(content: str, what: str):
    try:
        return json.loads(content)
    except (TypeError, ValueError) as e:
        raise DataIntegrityError(f"{what} is not valid JSON: {e}") from e


def parse_document(document: GistDocument) -> Tuple[BookmarkData, SyncMetadata]:
    """Read the snapshot and metadata out of a fully fetched bookmark gist.

    Raises:
        DataIntegrityError: If the snapshot is missing or invalid
    """
    content = document.content_of(DATA_FILENAME)
    if not content:
        raise DataIntegrityError(f"Bookmark data file not found in gist {document.id}")

    snapshot = BookmarkData.from_dict(load_json(content, DATA_FILENAME))

    metadata_content = document.content_of(METADATA_FILENAME)
    if metadata_content:
        metadata = SyncMetadata.from_dict(load_json(metadata_content, METADATA_FILENAME))
    else:
        logger.info(f"Gist {document.id} has no sync metadata, treating it as legacy data")
        metadata = SyncMetadata(
            schema_version=SCHEMA_VERSION,
            last_sync=document.updated_at or now_utc(),
            device_id=UNKNOWN_DEVICE,
            sync_count=0,
            checksum="",
        )

    if metadata.checksum and metadata.checksum != compute_checksum(snapshot):
        logger.warning(f"Checksum mismatch in gist {document.id}, data may be corrupted")

    return snapshot, metadata
