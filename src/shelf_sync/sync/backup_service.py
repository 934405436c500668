"""Point-in-time backups of the bookmark snapshot, each in its own gist."""

import logging
from typing import Any, Dict, List, Optional

from ..bookmark import BookmarkData
from ..exceptions import DataIntegrityError, GistSyncError
from ..utils.datetime import file_safe_timestamp, now_utc, parse_iso, to_iso_string
from .document_format import (
    BACKUP_DESCRIPTION_MARKER,
    BACKUP_FILENAME_PREFIX,
    BACKUP_INFO_FILENAME,
    DOCUMENT_DESCRIPTION,
    UNKNOWN_DEVICE,
    dump_json,
    is_backup_document,
    load_json,
)
from .gist_client import GistClient, GistDocument
from .sync_models import SCHEMA_VERSION, BackupInfo


logger = logging.getLogger(__name__)


def backup_description(label: str) -> str:
    return f"{DOCUMENT_DESCRIPTION}{BACKUP_DESCRIPTION_MARKER}{label}"


def _label_from_description(description: str) -> str:
    if BACKUP_DESCRIPTION_MARKER in description:
        return description.split(BACKUP_DESCRIPTION_MARKER, 1)[1]
    return description or "Backup"


def _backup_data_file(document: GistDocument) -> Optional[str]:
    for name in sorted(document.files):
        if name.startswith(BACKUP_FILENAME_PREFIX):
            return name
    return None


class BackupService:
    """Creates, lists, restores and deletes backup gists."""

    def __init__(self, client: GistClient, device_id: str):
        self.client = client
        self.device_id = device_id

    async def create_backup(self, snapshot: BookmarkData, label: Optional[str] = None) -> BackupInfo:
        """Store ``snapshot`` in a new backup gist.

        Args:
            snapshot: Data to back up
            label: Human-readable label, ``Auto-backup-<timestamp>`` by default

        Returns:
            Info for the created backup

        Raises:
            GistSyncError: If the gist could not be created
        """
        created = now_utc()
        timestamp = file_safe_timestamp(created)
        label = label or f"Auto-backup-{timestamp}"

        info = {
            "label": label,
            "created": to_iso_string(created),
            "deviceId": self.device_id,
            "schemaVersion": SCHEMA_VERSION,
        }
        files = {
            f"{BACKUP_FILENAME_PREFIX}{timestamp}.json": dump_json(snapshot.to_dict()),
            BACKUP_INFO_FILENAME: dump_json(info),
        }

        document = await self.client.create_document(backup_description(label), files)
        logger.info(f"Created backup '{label}' in gist {document.id}")
        return BackupInfo(
            id=document.id,
            label=label,
            created=created,
            size=document.size,
            device_id=self.device_id,
            url=document.html_url,
        )

    async def list_backups(self) -> List[BackupInfo]:
        """All backup gists, newest first."""
        backups = []
        for handle in await self.client.list_documents():
            if not is_backup_document(handle):
                continue
            try:
                document = await self.client.get_document(handle.id)
                backups.append(self._info_from(document))
            except GistSyncError as e:
                logger.warning(f"Could not read backup info for gist {handle.id}: {e}")
                backups.append(self._basic_info(handle))

        backups.sort(key=lambda b: b.created, reverse=True)
        return backups

    def _info_from(self, document: GistDocument) -> BackupInfo:
        content = document.content_of(BACKUP_INFO_FILENAME)
        if not content:
            return self._basic_info(document)

        info: Dict[str, Any] = load_json(content, BACKUP_INFO_FILENAME)
        if not isinstance(info, dict):
            raise DataIntegrityError(f"{BACKUP_INFO_FILENAME} is not a JSON object")
        try:
            created = parse_iso(info["created"]) if info.get("created") else None
        except ValueError:
            created = None

        basic = self._basic_info(document)
        return BackupInfo(
            id=document.id,
            label=info.get("label") or basic.label,
            created=created or basic.created,
            size=document.size,
            device_id=info.get("deviceId") or UNKNOWN_DEVICE,
            url=document.html_url,
        )

    @staticmethod
    def _basic_info(document: GistDocument) -> BackupInfo:
        return BackupInfo(
            id=document.id,
            label=_label_from_description(document.description),
            created=document.created_at or document.updated_at or now_utc(),
            size=document.size,
            url=document.html_url,
        )

    async def restore_backup(self, backup_id: str) -> BookmarkData:
        """Snapshot stored in a backup gist.

        The caller decides whether to apply it locally and sync it.

        Raises:
            DataIntegrityError: If the gist holds no readable backup data
            GistSyncError: If the gist could not be fetched
        """
        document = await self.client.get_document(backup_id)
        filename = _backup_data_file(document)
        if filename is None:
            raise DataIntegrityError(f"Gist {backup_id} does not contain backup data")

        snapshot = BookmarkData.from_dict(load_json(document.content_of(filename), filename))
        logger.info(
            f"Restored backup {backup_id} with {len(snapshot.groups)} groups "
            f"and {len(snapshot.entries)} bookmarks"
        )
        return snapshot

    async def delete_backup(self, backup_id: str):
        """Delete a backup gist, refusing gists that are not backups.

        Raises:
            DataIntegrityError: If the gist is not a backup
            GistSyncError: If the gist could not be fetched or deleted
        """
        document = await self.client.get_document(backup_id)
        if not is_backup_document(document):
            raise DataIntegrityError(f"Gist {backup_id} is not a Shelf backup")
        await self.client.delete_document(backup_id)
        logger.info(f"Deleted backup {backup_id}")
