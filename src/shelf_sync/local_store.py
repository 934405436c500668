"""Local key-value persistence for Shelf Sync.

Values are stored as JSON-serialized strings under well-known keys in a single
JSON file, rewritten atomically on every change.
"""

import json
import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from .bookmark import BookmarkData
from .exceptions import DataIntegrityError


logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "shelf-device-id"
DOCUMENT_ID_KEY = "shelf-bookmark-gist-id"
DATA_KEY = "shelf-data"


class LocalStore:
    """JSON-file backed key-value store."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._values: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Could not read local state from {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"Local state in {self.path} is not a JSON object, ignoring it")
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._values, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    # Raw key-value access

    def get(self, key: str) -> Optional[Any]:
        """Deserialized value stored under ``key``, or None."""
        raw = self._values.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unreadable value for key {key}")
            return None

    def set(self, key: str, value: Any):
        self._values[key] = json.dumps(value)
        self._save()

    def delete(self, key: str):
        if self._values.pop(key, None) is not None:
            self._save()

    # Well-known keys

    def device_id(self) -> str:
        """Stable per-installation id, generated on first use."""
        device_id = self.get(DEVICE_ID_KEY)
        if not device_id:
            device_id = str(uuid.uuid4())
            self.set(DEVICE_ID_KEY, device_id)
            logger.info(f"Generated device id {device_id}")
        return device_id

    def get_document_id(self) -> Optional[str]:
        return self.get(DOCUMENT_ID_KEY)

    def set_document_id(self, document_id: str):
        if self.get_document_id() != document_id:
            self.set(DOCUMENT_ID_KEY, document_id)

    def clear_document_id(self):
        self.delete(DOCUMENT_ID_KEY)

    def load_snapshot(self) -> BookmarkData:
        """Last known snapshot; an empty one on first run or if unreadable."""
        data = self.get(DATA_KEY)
        if data is None:
            return BookmarkData.empty()
        try:
            return BookmarkData.from_dict(data)
        except DataIntegrityError as e:
            logger.error(f"Stored bookmark data is invalid, starting empty: {e}")
            return BookmarkData.empty()

    def save_snapshot(self, snapshot: BookmarkData):
        self.set(DATA_KEY, snapshot.to_dict())
