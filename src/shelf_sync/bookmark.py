"""Bookmark data model for Shelf Sync.

A ``BookmarkData`` snapshot (groups + entries + a top-level timestamp) is the
unit of synchronization: it is always read, written and compared as a whole.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from .exceptions import DataIntegrityError
from .utils.datetime import ensure_aware, now_utc, parse_iso, to_iso_string


def _require(data: Dict[str, Any], key: str, kind: str, *aliases: str) -> Any:
    """Fetch a required key (or one of its legacy aliases) or fail."""
    for name in (key,) + aliases:
        if name in data and data[name] is not None:
            return data[name]
    raise DataIntegrityError(f"{kind} is missing required field '{key}'")


def _parse_time(value: Any, kind: str, key: str) -> datetime:
    try:
        return parse_iso(value)
    except (TypeError, ValueError) as e:
        raise DataIntegrityError(f"{kind} has invalid timestamp in '{key}': {value!r}") from e


@dataclass
class BookmarkGroup:
    """A named collection of bookmarks."""

    id: str
    name: str
    icon: Optional[str] = None
    color: Optional[str] = None
    order: int = 0
    updated_at: Optional[datetime] = None  # Only used to break merge ties

    def __post_init__(self):
        self.updated_at = ensure_aware(self.updated_at)

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id, "name": self.name, "order": self.order}
        if self.icon is not None:
            data["icon"] = self.icon
        if self.color is not None:
            data["color"] = self.color
        if self.updated_at is not None:
            data["updatedAt"] = to_iso_string(self.updated_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookmarkGroup":
        if not isinstance(data, dict):
            raise DataIntegrityError("Group must be a JSON object")
        updated_at = data.get("updatedAt")
        return cls(
            id=str(_require(data, "id", "Group")),
            name=str(_require(data, "name", "Group")),
            icon=data.get("icon"),
            color=data.get("color"),
            order=int(data.get("order", 0)),
            updated_at=_parse_time(updated_at, "Group", "updatedAt") if updated_at else None,
        )


@dataclass
class BookmarkEntry:
    """A single bookmark inside a group."""

    id: str
    group_id: str
    title: str
    url: str
    description: Optional[str] = None
    favicon_url: Optional[str] = None
    image_url: Optional[str] = None
    tags: Set[str] = field(default_factory=set)
    pinned: bool = False
    order: int = 0
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)

    def __post_init__(self):
        self.tags = set(self.tags or ())
        self.created_at = ensure_aware(self.created_at)
        self.updated_at = ensure_aware(self.updated_at)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "groupId": self.group_id,
            "title": self.title,
            "url": self.url,
            "tags": sorted(self.tags),
            "pinned": self.pinned,
            "order": self.order,
            "createdAt": to_iso_string(self.created_at),
            "updatedAt": to_iso_string(self.updated_at),
        }
        if self.description is not None:
            data["description"] = self.description
        if self.favicon_url is not None:
            data["faviconUrl"] = self.favicon_url
        if self.image_url is not None:
            data["imageUrl"] = self.image_url
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookmarkEntry":
        if not isinstance(data, dict):
            raise DataIntegrityError("Entry must be a JSON object")
        return cls(
            id=str(_require(data, "id", "Entry")),
            group_id=str(_require(data, "groupId", "Entry", "collectionId")),
            title=str(_require(data, "title", "Entry")),
            url=str(_require(data, "url", "Entry")),
            description=data.get("description"),
            favicon_url=data.get("faviconUrl", data.get("favicon")),
            image_url=data.get("imageUrl", data.get("image")),
            tags=set(data.get("tags") or ()),
            pinned=bool(data.get("pinned", False)),
            order=int(data.get("order", 0)),
            created_at=_parse_time(_require(data, "createdAt", "Entry"), "Entry", "createdAt"),
            updated_at=_parse_time(_require(data, "updatedAt", "Entry"), "Entry", "updatedAt"),
        )


@dataclass
class BookmarkData:
    """Complete bookmark snapshot: every group and entry plus last-modified time."""

    groups: List[BookmarkGroup] = field(default_factory=list)
    entries: List[BookmarkEntry] = field(default_factory=list)
    last_updated: datetime = field(default_factory=now_utc)

    def __post_init__(self):
        self.last_updated = ensure_aware(self.last_updated)

    @classmethod
    def empty(cls) -> "BookmarkData":
        """Snapshot a fresh installation starts from."""
        return cls()

    def touch(self, when: Optional[datetime] = None):
        """Bump ``last_updated``; every local mutation must call this."""
        self.last_updated = ensure_aware(when) or now_utc()

    def get_group(self, group_id: str) -> Optional[BookmarkGroup]:
        return next((g for g in self.groups if g.id == group_id), None)

    def sorted_groups(self) -> List[BookmarkGroup]:
        """Groups in display order; ties keep insertion order."""
        return sorted(self.groups, key=lambda g: g.order)

    def entries_in_group(self, group_id: str) -> List[BookmarkEntry]:
        """Entries of one group, pinned first, then by ``order``."""
        entries = [e for e in self.entries if e.group_id == group_id]
        return sorted(entries, key=lambda e: (not e.pinned, e.order))

    def orphaned_entries(self) -> List[BookmarkEntry]:
        """Entries whose group does not exist in this snapshot."""
        group_ids = {g.id for g in self.groups}
        return [e for e in self.entries if e.group_id not in group_ids]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groups": [g.to_dict() for g in self.groups],
            "entries": [e.to_dict() for e in self.entries],
            "lastUpdated": to_iso_string(self.last_updated),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookmarkData":
        """Parse and validate a snapshot.

        Raises:
            DataIntegrityError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise DataIntegrityError("Bookmark data must be a JSON object")

        groups = _require(data, "groups", "Bookmark data", "collections")
        entries = _require(data, "entries", "Bookmark data", "bookmarks")
        if not isinstance(groups, list) or not isinstance(entries, list):
            raise DataIntegrityError("Bookmark data 'groups' and 'entries' must be lists")

        try:
            return cls(
                groups=[BookmarkGroup.from_dict(g) for g in groups],
                entries=[BookmarkEntry.from_dict(e) for e in entries],
                last_updated=_parse_time(
                    _require(data, "lastUpdated", "Bookmark data"), "Bookmark data", "lastUpdated"
                ),
            )
        except (TypeError, ValueError) as e:
            raise DataIntegrityError(f"Invalid bookmark data: {e}") from e
