"""Deterministic union of two snapshots for the "merge" conflict resolution."""

from datetime import datetime
from typing import Dict, Optional

from ..bookmark import BookmarkData, BookmarkEntry, BookmarkGroup
from ..utils.datetime import now_utc


def _prefer_group(local: BookmarkGroup, remote: BookmarkGroup) -> BookmarkGroup:
    if local.updated_at and remote.updated_at and remote.updated_at > local.updated_at:
        return remote
    return local


def _prefer_entry(local: BookmarkEntry, remote: BookmarkEntry) -> BookmarkEntry:
    return remote if remote.updated_at > local.updated_at else local


def merge_snapshots(local: BookmarkData, remote: BookmarkData,
                    now: Optional[datetime] = None) -> BookmarkData:
    """Union of groups and entries by id.

    On an id collision the copy with the later ``updated_at`` wins; ties and
    groups without timestamps keep the local copy. Local items come first in
    local order, followed by remote-only items in remote order. Only the
    result's ``last_updated`` depends on the current time.
    """
    groups: Dict[str, BookmarkGroup] = {g.id: g for g in local.groups}
    for group in remote.groups:
        groups[group.id] = _prefer_group(groups[group.id], group) if group.id in groups else group

    entries: Dict[str, BookmarkEntry] = {e.id: e for e in local.entries}
    for entry in remote.entries:
        entries[entry.id] = _prefer_entry(entries[entry.id], entry) if entry.id in entries else entry

    return BookmarkData(
        groups=list(groups.values()),
        entries=list(entries.values()),
        last_updated=now or now_utc(),
    )
