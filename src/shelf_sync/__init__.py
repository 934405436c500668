"""Shelf Sync - offline-first bookmark synchronization through GitHub Gists."""

__version__ = "0.1.0"
__author__ = "Shelf Team"

from .bookmark import (
    BookmarkData,
    BookmarkEntry,
    BookmarkGroup,
)

__all__ = ["BookmarkData", "BookmarkEntry", "BookmarkGroup", "__version__"]
