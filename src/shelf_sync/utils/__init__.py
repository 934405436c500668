"""Utility helpers for Shelf Sync."""
