"""SQLite persistence for learned email patterns, bounces and user feedback."""

from __future__ import annotations

from .schema import metadata as db_metadata
from .sqlite_manager import SQLiteManager

__all__ = ["SQLiteManager", "db_metadata"]
