"""Database module."""

from .models import (
    ComicFile,
    FileMetadata,
    FileStatus,
    Library,
    LibraryType,
    Series,
)
from .session import create_db_and_tables, get_session

__all__ = [
    "ComicFile",
    "FileMetadata",
    "FileStatus",
    "Library",
    "LibraryType",
    "Series",
    "create_db_and_tables",
    "get_session",
]
