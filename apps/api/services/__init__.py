"""Services module."""

from .approval_errors import (
    ApprovalError,
    FileNotInSessionError,
    InvalidSessionStateError,
    SelectionNotFoundError,
    SeriesGroupNotFoundError,
    SessionNotFoundError,
)
from .catalog_store import CatalogStore
from .comicinfo_archive import ArchiveError, ComicInfoArchiveStore, ConversionError
from .metadata_approval import MetadataApprovalService
from .metadata_provider import MetadataProvider, MetadataProviderError
from .session_store import SessionStore

__all__ = [
    # Approval pipeline
    "MetadataApprovalService",
    "SessionStore",
    # Errors
    "ApprovalError",
    "SessionNotFoundError",
    "SeriesGroupNotFoundError",
    "SelectionNotFoundError",
    "FileNotInSessionError",
    "InvalidSessionStateError",
    "MetadataProviderError",
    "ArchiveError",
    "ConversionError",
    # Collaborators
    "MetadataProvider",
    "ComicInfoArchiveStore",
    "CatalogStore",
]
