"""Errors raised by the metadata approval pipeline."""


class ApprovalError(Exception):
    """Base exception for approval pipeline errors."""

    pass


class SessionNotFoundError(ApprovalError):
    """Raised when a session id is unknown or has expired."""

    def __init__(self, session_id: str) -> None:
        super().__init__("Session not found")
        self.session_id = session_id


class SeriesGroupNotFoundError(ApprovalError):
    """Raised when a series group index is out of range."""

    def __init__(self, index: int) -> None:
        super().__init__(f"Series group {index} not found")
        self.index = index


class SelectionNotFoundError(ApprovalError):
    """Raised when a selected series or issue is not among the known candidates."""

    pass


class FileNotInSessionError(ApprovalError):
    """Raised when a file id does not belong to the session."""

    def __init__(self, file_id: str) -> None:
        super().__init__(f"File {file_id} not found in session")
        self.file_id = file_id


class InvalidSessionStateError(ApprovalError):
    """Raised when an operation is not allowed in the session's current status."""

    pass
