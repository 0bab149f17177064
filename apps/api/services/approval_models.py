"""State models for metadata approval sessions."""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Protocol
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from db.models import LibraryType
from services.metadata_provider import SearchPagination, SeriesMatch, SeriesQuery

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Phase of an approval session."""

    SERIES_APPROVAL = "series_approval"
    FETCHING_ISSUES = "fetching_issues"
    FILE_REVIEW = "file_review"
    APPLYING = "applying"
    COMPLETE = "complete"
    ERROR = "error"


class GroupStatus(str, Enum):
    """Decision state of a series group."""

    PENDING = "pending"
    SEARCHING = "searching"
    APPROVED = "approved"
    SKIPPED = "skipped"


class FileChangeStatus(str, Enum):
    """Review outcome for one file."""

    MATCHED = "matched"
    UNMATCHED = "unmatched"
    MANUAL = "manual"
    REJECTED = "rejected"


# Field-change keys that never go into ComicInfo.xml
NON_COMICINFO_FIELDS = frozenset({"rename", "contentType", "parsedVolume", "parsedChapter"})


class ParsedFileData(BaseModel):
    """Filename-derived identity hints for one file."""

    series: str | None = None
    number: str | None = None
    volume: str | None = None
    chapter: str | None = None
    year: int | None = None
    publisher: str | None = None
    page_count: int | None = None


class SeriesGroup(BaseModel):
    """Files believed to share one series; the unit of series approval."""

    display_name: str
    query: SeriesQuery
    file_ids: list[str] = Field(default_factory=list)
    filenames: list[str] = Field(default_factory=list)
    parsed_files: dict[str, ParsedFileData] = Field(default_factory=dict)
    status: GroupStatus = GroupStatus.PENDING
    search_results: list[SeriesMatch] = Field(default_factory=list)
    search_pagination: SearchPagination | None = None
    # Query and pinned source behind search_results; load-more pages continue them
    search_query: SeriesQuery | None = None
    search_source: str | None = None
    selected_series: SeriesMatch | None = None
    issue_matching_series: SeriesMatch | None = None
    # Full series record fetched when files were reviewed
    series_detail: SeriesMatch | None = Field(default=None, exclude=True)
    pre_approved: bool = False
    pre_approved_from: Literal["sidecar", "catalog", "series_cache"] | None = None
    folder_path: str | None = None

    @model_validator(mode="after")
    def _approved_has_selection(self) -> "SeriesGroup":
        if self.status == GroupStatus.APPROVED and self.selected_series is None:
            raise ValueError("approved series group requires a selected series")
        return self

    @property
    def issue_source(self) -> SeriesMatch | None:
        """Identity used for issue lookup."""
        return self.issue_matching_series or self.selected_series

    def remove_file(self, file_id: str) -> None:
        index = self.file_ids.index(file_id)
        del self.file_ids[index]
        del self.filenames[index]
        self.parsed_files.pop(file_id, None)


class MatchedIssue(BaseModel):
    """The issue (or virtual chapter/volume) a file was matched to."""

    source: str
    source_id: str
    number: str | None = None
    title: str | None = None
    cover_date: str | None = None


class FieldChange(BaseModel):
    """Proposed replacement for one metadata attribute."""

    current: Any = None
    proposed: Any = None
    approved: bool = True
    edited: bool = False
    edited_value: Any = None

    @property
    def effective_value(self) -> Any:
        """Value that would be written: the user's edit wins over the proposal."""
        if self.edited and self.edited_value is not None:
            return self.edited_value
        return self.proposed


class FileChange(BaseModel):
    """Review record for one file."""

    file_id: str
    filename: str
    matched_issue: MatchedIssue | None = None
    match_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    fields: dict[str, FieldChange] = Field(default_factory=dict)
    status: FileChangeStatus = FileChangeStatus.UNMATCHED

    @model_validator(mode="after")
    def _matched_has_issue(self) -> "FileChange":
        if self.status in (FileChangeStatus.MATCHED, FileChangeStatus.MANUAL) and self.matched_issue is None:
            raise ValueError(f"{self.status.value} file change requires a matched issue")
        return self

    def approved_fields(self) -> dict[str, FieldChange]:
        if self.status == FileChangeStatus.REJECTED:
            return {}
        return {name: change for name, change in self.fields.items() if change.approved}


class ApplyResult(BaseModel):
    """Per-file outcome of the apply phase."""

    file_id: str
    filename: str
    success: bool
    skipped: bool = False
    error: str | None = None
    converted: bool = False
    renamed: bool = False
    had_collision: bool = False
    original_filename: str | None = None


class ApplyChangesResult(BaseModel):
    """Summary of an apply run."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    converted: int = 0
    conversion_failed: int = 0
    renamed: int = 0
    collisions: int = 0
    results: list[ApplyResult] = Field(default_factory=list)


class ApprovalSession(BaseModel):
    """Root aggregate for one approval workflow."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    status: SessionStatus = SessionStatus.SERIES_APPROVAL
    series_groups: list[SeriesGroup] = Field(default_factory=list)
    current_series_index: int = 0
    file_changes: dict[str, FileChange] = Field(default_factory=dict)
    library_id: str | None = None
    library_type: LibraryType = LibraryType.WESTERN
    mixed_series: bool = False
    error: str | None = None
    apply_result: ApplyChangesResult | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @property
    def current_group(self) -> SeriesGroup | None:
        if 0 <= self.current_series_index < len(self.series_groups):
            return self.series_groups[self.current_series_index]
        return None

    def group_for_file(self, file_id: str) -> tuple[int, SeriesGroup] | None:
        for index, group in enumerate(self.series_groups):
            if file_id in group.file_ids:
                return index, group
        return None

    def touch(self) -> None:
        self.updated_at = _utc_now()


class ApproveSeriesResult(BaseModel):
    """Continuation info after a series decision."""

    has_more: bool
    next_index: int


class ProgressCallback(Protocol):
    """Receives human-readable (stage, detail) progress pairs."""

    def __call__(self, message: str, detail: str | None = None) -> None:
        ...


def report_progress(callback: ProgressCallback | None, message: str, detail: str | None = None) -> None:
    """Invoke a progress callback; callback failures never reach the pipeline."""
    if callback is None:
        return
    try:
        callback(message, detail)
    except Exception as e:
        logger.warning("Progress callback failed: %s", e)
