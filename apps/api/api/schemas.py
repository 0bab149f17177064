from typing import Any

from pydantic import BaseModel, Field

from services.approval_models import ApprovalSession, FieldChange, FileChange, ParsedFileData
from services.metadata_provider import IssueRecord, SearchPagination, SeriesMatch


class CreateSessionRequest(BaseModel):
    file_ids: list[str] = Field(min_length=1)
    exclude_file_ids: list[str] = []
    mixed_series: bool = False
    parsed_overrides: dict[str, ParsedFileData] | None = None

class CustomSearchRequest(BaseModel):
    query: str = Field(min_length=1)
    source: str | None = None

class ApproveSeriesRequest(BaseModel):
    selected_series_id: str
    issue_matching_series_id: str | None = None

class ManualMatchRequest(BaseModel):
    issue_id: str

class FieldUpdate(BaseModel):
    approved: bool | None = None
    edited_value: Any = None

class UpdateFieldsRequest(BaseModel):
    fields: dict[str, FieldUpdate]

class MoveFileRequest(BaseModel):
    target_index: int = Field(ge=0)

class RenamePreviewRequest(BaseModel):
    field_values: dict[str, Any] = {}

class SeriesResultsResponse(BaseModel):
    series: list[SeriesMatch]
    pagination: SearchPagination | None = None

class ApproveSeriesResponse(BaseModel):
    has_more: bool
    next_index: int
    session: ApprovalSession

class AvailableIssuesResponse(BaseModel):
    series_name: str
    source: str
    source_id: str
    issues: list[IssueRecord]
    total_count: int
    current_matched_issue_id: str | None = None

class FileChangeResponse(BaseModel):
    file_change: FileChange

class RenamePreviewResponse(BaseModel):
    rename: FieldChange | None = None
