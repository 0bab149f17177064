"""Metadata approval endpoints."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, Depends, HTTPException, Request

from api.schemas import (
    ApproveSeriesRequest,
    ApproveSeriesResponse,
    AvailableIssuesResponse,
    CreateSessionRequest,
    CustomSearchRequest,
    FileChangeResponse,
    ManualMatchRequest,
    MoveFileRequest,
    RenamePreviewRequest,
    RenamePreviewResponse,
    SeriesResultsResponse,
    UpdateFieldsRequest,
)
from services.approval_errors import (
    ApprovalError,
    FileNotInSessionError,
    SeriesGroupNotFoundError,
    SessionNotFoundError,
)
from services.approval_models import ApplyChangesResult, ApprovalSession
from services.metadata_approval import MetadataApprovalService
from services.metadata_provider import MetadataProviderError

router = APIRouter()
logger = logging.getLogger(__name__)


def get_approval_service(request: Request) -> MetadataApprovalService:
    """The service built during startup."""
    service = getattr(request.app.state, "approval_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Approval service not initialized")
    return service


def log_progress(message: str, detail: str | None = None) -> None:
    logger.debug("%s%s", message, f" ({detail})" if detail else "")


@contextmanager
def approval_errors() -> Iterator[None]:
    """Translate pipeline errors into HTTP responses."""
    try:
        yield
    except (SessionNotFoundError, SeriesGroupNotFoundError, FileNotInSessionError) as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ApprovalError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except MetadataProviderError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@router.post("/sessions", response_model=ApprovalSession, status_code=201)
async def create_session(
    body: CreateSessionRequest,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> ApprovalSession:
    """Start an approval session for a batch of files."""
    with approval_errors():
        return await service.create_session(
            body.file_ids,
            exclude_file_ids=body.exclude_file_ids,
            mixed_series=body.mixed_series,
            parsed_overrides=body.parsed_overrides,
            on_progress=log_progress,
        )


@router.get("/sessions/{session_id}", response_model=ApprovalSession)
async def get_session(
    session_id: str,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> ApprovalSession:
    with approval_errors():
        return service.get_session(session_id)


@router.delete("/sessions/{session_id}", status_code=204)
async def cancel_session(
    session_id: str,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> None:
    with approval_errors():
        service.cancel_session(session_id)


# ---------------------------------------------------------------------------
# Series approval
# ---------------------------------------------------------------------------

@router.post("/sessions/{session_id}/series/search", response_model=SeriesResultsResponse)
async def search_series(
    session_id: str,
    body: CustomSearchRequest,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> SeriesResultsResponse:
    """Re-query the current series group with free text."""
    with approval_errors():
        results = await service.search_series_custom(session_id, body.query, body.source)
        group = service.get_session(session_id).current_group
    return SeriesResultsResponse(series=results, pagination=group.search_pagination if group else None)


@router.post("/sessions/{session_id}/series/load-more", response_model=SeriesResultsResponse)
async def load_more_series(
    session_id: str,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> SeriesResultsResponse:
    with approval_errors():
        results = await service.load_more_series_results(session_id)
        group = service.get_session(session_id).current_group
    return SeriesResultsResponse(series=results, pagination=group.search_pagination if group else None)


@router.post("/sessions/{session_id}/series/approve", response_model=ApproveSeriesResponse)
async def approve_series(
    session_id: str,
    body: ApproveSeriesRequest,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> ApproveSeriesResponse:
    with approval_errors():
        result = await service.approve_series(
            session_id, body.selected_series_id, body.issue_matching_series_id, on_progress=log_progress
        )
        session = service.get_session(session_id)
    return ApproveSeriesResponse(has_more=result.has_more, next_index=result.next_index, session=session)


@router.post("/sessions/{session_id}/series/skip", response_model=ApproveSeriesResponse)
async def skip_series(
    session_id: str,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> ApproveSeriesResponse:
    with approval_errors():
        result = await service.skip_series(session_id, on_progress=log_progress)
        session = service.get_session(session_id)
    return ApproveSeriesResponse(has_more=result.has_more, next_index=result.next_index, session=session)


@router.post("/sessions/{session_id}/series/{index}/navigate", response_model=ApprovalSession)
async def navigate_to_series_group(
    session_id: str,
    index: int,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> ApprovalSession:
    """Go back to a series group, keeping its current selection."""
    with approval_errors():
        return await service.navigate_to_series_group(session_id, index)


@router.post("/sessions/{session_id}/series/{index}/reset", response_model=ApprovalSession)
async def reset_series_group(
    session_id: str,
    index: int,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> ApprovalSession:
    """Go back to a series group and clear its selection."""
    with approval_errors():
        return await service.reset_series_group(session_id, index)


# ---------------------------------------------------------------------------
# File review
# ---------------------------------------------------------------------------

@router.get("/sessions/{session_id}/files/{file_id}/issues", response_model=AvailableIssuesResponse)
async def get_available_issues(
    session_id: str,
    file_id: str,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> AvailableIssuesResponse:
    with approval_errors():
        available = await service.get_available_issues_for_file(session_id, file_id)
    return AvailableIssuesResponse(
        series_name=available.series_name,
        source=available.source,
        source_id=available.source_id,
        issues=available.issues,
        total_count=available.total_count,
        current_matched_issue_id=available.current_matched_issue_id,
    )


@router.post("/sessions/{session_id}/files/{file_id}/manual-match", response_model=FileChangeResponse)
async def manual_match(
    session_id: str,
    file_id: str,
    body: ManualMatchRequest,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> FileChangeResponse:
    with approval_errors():
        change = await service.manual_select_issue(session_id, file_id, body.issue_id)
    return FileChangeResponse(file_change=change)


@router.post("/sessions/{session_id}/files/{file_id}/fields", response_model=FileChangeResponse)
async def update_fields(
    session_id: str,
    file_id: str,
    body: UpdateFieldsRequest,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> FileChangeResponse:
    """Approve, reject or edit individual field changes."""
    updates = {name: update.model_dump(exclude_unset=True) for name, update in body.fields.items()}
    with approval_errors():
        change = service.update_field_approvals(session_id, file_id, updates)
    return FileChangeResponse(file_change=change)


@router.post("/sessions/{session_id}/files/{file_id}/reject", response_model=FileChangeResponse)
async def reject_file(
    session_id: str,
    file_id: str,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> FileChangeResponse:
    with approval_errors():
        change = service.reject_file(session_id, file_id)
    return FileChangeResponse(file_change=change)


@router.post("/sessions/{session_id}/files/{file_id}/move", response_model=FileChangeResponse)
async def move_file(
    session_id: str,
    file_id: str,
    body: MoveFileRequest,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> FileChangeResponse:
    with approval_errors():
        change = await service.move_file_to_series_group(session_id, file_id, body.target_index)
    return FileChangeResponse(file_change=change)


@router.post("/sessions/{session_id}/files/{file_id}/rename-preview", response_model=RenamePreviewResponse)
async def rename_preview(
    session_id: str,
    file_id: str,
    body: RenamePreviewRequest,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> RenamePreviewResponse:
    with approval_errors():
        rename = await service.regenerate_rename_preview(session_id, file_id, body.field_values)
    return RenamePreviewResponse(rename=rename)


@router.post("/sessions/{session_id}/files/accept-all", response_model=ApprovalSession)
async def accept_all_files(
    session_id: str,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> ApprovalSession:
    with approval_errors():
        return service.accept_all_files(session_id)


@router.post("/sessions/{session_id}/files/reject-all", response_model=ApprovalSession)
async def reject_all_files(
    session_id: str,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> ApprovalSession:
    with approval_errors():
        return service.reject_all_files(session_id)


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

@router.post("/sessions/{session_id}/apply", response_model=ApplyChangesResult)
async def apply_changes(
    session_id: str,
    service: MetadataApprovalService = Depends(get_approval_service),
) -> ApplyChangesResult:
    """Write approved changes to the files and the catalog."""
    with approval_errors():
        return await service.apply_changes(session_id, on_progress=log_progress)
