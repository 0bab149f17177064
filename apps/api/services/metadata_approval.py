"""Metadata approval service: the single owner of approval sessions."""

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from core.config import Settings, get_settings
from services.apply_changes import ApplyStage
from services.approval_errors import InvalidSessionStateError, SessionNotFoundError
from services.approval_models import (
    ApplyChangesResult,
    ApprovalSession,
    ApproveSeriesResult,
    FieldChange,
    FileChange,
    ParsedFileData,
    ProgressCallback,
    SessionStatus,
)
from services.catalog_store import CatalogStore
from services.comicinfo_archive import ComicInfoArchiveStore
from services.file_review import AvailableIssues, FileReviewStage
from services.issue_cache import IssueCache
from services.metadata_provider import MetadataProvider, SeriesMatch
from services.rate_governor import RateGovernor
from services.rename_template import RenameTemplate
from services.series_approval import SeriesApprovalStage
from services.series_sidecar import SeriesSidecarStore
from services.session_factory import SessionFactory
from services.session_store import SessionStore

logger = logging.getLogger(__name__)


class MetadataApprovalService:
    """
    Owns the session store and every pipeline stage.

    Callers get deep-copied snapshots and act through the methods below.
    Each operation works on a private copy of the session and stores it back
    only when the operation succeeds, so a failed call leaves the stored
    session as it was.
    """

    def __init__(
        self,
        store: SessionStore,
        session_factory: SessionFactory,
        series_approval: SeriesApprovalStage,
        file_review: FileReviewStage,
        apply_stage: ApplyStage,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings if settings is not None else get_settings()
        self.store = store
        self.session_factory = session_factory
        self.series_approval = series_approval
        self.file_review = file_review
        self.apply_stage = apply_stage

    @classmethod
    def build(
        cls,
        provider: MetadataProvider,
        catalog: CatalogStore,
        settings: Settings | None = None,
        archive: ComicInfoArchiveStore | None = None,
        sidecars: SeriesSidecarStore | None = None,
        store: SessionStore | None = None,
    ) -> "MetadataApprovalService":
        """Wire the default collaborators around a provider and a catalog."""
        if settings is None:
            settings = get_settings()
        if archive is None:
            archive = ComicInfoArchiveStore()
        if sidecars is None:
            sidecars = SeriesSidecarStore()
        # SessionStore defines __len__, so an empty store is falsy
        if store is None:
            store = SessionStore(ttl_seconds=settings.session_ttl_seconds)
        issue_cache = IssueCache(provider, ttl_seconds=settings.issue_cache_ttl_seconds)
        rename_template = RenameTemplate(settings.rename_template, settings.library_rename_templates_map)
        governor = RateGovernor(
            max_concurrent=settings.credit_batch_size,
            refill_period=settings.credit_batch_delay_seconds,
        )

        file_review = FileReviewStage(
            provider, issue_cache, archive, catalog, rename_template, governor=governor, settings=settings
        )
        series_approval = SeriesApprovalStage(provider, file_review, settings=settings)
        return cls(
            store=store,
            session_factory=SessionFactory(provider, catalog, sidecars, series_approval),
            series_approval=series_approval,
            file_review=file_review,
            apply_stage=ApplyStage(archive, catalog, rename_template, sidecars, provider, issue_cache),
            settings=settings,
        )

    # ------------------------------------------------------------------
    # Session access
    # ------------------------------------------------------------------

    def _load(self, session_id: str) -> ApprovalSession:
        """Private working copy of a stored session."""
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session.model_copy(deep=True)

    def _save(self, session: ApprovalSession) -> ApprovalSession:
        self.store.set(session)
        return session.model_copy(deep=True)

    def get_session(self, session_id: str) -> ApprovalSession:
        return self._load(session_id)

    def cancel_session(self, session_id: str) -> None:
        if not self.store.delete(session_id):
            raise SessionNotFoundError(session_id)
        logger.info("Cancelled approval session %s", session_id)

    async def run_sweeper(self, stop_event: asyncio.Event) -> None:
        await self.store.run_sweeper(self.settings.session_sweep_interval_seconds, stop_event)

    async def create_session(
        self,
        file_ids: Iterable[str],
        exclude_file_ids: Iterable[str] = (),
        mixed_series: bool = False,
        parsed_overrides: dict[str, ParsedFileData] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ApprovalSession:
        session = await self.session_factory.create_session(
            file_ids,
            exclude_file_ids=exclude_file_ids,
            mixed_series=mixed_series,
            parsed_overrides=parsed_overrides,
            on_progress=on_progress,
        )
        return self._save(session)

    # ------------------------------------------------------------------
    # Series approval
    # ------------------------------------------------------------------

    async def search_series_custom(self, session_id: str, query: str, source: str | None = None) -> list[SeriesMatch]:
        session = self._load(session_id)
        results = await self.series_approval.search_series_custom(session, query, source)
        self._save(session)
        return results

    async def load_more_series_results(self, session_id: str) -> list[SeriesMatch]:
        session = self._load(session_id)
        results = await self.series_approval.load_more_series_results(session)
        self._save(session)
        return results

    async def approve_series(
        self,
        session_id: str,
        selected_series_id: str,
        issue_matching_series_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ApproveSeriesResult:
        session = self._load(session_id)
        result = await self.series_approval.approve_series(
            session, selected_series_id, issue_matching_series_id, on_progress
        )
        self._save(session)
        return result

    async def skip_series(self, session_id: str, on_progress: ProgressCallback | None = None) -> ApproveSeriesResult:
        session = self._load(session_id)
        result = await self.series_approval.skip_series(session, on_progress)
        self._save(session)
        return result

    async def navigate_to_series_group(self, session_id: str, index: int) -> ApprovalSession:
        session = self._load(session_id)
        await self.series_approval.navigate_to_series_group(session, index)
        return self._save(session)

    async def reset_series_group(self, session_id: str, index: int) -> ApprovalSession:
        session = self._load(session_id)
        await self.series_approval.reset_series_group(session, index)
        return self._save(session)

    # ------------------------------------------------------------------
    # File review
    # ------------------------------------------------------------------

    async def get_available_issues_for_file(self, session_id: str, file_id: str) -> AvailableIssues:
        session = self._load(session_id)
        return await self.file_review.get_available_issues(session, file_id)

    async def manual_select_issue(self, session_id: str, file_id: str, issue_id: str) -> FileChange:
        session = self._load(session_id)
        change = await self.file_review.manual_select_issue(session, file_id, issue_id)
        self._save(session)
        return change.model_copy(deep=True)

    def update_field_approvals(
        self,
        session_id: str,
        file_id: str,
        updates: dict[str, dict[str, Any]],
    ) -> FileChange:
        session = self._load(session_id)
        change = self.file_review.update_field_approvals(session, file_id, updates)
        self._save(session)
        return change.model_copy(deep=True)

    def reject_file(self, session_id: str, file_id: str) -> FileChange:
        session = self._load(session_id)
        change = self.file_review.reject_file(session, file_id)
        self._save(session)
        return change.model_copy(deep=True)

    def accept_all_files(self, session_id: str) -> ApprovalSession:
        session = self._load(session_id)
        self.file_review.accept_all_files(session)
        return self._save(session)

    def reject_all_files(self, session_id: str) -> ApprovalSession:
        session = self._load(session_id)
        self.file_review.reject_all_files(session)
        return self._save(session)

    async def move_file_to_series_group(self, session_id: str, file_id: str, target_index: int) -> FileChange:
        session = self._load(session_id)
        change = await self.file_review.move_file_to_series_group(session, file_id, target_index)
        self._save(session)
        return change.model_copy(deep=True)

    async def regenerate_rename_preview(
        self,
        session_id: str,
        file_id: str,
        field_values: dict[str, Any] | None = None,
    ) -> FieldChange | None:
        session = self._load(session_id)
        rename = await self.file_review.regenerate_rename_preview(session, file_id, field_values or {})
        self._save(session)
        return rename.model_copy() if rename else None

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply_changes(self, session_id: str, on_progress: ProgressCallback | None = None) -> ApplyChangesResult:
        session = self._load(session_id)
        if session.status != SessionStatus.FILE_REVIEW:
            raise InvalidSessionStateError(f"Cannot apply a session that is {session.status.value}")

        session.status = SessionStatus.APPLYING
        session.touch()
        self.store.set(session)

        try:
            result = await self.apply_stage.apply_changes(session, on_progress)
        except Exception as e:
            logger.exception("Apply failed for session %s", session_id)
            session.status = SessionStatus.ERROR
            session.error = str(e)
            self.store.set(session)
            raise

        self.store.set(session, ttl_seconds=self.settings.completed_session_retention_seconds)
        return result.model_copy(deep=True)
