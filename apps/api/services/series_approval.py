"""Series approval: resolve each series group to a canonical series identity."""

import logging

from core.config import Settings, get_settings
from services.approval_errors import InvalidSessionStateError, SelectionNotFoundError, SeriesGroupNotFoundError
from services.approval_models import (
    ApprovalSession,
    ApproveSeriesResult,
    GroupStatus,
    ProgressCallback,
    SeriesGroup,
    SessionStatus,
    report_progress,
)
from services.file_review import FileReviewStage
from services.metadata_provider import MetadataProvider, SeriesMatch, SeriesQuery

logger = logging.getLogger(__name__)


def _current_group(session: ApprovalSession) -> SeriesGroup:
    group = session.current_group
    if group is None:
        raise SeriesGroupNotFoundError(session.current_series_index)
    return group


def _find_candidate(group: SeriesGroup, source_id: str) -> SeriesMatch | None:
    for candidate in group.search_results:
        if candidate.source_id == source_id:
            return candidate
    return None


def _keep_bound_in_results(group: SeriesGroup) -> None:
    """Put the group's current identities back into its results when a new search missed them."""
    listed = {(c.source, c.source_id) for c in group.search_results}
    missing = [
        bound for bound in (group.selected_series, group.issue_matching_series)
        if bound is not None and (bound.source, bound.source_id) not in listed
    ]
    if missing:
        group.search_results = [*missing, *group.search_results]


class SeriesApprovalStage:
    """
    Drives the series-approval phase of a session.

    Every operation mutates the session it is given; persisting it is the
    caller's job. When the last group is decided the stage hands over to
    file review.
    """

    def __init__(
        self,
        provider: MetadataProvider,
        file_review: FileReviewStage,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings if settings is not None else get_settings()
        self.provider = provider
        self.file_review = file_review

    async def search_for_current_series(
        self,
        session: ApprovalSession,
        on_progress: ProgressCallback | None = None,
        auto_select: bool = True,
    ) -> None:
        """Search for the current group if it is still pending; auto-select a confident top hit."""
        group = session.current_group
        if group is None or group.status != GroupStatus.PENDING:
            return

        group.status = GroupStatus.SEARCHING
        session.touch()
        try:
            report_progress(on_progress, f'Querying metadata sources for "{group.display_name}"')
            results = await self.provider.search_series(
                group.query,
                limit=self.settings.series_search_limit,
                library_type=session.library_type,
            )
            group.search_results = results.series
            group.search_pagination = results.pagination
            group.search_query = group.query
            group.search_source = None

            for series in results.series[:5]:
                report_progress(
                    on_progress,
                    f'Match: "{series.name}" ({round(series.confidence * 100)}%)',
                    f"Publisher: {series.publisher}" if series.publisher else None,
                )

            top = results.series[0] if results.series else None
            if auto_select and top is not None and top.confidence >= self.settings.series_auto_select_confidence:
                group.selected_series = top
                report_progress(on_progress, f'Auto-selected: "{top.name}"', f"Confidence: {round(top.confidence * 100)}%")
        except Exception as e:
            logger.warning("Series search failed for %r: %s", group.display_name, e)
            report_progress(on_progress, "Search failed", str(e))
            group.search_results = []
            group.search_pagination = None
        finally:
            group.status = GroupStatus.PENDING
            session.touch()

    async def search_series_custom(
        self,
        session: ApprovalSession,
        query: str,
        source: str | None = None,
    ) -> list[SeriesMatch]:
        """Re-query the current group with free text, optionally against one source."""
        group = _current_group(session)
        if source is not None and source not in self.provider.source_names:
            raise SelectionNotFoundError(f"Unknown metadata source: {source}")

        custom_query = SeriesQuery(series=query)
        group.status = GroupStatus.SEARCHING
        try:
            results = await self.provider.search_series(
                custom_query,
                limit=self.settings.custom_search_limit,
                sources=[source] if source else None,
                library_type=None if source else session.library_type,
            )
        finally:
            group.status = GroupStatus.PENDING
            session.touch()

        group.search_results = results.series
        group.search_pagination = results.pagination
        group.search_query = custom_query
        group.search_source = source
        group.query = group.query.model_copy(update={"series": query})
        group.display_name = query
        return results.series

    async def load_more_series_results(self, session: ApprovalSession) -> list[SeriesMatch]:
        """Fetch the next page for the current group and append it; [] when nothing is left."""
        group = _current_group(session)
        pagination = group.search_pagination
        if pagination is None or not pagination.has_more:
            return []

        group.status = GroupStatus.SEARCHING
        try:
            source = group.search_source
            results = await self.provider.search_series(
                group.search_query or group.query,
                limit=pagination.limit,
                offset=pagination.offset + pagination.limit,
                sources=[source] if source else None,
                library_type=None if source else session.library_type,
            )
        finally:
            group.status = GroupStatus.PENDING
            session.touch()

        group.search_results = [*group.search_results, *results.series]
        group.search_pagination = results.pagination
        return results.series

    async def approve_series(
        self,
        session: ApprovalSession,
        selected_series_id: str,
        issue_matching_series_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ApproveSeriesResult:
        """Bind the current group to a series from its results and move on."""
        if session.status != SessionStatus.SERIES_APPROVAL:
            raise InvalidSessionStateError(f"Cannot approve a series while the session is {session.status.value}")
        group = _current_group(session)

        selected = _find_candidate(group, selected_series_id)
        if selected is None:
            raise SelectionNotFoundError("Selected series not found in results")

        issue_matching = None
        if issue_matching_series_id and issue_matching_series_id != selected_series_id:
            issue_matching = _find_candidate(group, issue_matching_series_id)
            if issue_matching is None:
                raise SelectionNotFoundError("Issue matching series not found in results")

        group.selected_series = selected
        group.issue_matching_series = issue_matching
        group.status = GroupStatus.APPROVED
        logger.info("Approved %r as %s:%s", group.display_name, selected.source, selected.source_id)

        return await self._advance(session, on_progress)

    async def skip_series(
        self,
        session: ApprovalSession,
        on_progress: ProgressCallback | None = None,
    ) -> ApproveSeriesResult:
        if session.status != SessionStatus.SERIES_APPROVAL:
            raise InvalidSessionStateError(f"Cannot skip a series while the session is {session.status.value}")
        group = _current_group(session)
        group.status = GroupStatus.SKIPPED
        return await self._advance(session, on_progress)

    async def _advance(
        self,
        session: ApprovalSession,
        on_progress: ProgressCallback | None,
    ) -> ApproveSeriesResult:
        session.current_series_index += 1
        session.touch()

        has_more = session.current_series_index < len(session.series_groups)
        if has_more:
            await self.search_for_current_series(session, on_progress)
        else:
            await self.run_file_review(session, on_progress)

        return ApproveSeriesResult(has_more=has_more, next_index=session.current_series_index)

    async def run_file_review(
        self,
        session: ApprovalSession,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Every group is decided: match files and enter the file_review phase."""
        session.status = SessionStatus.FETCHING_ISSUES
        session.touch()
        try:
            await self.file_review.prepare_file_changes(session, on_progress)
        except Exception as e:
            logger.exception("File review preparation failed for session %s", session.id)
            session.status = SessionStatus.ERROR
            session.error = str(e)
            return
        session.status = SessionStatus.FILE_REVIEW
        session.touch()

    async def navigate_to_series_group(
        self,
        session: ApprovalSession,
        index: int,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Rewind to a group, keeping its selection so the user can compare alternatives."""
        group = self._rewind(session, index)
        group.status = GroupStatus.PENDING
        await self.search_for_current_series(session, on_progress, auto_select=False)
        _keep_bound_in_results(group)

    async def reset_series_group(
        self,
        session: ApprovalSession,
        index: int,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Rewind to a group and clear its selection and pre-approval for a fresh search."""
        group = self._rewind(session, index)
        group.status = GroupStatus.PENDING
        group.selected_series = None
        group.issue_matching_series = None
        group.pre_approved = False
        group.pre_approved_from = None
        group.series_detail = None
        await self.search_for_current_series(session, on_progress, auto_select=False)

    @staticmethod
    def _rewind(session: ApprovalSession, index: int) -> SeriesGroup:
        if not 0 <= index < len(session.series_groups):
            raise SeriesGroupNotFoundError(index)
        if session.status in (SessionStatus.APPLYING, SessionStatus.COMPLETE):
            raise InvalidSessionStateError(f"Cannot rewind a session that is {session.status.value}")

        group = session.series_groups[index]
        for file_id in group.file_ids:
            session.file_changes.pop(file_id, None)
        session.status = SessionStatus.SERIES_APPROVAL
        session.current_series_index = index
        session.touch()
        return group
