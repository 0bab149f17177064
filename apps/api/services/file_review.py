"""File review: match every file of an approved series group to an issue and diff its metadata."""

import logging
from dataclasses import dataclass
from typing import Any

from core.config import Settings, get_settings
from db.models import ComicFile
from services.approval_errors import (
    FileNotInSessionError,
    InvalidSessionStateError,
    SelectionNotFoundError,
    SeriesGroupNotFoundError,
)
from services.approval_models import (
    ApprovalSession,
    FieldChange,
    FileChange,
    FileChangeStatus,
    GroupStatus,
    MatchedIssue,
    ProgressCallback,
    SeriesGroup,
    report_progress,
)
from services.catalog_store import CatalogStore
from services.comicinfo_archive import ComicInfoArchiveStore
from services.field_changes import (
    build_field_changes,
    compose_metadata,
    get_current_metadata,
    issue_proposed_values,
    manga_proposed_values,
)
from services.filename_parser import format_number, parse_filename
from services.issue_cache import CachedIssues, IssueCache
from services.issue_matcher import best_guess_by_number, candidate_issue_number, match_file_to_issue
from services.manga_classifier import (
    MangaClassification,
    MangaContentType,
    classify_manga_file,
    generate_display_title,
)
from services.metadata_provider import IssueRecord, MetadataProvider, SeriesMatch
from services.rate_governor import RateGovernor
from services.rename_template import RenameTemplate

logger = logging.getLogger(__name__)

RENAME_FIELD = "rename"

# Confidence for manga numbers recovered from the group's parse instead of the classifier
PARSED_NUMBER_CONFIDENCE = 0.6


@dataclass
class AvailableIssues:
    """Issue choices for manual matching of one file."""
    series_name: str
    source: str
    source_id: str
    issues: list[IssueRecord]
    current_matched_issue_id: str | None

    @property
    def total_count(self) -> int:
        return len(self.issues)


@dataclass
class _ReviewContext:
    files: dict[str, ComicFile]
    series_meta: SeriesMatch
    series_context: dict[str, Any]


def _truncate(name: str, width: int = 40) -> str:
    return name if len(name) <= width else name[:width] + "..."


def _rejected(file_id: str, filename: str) -> FileChange:
    return FileChange(file_id=file_id, filename=filename, status=FileChangeStatus.REJECTED)


def _unmatched(file_id: str, filename: str, guess: MatchedIssue | None = None) -> FileChange:
    return FileChange(
        file_id=file_id,
        filename=filename,
        matched_issue=guess,
        match_confidence=0.0,
        status=FileChangeStatus.UNMATCHED,
    )


def _matched_issue(source: str, issue: IssueRecord) -> MatchedIssue:
    return MatchedIssue(
        source=source,
        source_id=issue.id,
        number=format_number(issue.number),
        title=issue.title,
        cover_date=issue.cover_date,
    )


def _issue_source(group: SeriesGroup) -> SeriesMatch:
    source = group.issue_source
    if source is None:
        raise InvalidSessionStateError(f"Series group {group.display_name!r} has no selected series")
    return source


def _series_context(series: SeriesMatch) -> dict[str, Any]:
    """Series-level values the rename template can reference."""
    return {
        "name": series.name,
        "publisher": series.publisher,
        "start_year": series.start_year,
        "issue_count": series.issue_count,
    }


class FileReviewStage:
    """
    Builds FileChange records for approved series groups.

    Groups bound to a source with a per-issue index are matched issue by
    issue; other sources (manga) get virtual chapter/volume identities from
    the filenames.
    """

    def __init__(
        self,
        provider: MetadataProvider,
        issue_cache: IssueCache,
        archive: ComicInfoArchiveStore,
        catalog: CatalogStore,
        rename_template: RenameTemplate,
        governor: RateGovernor | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings if settings is not None else get_settings()
        self.provider = provider
        self.issue_cache = issue_cache
        self.archive = archive
        self.catalog = catalog
        self.rename_template = rename_template
        self.governor = governor or RateGovernor(
            max_concurrent=self.settings.credit_batch_size,
            refill_period=self.settings.credit_batch_delay_seconds,
        )

    # ------------------------------------------------------------------
    # Whole-session review
    # ------------------------------------------------------------------

    async def prepare_file_changes(
        self,
        session: ApprovalSession,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """
        Produce FileChange rows for every file that does not have one yet.

        Rows that survived a rewind (other groups' reviews and edits) are kept.
        Skipped or undecided groups yield ``rejected`` rows.
        """
        approved = [g for g in session.series_groups if g.status == GroupStatus.APPROVED]
        report_progress(on_progress, "Preparing file changes", f"Processing {len(approved)} approved series")

        processed = 0
        for group in session.series_groups:
            pending_ids = [fid for fid in group.file_ids if fid not in session.file_changes]
            if not pending_ids:
                continue

            if group.status != GroupStatus.APPROVED or group.selected_series is None:
                for fid in pending_ids:
                    session.file_changes[fid] = _rejected(fid, self._filename(group, fid))
                continue

            processed += 1
            report_progress(
                on_progress,
                f'Processing: "{group.display_name}"',
                f"Series {processed}/{len(approved)} - {len(pending_ids)} files",
            )
            try:
                changes = await self._review_group(session, group, pending_ids, on_progress)
            except Exception as e:
                logger.exception("Review failed for series group %r: %s", group.display_name, e)
                changes = {fid: _unmatched(fid, self._filename(group, fid)) for fid in pending_ids}
            session.file_changes.update(changes)

        matched = sum(1 for fc in session.file_changes.values() if fc.status == FileChangeStatus.MATCHED)
        unmatched = sum(1 for fc in session.file_changes.values() if fc.status == FileChangeStatus.UNMATCHED)
        report_progress(
            on_progress,
            "File matching complete",
            f"{matched} matched, {unmatched} unmatched out of {len(session.file_changes)} files",
        )

    @staticmethod
    def _filename(group: SeriesGroup, file_id: str) -> str:
        return group.filenames[group.file_ids.index(file_id)]

    async def _review_group(
        self,
        session: ApprovalSession,
        group: SeriesGroup,
        file_ids: list[str],
        on_progress: ProgressCallback | None,
    ) -> dict[str, FileChange]:
        issue_source = _issue_source(group)
        context = await self._build_context(group, file_ids)
        if self.provider.provides_issue_index(issue_source.source):
            return await self._review_western(session, group, issue_source, file_ids, context, on_progress)
        return await self._review_manga(session, group, issue_source, file_ids, context, on_progress)

    async def _build_context(self, group: SeriesGroup, file_ids: list[str]) -> _ReviewContext:
        files = {f.id: f for f in await self.catalog.get_files(file_ids)}
        series_meta = await self._series_detail(group)
        return _ReviewContext(files=files, series_meta=series_meta, series_context=_series_context(series_meta))

    async def _series_detail(self, group: SeriesGroup) -> SeriesMatch:
        """Series record behind the group's selection, fetched once and kept on the group."""
        selected = group.selected_series
        if selected is None:
            raise InvalidSessionStateError(f"Series group {group.display_name!r} has no selected series")
        cached = group.series_detail
        if cached is not None and (cached.source, cached.source_id) == (selected.source, selected.source_id):
            return cached
        group.series_detail = await self._series_metadata(selected)
        return group.series_detail

    async def _series_metadata(self, selected: SeriesMatch) -> SeriesMatch:
        """Full series record for field values; the search hit is the fallback."""
        try:
            full = await self.provider.get_series_by_id(selected.source, selected.source_id)
        except Exception as e:
            logger.warning("Series detail unavailable for %s:%s: %s", selected.source, selected.source_id, e)
            return selected
        if full is None:
            return selected
        # Search results may carry names/aliases the detail call lacks
        return full.model_copy(update={"name": selected.name or full.name, "confidence": selected.confidence})

    # ------------------------------------------------------------------
    # Manga branch
    # ------------------------------------------------------------------

    async def _review_manga(
        self,
        session: ApprovalSession,
        group: SeriesGroup,
        source: SeriesMatch,
        file_ids: list[str],
        context: _ReviewContext,
        on_progress: ProgressCallback | None,
    ) -> dict[str, FileChange]:
        changes: dict[str, FileChange] = {}

        for fid in file_ids:
            filename = self._filename(group, fid)
            file = context.files.get(fid)
            if file is None:
                logger.warning("File %s missing from catalog; leaving unmatched", fid)
                changes[fid] = _unmatched(fid, filename)
                continue
            try:
                changes[fid] = await self._match_manga_file(session, group, file, filename, source, context)
            except Exception as e:
                logger.exception("Manga review failed for %s: %s", filename, e)
                changes[fid] = _unmatched(fid, filename)
                continue

            change = changes[fid]
            if change.status == FileChangeStatus.MATCHED and change.matched_issue:
                report_progress(on_progress, f'Matched: "{_truncate(filename)}"', f"-> {change.matched_issue.title}")
            else:
                report_progress(on_progress, f'Unmatched: "{_truncate(filename)}"', "no chapter or volume number detected")
        return changes

    async def _match_manga_file(
        self,
        session: ApprovalSession,
        group: SeriesGroup,
        file: ComicFile,
        filename: str,
        source: SeriesMatch,
        context: _ReviewContext,
    ) -> FileChange:
        parsed = group.parsed_files.get(file.id)
        page_count = file.page_count or (parsed.page_count if parsed else None)
        classification = self._classify(filename, page_count)

        number = classification.primary_number
        confidence = classification.confidence
        if not number:
            fallback = parsed if parsed and (parsed.number or parsed.chapter or parsed.volume) else None
            if fallback is None:
                regex = parse_filename(filename)
                fallback_number = regex.chapter or regex.volume or regex.number
            else:
                fallback_number = fallback.chapter or fallback.volume or fallback.number
            number = format_number(fallback_number)
            confidence = PARSED_NUMBER_CONFIDENCE
            if number:
                classification.primary_number = number
                classification.display_title = generate_display_title(classification.content_type, number)

        if not number:
            return _unmatched(file.id, filename)

        matched_issue = MatchedIssue(
            source=source.source,
            source_id=classification.virtual_issue_id or f"{MangaContentType.CHAPTER.value}-{number}",
            number=number,
            title=classification.display_title,
        )
        current = await get_current_metadata(file, self.archive, self.catalog)
        fields = build_field_changes(current, manga_proposed_values(classification, number, context.series_meta))
        self._attach_rename(session, file, fields, current, context)

        return FileChange(
            file_id=file.id,
            filename=filename,
            matched_issue=matched_issue,
            match_confidence=confidence,
            fields=fields,
            status=FileChangeStatus.MATCHED,
        )

    def _classify(self, filename: str, page_count: int | None) -> MangaClassification:
        return classify_manga_file(
            filename,
            page_count,
            volume_page_threshold=self.settings.manga_volume_page_threshold,
            filename_overrides_page_count=self.settings.manga_filename_overrides_page_count,
        )

    # ------------------------------------------------------------------
    # Western branch
    # ------------------------------------------------------------------

    async def _review_western(
        self,
        session: ApprovalSession,
        group: SeriesGroup,
        source: SeriesMatch,
        file_ids: list[str],
        context: _ReviewContext,
        on_progress: ProgressCallback | None,
    ) -> dict[str, FileChange]:
        changes: dict[str, FileChange] = {}

        report_progress(on_progress, f'Fetching issues for "{source.name}"', "Checking cache...")
        cached = await self.issue_cache.get_or_fetch_issues(source.source, source.source_id)
        if cached is None:
            report_progress(
                on_progress,
                f'No issues found for "{source.name}"',
                "All files in this series will be unmatched",
            )
            return {fid: _unmatched(fid, self._filename(group, fid)) for fid in file_ids}

        report_progress(
            on_progress,
            f"Loaded {len(cached.issues)} issues ({'cache hit' if cached.from_cache else 'fetched from API'})",
            f"Source: {source.source}",
        )

        accepted: list[tuple[str, str, IssueRecord, float]] = []
        threshold = self.settings.issue_match_threshold
        for fid in file_ids:
            filename = self._filename(group, fid)
            parsed = group.parsed_files.get(fid)
            result = match_file_to_issue(filename, cached.issues, parsed)
            if result.issue is not None and result.confidence >= threshold:
                accepted.append((fid, filename, result.issue, result.confidence))
                continue

            guess = None
            if self.settings.best_guess_enabled:
                guess_issue = best_guess_by_number(candidate_issue_number(filename, parsed), cached.issues)
                if guess_issue is not None:
                    guess = _matched_issue(source.source, guess_issue)
            changes[fid] = _unmatched(fid, filename, guess)
            reason = (
                "no issue number detected"
                if result.candidate_number is None
                else f"#{result.candidate_number} not found in {len(cached.issues)} issues"
            )
            report_progress(on_progress, f'Unmatched: "{_truncate(filename)}"', reason)

        enriched = await self._enrich_credits(cached, [issue for _, _, issue, _ in accepted], on_progress)

        for fid, filename, issue, confidence in accepted:
            full_issue = enriched.get(issue.id, issue)
            file = context.files.get(fid)
            if file is None:
                logger.warning("File %s missing from catalog; leaving unmatched", fid)
                changes[fid] = _unmatched(fid, filename)
                continue
            try:
                current = await get_current_metadata(file, self.archive, self.catalog)
                fields = build_field_changes(current, issue_proposed_values(full_issue, context.series_meta))
                self._attach_rename(session, file, fields, current, context)
            except Exception as e:
                logger.exception("Field diff failed for %s: %s", filename, e)
                changes[fid] = _unmatched(fid, filename)
                continue

            changes[fid] = FileChange(
                file_id=fid,
                filename=filename,
                matched_issue=_matched_issue(source.source, full_issue),
                match_confidence=confidence,
                fields=fields,
                status=FileChangeStatus.MATCHED,
            )
            report_progress(
                on_progress,
                f'Matched: "{_truncate(filename)}"',
                f"-> Issue #{format_number(full_issue.number)} ({round(confidence * 100)}% confidence)",
            )

        return changes

    async def _enrich_credits(
        self,
        cached: CachedIssues,
        issues: list[IssueRecord],
        on_progress: ProgressCallback | None,
    ) -> dict[str, IssueRecord]:
        """Fetch issue detail for accepted issues whose bulk payload lacked credits."""
        unique: dict[str, IssueRecord] = {}
        for issue in issues:
            unique.setdefault(issue.id, issue)
        missing = [issue_id for issue_id, issue in unique.items() if not issue.has_credits]
        if not missing:
            return unique

        report_progress(on_progress, "Fetching creator credits", f"{len(missing)} issue(s) missing credits")

        async def fetch(issue_id: str) -> IssueRecord | None:
            return await self.provider.get_issue_detail(cached.source, issue_id)

        details = await self.governor.map(fetch, missing)
        for issue_id, detail in zip(missing, details):
            if detail is None:
                continue
            unique[issue_id] = detail
            self.issue_cache.store_issue(cached.source, cached.source_id, detail)
        return unique

    # ------------------------------------------------------------------
    # Rename preview
    # ------------------------------------------------------------------

    def _propose_filename(
        self,
        session: ApprovalSession,
        file: ComicFile,
        metadata: dict[str, Any],
        series_context: dict[str, Any],
    ) -> str | None:
        if session.library_id is None:
            return None
        return self.rename_template.propose(
            metadata,
            library_id=session.library_id,
            file_path=file.path,
            series_context=series_context,
        )

    def _attach_rename(
        self,
        session: ApprovalSession,
        file: ComicFile,
        fields: dict[str, FieldChange],
        current: dict[str, Any],
        context: _ReviewContext,
    ) -> None:
        # The template sees the complete proposed metadata, not only changed fields
        proposed = self._propose_filename(session, file, compose_metadata(current, fields), context.series_context)
        if proposed and proposed != file.filename:
            fields[RENAME_FIELD] = FieldChange(current=file.filename, proposed=proposed)

    async def regenerate_rename_preview(
        self,
        session: ApprovalSession,
        file_id: str,
        field_values: dict[str, Any],
    ) -> FieldChange | None:
        """Recompute the rename field with ``field_values`` layered over the file's proposed metadata."""
        change = session.file_changes.get(file_id)
        if change is None:
            raise FileNotInSessionError(file_id)
        file = await self.catalog.get_file(file_id)
        if file is None:
            raise FileNotInSessionError(file_id)

        located = session.group_for_file(file_id)
        series_context: dict[str, Any] = {}
        if located is not None and located[1].selected_series is not None:
            # Same series record the preview was first built from
            series_context = _series_context(await self._series_detail(located[1]))

        current = await get_current_metadata(file, self.archive, self.catalog)
        metadata = compose_metadata(current, change.fields, field_values)
        proposed = self._propose_filename(session, file, metadata, series_context)

        existing = change.fields.get(RENAME_FIELD)
        if not proposed or proposed == file.filename:
            change.fields.pop(RENAME_FIELD, None)
            return None
        if existing is None:
            existing = FieldChange(current=file.filename, proposed=proposed)
            change.fields[RENAME_FIELD] = existing
        else:
            existing.proposed = proposed
        return existing

    # ------------------------------------------------------------------
    # File actions
    # ------------------------------------------------------------------

    async def move_file_to_series_group(
        self,
        session: ApprovalSession,
        file_id: str,
        target_index: int,
    ) -> FileChange:
        """Move a file to another group and re-match it there if that group is already approved."""
        if not 0 <= target_index < len(session.series_groups):
            raise SeriesGroupNotFoundError(target_index)
        located = session.group_for_file(file_id)
        if located is None:
            raise FileNotInSessionError(file_id)
        source_index, source_group = located
        target = session.series_groups[target_index]

        if source_index == target_index:
            existing = session.file_changes.get(file_id)
            if existing is not None:
                return existing

        filename = self._filename(source_group, file_id)
        parsed = source_group.parsed_files.get(file_id)
        if source_index != target_index:
            source_group.remove_file(file_id)
            target.file_ids.append(file_id)
            target.filenames.append(filename)
            if parsed is not None:
                target.parsed_files[file_id] = parsed
        session.file_changes.pop(file_id, None)

        if target.status == GroupStatus.APPROVED and target.selected_series is not None:
            changes = await self._review_group(session, target, [file_id], None)
            change = changes[file_id]
        else:
            change = _unmatched(file_id, filename)
        session.file_changes[file_id] = change
        return change

    async def get_available_issues(self, session: ApprovalSession, file_id: str) -> AvailableIssues:
        change = session.file_changes.get(file_id)
        located = session.group_for_file(file_id)
        if change is None or located is None:
            raise FileNotInSessionError(file_id)
        group = located[1]
        source = group.issue_source
        if source is None:
            raise InvalidSessionStateError("No series selected for this file's group")

        current_id = change.matched_issue.source_id if change.matched_issue else None
        cached = await self.issue_cache.get_or_fetch_issues(source.source, source.source_id)
        return AvailableIssues(
            series_name=source.name,
            source=source.source,
            source_id=source.source_id,
            issues=list(cached.issues) if cached else [],
            current_matched_issue_id=current_id,
        )

    async def manual_select_issue(self, session: ApprovalSession, file_id: str, issue_id: str) -> FileChange:
        """Force ``issue_id`` for a file; confidence is fixed at 1.0."""
        change = session.file_changes.get(file_id)
        located = session.group_for_file(file_id)
        if change is None or located is None:
            raise FileNotInSessionError(file_id)
        group = located[1]
        source = group.issue_source
        if source is None or group.selected_series is None:
            raise InvalidSessionStateError("No series selected for this file's group")

        file = await self.catalog.get_file(file_id)
        if file is None:
            raise FileNotInSessionError(file_id)
        context = await self._build_context(group, [file_id])
        current = await get_current_metadata(file, self.archive, self.catalog)

        if self.provider.provides_issue_index(source.source):
            issue = await self.provider.get_issue_detail(source.source, issue_id)
            if issue is None:
                raise SelectionNotFoundError(f"Issue {issue_id} not found")
            matched_issue = _matched_issue(source.source, issue)
            proposed = issue_proposed_values(issue, context.series_meta)
        else:
            # Virtual identities look like "volume-5" / "chapter-12.5"
            kind, _, raw_number = issue_id.partition("-")
            number = format_number(raw_number)
            try:
                content_type = MangaContentType(kind)
            except ValueError:
                raise SelectionNotFoundError(f"Issue {issue_id} not found") from None
            if not number:
                raise SelectionNotFoundError(f"Issue {issue_id} not found")
            parsed = group.parsed_files.get(file_id)
            classification = self._classify(change.filename, file.page_count or (parsed.page_count if parsed else None))
            classification.content_type = content_type
            classification.primary_number = number
            classification.display_title = generate_display_title(content_type, number)
            matched_issue = MatchedIssue(
                source=source.source,
                source_id=f"{content_type.value}-{number}",
                number=number,
                title=classification.display_title,
            )
            proposed = manga_proposed_values(classification, number, context.series_meta)

        fields = build_field_changes(current, proposed)
        self._attach_rename(session, file, fields, current, context)

        updated = FileChange(
            file_id=file_id,
            filename=change.filename,
            matched_issue=matched_issue,
            match_confidence=1.0,
            fields=fields,
            status=FileChangeStatus.MANUAL,
        )
        session.file_changes[file_id] = updated
        return updated

    @staticmethod
    def update_field_approvals(
        session: ApprovalSession,
        file_id: str,
        updates: dict[str, dict[str, Any]],
    ) -> FileChange:
        """Apply ``{field: {"approved"?: bool, "edited_value"?: value}}``; unknown fields are ignored."""
        change = session.file_changes.get(file_id)
        if change is None:
            raise FileNotInSessionError(file_id)
        for name, update in updates.items():
            field = change.fields.get(name)
            if field is None:
                continue
            if update.get("approved") is not None:
                field.approved = bool(update["approved"])
            if "edited_value" in update and update["edited_value"] is not None:
                field.edited = True
                field.edited_value = update["edited_value"]
        return change

    @staticmethod
    def reject_file(session: ApprovalSession, file_id: str) -> FileChange:
        change = session.file_changes.get(file_id)
        if change is None:
            raise FileNotInSessionError(file_id)
        change.status = FileChangeStatus.REJECTED
        return change

    def accept_all_files(self, session: ApprovalSession) -> None:
        """Un-reject every file and approve every field."""
        threshold = self.settings.issue_match_threshold
        for change in session.file_changes.values():
            if change.status == FileChangeStatus.REJECTED:
                has_match = change.matched_issue is not None and change.match_confidence >= threshold
                change.status = FileChangeStatus.MATCHED if has_match else FileChangeStatus.UNMATCHED
            for field in change.fields.values():
                field.approved = True

    @staticmethod
    def reject_all_files(session: ApprovalSession) -> None:
        for change in session.file_changes.values():
            change.status = FileChangeStatus.REJECTED
