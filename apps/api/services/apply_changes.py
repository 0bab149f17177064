"""Apply stage: commit approved changes to archives, filenames, sidecars and the catalog."""

import asyncio
import logging
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from db.models import ComicFile
from services.approval_models import (
    NON_COMICINFO_FIELDS,
    ApplyChangesResult,
    ApplyResult,
    ApprovalSession,
    FieldChange,
    FileChange,
    GroupStatus,
    ProgressCallback,
    SeriesGroup,
    SessionStatus,
    report_progress,
)
from services.catalog_store import CatalogStore
from services.comicinfo_archive import ArchiveError, ComicInfoArchiveStore, element_to_field, field_to_element
from services.field_changes import normalize_publisher, strip_html
from services.filename_parser import normalize_series_name
from services.issue_cache import IssueCache
from services.metadata_provider import MetadataProvider, SeriesMatch
from services.rename_template import RenameTemplate, resolve_collision, sanitize_filename
from services.series_sidecar import SeriesSidecar, SeriesSidecarStore, SidecarIdentity

logger = logging.getLogger(__name__)

RENAME_FIELD = "rename"

# Metadata source -> Series column holding its id
EXTERNAL_ID_COLUMNS = {
    "comicvine": "comicvine_id",
    "metron": "metron_id",
    "anilist": "anilist_id",
    "mal": "mal_id",
}

# Credit field -> Series.creator_roles key
CREATOR_ROLE_FIELDS = {
    "writer": "writer",
    "penciller": "penciller",
    "inker": "inker",
    "colorist": "colorist",
    "letterer": "letterer",
    "coverArtist": "cover_artist",
    "editor": "editor",
}


@dataclass
class _FolderSeries:
    selected: SeriesMatch
    issue_matching: SeriesMatch | None
    normalized_name: str


@dataclass
class _ApplyRun:
    """Mutable bookkeeping for one apply call."""
    results: list[ApplyResult] = field(default_factory=list)
    converted_ids: set[str] = field(default_factory=set)
    failed_ids: set[str] = field(default_factory=set)
    conversion_failed: int = 0

    def record(self, result: ApplyResult) -> None:
        self.results.append(result)
        if not result.success and not result.skipped:
            self.failed_ids.add(result.file_id)


def comicinfo_updates(change: FileChange) -> dict[str, Any]:
    """Approved field values as ComicInfo elements; edits win over proposals."""
    updates: dict[str, Any] = {}
    for name, field_change in change.approved_fields().items():
        if name in NON_COMICINFO_FIELDS:
            continue
        value = field_change.effective_value
        if value is not None:
            updates[field_to_element(name)] = value
    return updates


def _rename_field(change: FileChange) -> FieldChange | None:
    return change.fields.get(RENAME_FIELD)


def authoritative_publisher(series: SeriesMatch, changes: list[FileChange]) -> str | None:
    """
    Publisher every file of a series should carry.

    The series record wins; otherwise the most common approved publisher
    among the files. Imprints resolve to their parent publisher.
    """
    if series.publisher:
        return normalize_publisher(series.publisher)[0]
    counts: Counter[str] = Counter()
    for change in changes:
        field_change = change.approved_fields().get("publisher")
        if field_change is None:
            continue
        publisher = normalize_publisher(str(field_change.effective_value or ""))[0]
        if publisher:
            counts[publisher] += 1
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def rollup_creator_roles(changes: Iterable[FileChange]) -> dict[str, list[str]]:
    """Series-level role -> names from the approved credit fields of written files."""
    roles: dict[str, list[str]] = {}
    for change in changes:
        approved = change.approved_fields()
        for field_name, role in CREATOR_ROLE_FIELDS.items():
            field_change = approved.get(field_name)
            if field_change is None or not field_change.effective_value:
                continue
            names = roles.setdefault(role, [])
            for name in str(field_change.effective_value).split(","):
                name = name.strip()
                if name and name not in names:
                    names.append(name)
    return roles


def merge_creator_roles(existing: dict[str, list[str]] | None, new: dict[str, list[str]]) -> dict[str, list[str]]:
    """Union of two role maps; names already on the series keep their order."""
    merged = {role: list(names) for role, names in (existing or {}).items()}
    for role, names in new.items():
        current = merged.setdefault(role, [])
        for name in names:
            if name not in current:
                current.append(name)
    return merged


class ApplyStage:
    """
    Commits a reviewed session.

    Phases run in order: publisher normalization, conversion, metadata
    write and rename, series sidecars, then catalog sync and cache
    invalidation. A failing file is recorded in the result and never
    stops its siblings.
    """

    def __init__(
        self,
        archive: ComicInfoArchiveStore,
        catalog: CatalogStore,
        rename_template: RenameTemplate,
        sidecars: SeriesSidecarStore,
        provider: MetadataProvider,
        issue_cache: IssueCache,
    ) -> None:
        self.archive = archive
        self.catalog = catalog
        self.rename_template = rename_template
        self.sidecars = sidecars
        self.provider = provider
        self.issue_cache = issue_cache

    async def apply_changes(
        self,
        session: ApprovalSession,
        on_progress: ProgressCallback | None = None,
    ) -> ApplyChangesResult:
        session.status = SessionStatus.APPLYING
        session.touch()
        run = _ApplyRun()

        series_records = await self._series_details(session)
        self._normalize_publishers(session, series_records)

        pending = [
            change for change in session.file_changes.values()
            if change.approved_fields()
        ]
        files = {f.id: f for f in await self.catalog.get_files([c.file_id for c in pending])}

        await self._convert_phase(pending, files, run, on_progress)
        await self._write_phase(session, files, run, on_progress)

        successful_ids = [r.file_id for r in run.results if r.success]
        await self._mark_stats_dirty(successful_ids, on_progress)
        await self._write_sidecars(session, on_progress)
        touched_series = await self._sync_series(session, series_records, set(successful_ids), on_progress)
        await self._invalidate(session, touched_series, on_progress)

        result = self._summarize(run)
        session.apply_result = result
        session.status = SessionStatus.COMPLETE
        session.touch()

        details = [f"{result.successful} successful", f"{result.failed} failed"]
        if result.skipped:
            details.append(f"{result.skipped} skipped")
        if result.converted:
            details.append(f"{result.converted} converted")
        if result.renamed:
            details.append(f"{result.renamed} renamed")
        if result.collisions:
            details.append(f"{result.collisions} collision(s) resolved")
        report_progress(on_progress, "Apply complete", ", ".join(details))
        logger.info("Applied session %s: %s", session.id, ", ".join(details))
        return result

    # ------------------------------------------------------------------
    # Series records and publisher normalization
    # ------------------------------------------------------------------

    async def _series_details(self, session: ApprovalSession) -> dict[tuple[str, str], SeriesMatch]:
        """Full series record per approved selection; reuses the record file review fetched."""
        details: dict[tuple[str, str], SeriesMatch] = {}
        for group, selected in self._approved_groups(session):
            key = (selected.source, selected.source_id)
            if key in details:
                continue
            cached = group.series_detail
            if cached is not None and (cached.source, cached.source_id) == key:
                details[key] = cached
                continue
            try:
                full = await self.provider.get_series_by_id(selected.source, selected.source_id)
            except Exception as e:
                logger.warning("Series detail unavailable for %s:%s: %s", selected.source, selected.source_id, e)
                full = None
            details[key] = full or selected
        return details

    def _normalize_publishers(
        self,
        session: ApprovalSession,
        details: dict[tuple[str, str], SeriesMatch],
    ) -> None:
        """Write one publisher per series group so the catalog never splits a series by publisher."""
        for group, selected in self._approved_groups(session):
            changes = [session.file_changes[fid] for fid in group.file_ids if fid in session.file_changes]
            publisher = authoritative_publisher(details[(selected.source, selected.source_id)], changes)
            if publisher is None:
                continue
            for change in changes:
                field_change = change.approved_fields().get("publisher")
                if field_change is None or field_change.edited:
                    continue
                if field_change.proposed != publisher:
                    logger.debug("Publisher for %s normalized to %r", change.filename, publisher)
                    field_change.proposed = publisher

    # ------------------------------------------------------------------
    # Phase 1: conversion
    # ------------------------------------------------------------------

    async def _convert_phase(
        self,
        pending: list[FileChange],
        files: dict[str, ComicFile],
        run: _ApplyRun,
        on_progress: ProgressCallback | None,
    ) -> None:
        to_convert = [c for c in pending if c.file_id in files and self.archive.requires_conversion(files[c.file_id].path)]
        if not to_convert:
            return

        report_progress(on_progress, "Converting CBR files to CBZ format", f"{len(to_convert)} file(s) to convert")
        for i, change in enumerate(to_convert, start=1):
            file = files[change.file_id]
            report_progress(on_progress, f"Converting: {change.filename}", f"{i} of {len(to_convert)}")
            try:
                conversion = await self.archive.convert(file.path)
            except Exception as e:
                logger.exception("Unexpected conversion failure for %s", file.path)
                conversion = None
                error = str(e)
            else:
                error = conversion.error

            if conversion is not None and conversion.success and conversion.new_path:
                new_path = Path(conversion.new_path)
                await self.catalog.update_file_path(file.id, str(new_path), new_path.name)
                file.path = str(new_path)
                file.filename = new_path.name
                run.converted_ids.add(file.id)
                report_progress(on_progress, f"Converted: {change.filename}", "Success")
            else:
                run.conversion_failed += 1
                run.record(ApplyResult(
                    file_id=file.id,
                    filename=change.filename,
                    success=False,
                    error=f"Conversion failed: {error or 'Unknown error'}",
                ))
                report_progress(on_progress, f"Conversion failed: {change.filename}", error)

        report_progress(
            on_progress,
            "Conversion complete",
            f"{len(run.converted_ids)} converted, {run.conversion_failed} failed",
        )

    # ------------------------------------------------------------------
    # Phase 2: write metadata and rename
    # ------------------------------------------------------------------

    async def _write_phase(
        self,
        session: ApprovalSession,
        files: dict[str, ComicFile],
        run: _ApplyRun,
        on_progress: ProgressCallback | None,
    ) -> None:
        changes = list(session.file_changes.values())
        report_progress(on_progress, "Applying metadata changes", f"{len(changes)} file(s) to process")

        for i, change in enumerate(changes, start=1):
            if change.file_id in run.failed_ids:
                continue
            if not change.approved_fields():
                # Rejected files and files with nothing approved are left untouched
                run.record(ApplyResult(file_id=change.file_id, filename=change.filename, success=False, skipped=True))
                continue

            report_progress(on_progress, f"Applying: {change.filename}", f"{i} of {len(changes)}")
            file = files.get(change.file_id)
            if file is None:
                run.record(ApplyResult(
                    file_id=change.file_id,
                    filename=change.filename,
                    success=False,
                    error="File not found in catalog",
                ))
                continue

            try:
                result = await self._apply_file(session, change, file, on_progress)
            except Exception as e:
                logger.warning("Apply failed for %s: %s", change.filename, e)
                result = ApplyResult(file_id=change.file_id, filename=change.filename, success=False, error=str(e))
            result.converted = change.file_id in run.converted_ids
            run.record(result)

    async def _apply_file(
        self,
        session: ApprovalSession,
        change: FileChange,
        file: ComicFile,
        on_progress: ProgressCallback | None,
    ) -> ApplyResult:
        updates = comicinfo_updates(change)
        if updates:
            written = await self.archive.merge(file.path, updates)
            if not written.success:
                raise ArchiveError(written.error or "Failed to write ComicInfo.xml")

        try:
            comicinfo = await self.archive.read_all(file.path) or {}
        except ArchiveError as e:
            logger.warning("Could not re-read ComicInfo for %s: %s", file.filename, e)
            comicinfo = {}

        new_filename, had_collision = await self._target_filename(session, change, file, comicinfo)
        renamed = False
        original_filename = file.filename
        if new_filename and new_filename != file.filename:
            new_path = Path(file.path).with_name(new_filename)
            try:
                await asyncio.to_thread(Path(file.path).rename, new_path)
            except OSError as e:
                logger.warning("Failed to rename %s to %s: %s", file.filename, new_filename, e)
            else:
                await self.catalog.update_file_path(file.id, str(new_path), new_filename)
                renamed = True
                if had_collision:
                    report_progress(
                        on_progress,
                        f"Collision detected for {file.filename}",
                        f"Using: {new_filename} - you may want to review for duplicates",
                    )
                else:
                    report_progress(on_progress, f"Renaming: {file.filename}", f"to {new_filename}")

        await self.catalog.mark_file_indexed(file.id)
        if comicinfo:
            await self.catalog.refresh_file_metadata(file.id, comicinfo)

        return ApplyResult(
            file_id=file.id,
            filename=new_filename if renamed else file.filename,
            success=True,
            renamed=renamed,
            had_collision=had_collision if renamed else False,
            original_filename=original_filename if renamed else None,
        )

    async def _target_filename(
        self,
        session: ApprovalSession,
        change: FileChange,
        file: ComicFile,
        comicinfo: dict[str, Any],
    ) -> tuple[str | None, bool]:
        """Final filename for a written file and whether a collision altered it."""
        rename = _rename_field(change)
        if rename is not None and not rename.approved:
            return None, False

        if rename is not None and rename.edited and rename.edited_value:
            candidate = sanitize_filename(str(rename.edited_value))
            if not Path(candidate).suffix:
                candidate += Path(file.path).suffix
        else:
            series_context: dict[str, Any] = {}
            if file.series_id:
                series = await self.catalog.get_series(file.series_id)
                if series is not None:
                    series_context = {
                        "name": series.name,
                        "publisher": series.publisher,
                        "start_year": series.start_year,
                        "issue_count": series.issue_count,
                    }
            metadata = {element_to_field(element): value for element, value in comicinfo.items()}
            candidate = self.rename_template.propose(
                metadata,
                library_id=session.library_id or file.library_id,
                file_path=file.path,
                series_context=series_context,
            )

        if not candidate or candidate == file.filename:
            return None, False
        current = Path(file.path)
        return await asyncio.to_thread(resolve_collision, current.parent, candidate, current)

    async def _mark_stats_dirty(self, file_ids: list[str], on_progress: ProgressCallback | None) -> None:
        if not file_ids:
            return
        report_progress(on_progress, "Marking stats for recalculation", f"{len(file_ids)} file(s)")
        try:
            await self.catalog.mark_stats_dirty(file_ids)
        except Exception as e:
            logger.warning("Failed to mark stats dirty for %d file(s): %s", len(file_ids), e)

    # ------------------------------------------------------------------
    # Phase 3: series sidecars
    # ------------------------------------------------------------------

    async def _write_sidecars(self, session: ApprovalSession, on_progress: ProgressCallback | None) -> None:
        report_progress(on_progress, "Creating series metadata files", "Grouping files by folder and series")
        folders: dict[str, list[_FolderSeries]] = {}

        for group, selected in self._approved_groups(session):
            normalized = normalize_series_name(group.display_name or selected.name)
            for file in await self.catalog.get_files(group.file_ids):
                entries = folders.setdefault(str(Path(file.path).parent), [])
                if any(e.selected.source_id == selected.source_id for e in entries):
                    continue
                entries.append(_FolderSeries(selected, group.issue_matching_series, normalized))

        written = 0
        failed = 0
        for folder, entries in folders.items():
            try:
                if len(entries) == 1:
                    entry = entries[0]
                    report_progress(on_progress, "Creating series.json", folder)
                    await self.sidecars.write_series_json(
                        folder, SeriesSidecar.from_approval(entry.selected, entry.issue_matching)
                    )
                else:
                    report_progress(on_progress, "Creating mixed series cache", f"{folder} ({len(entries)} series)")
                    await self.sidecars.write_series_cache(
                        folder, {e.normalized_name: SidecarIdentity.from_match(e.selected) for e in entries}
                    )
                written += 1
            except OSError as e:
                failed += 1
                logger.warning("Failed to write series sidecar in %s: %s", folder, e)

        if written or failed:
            report_progress(on_progress, "Series metadata creation complete", f"{written} written, {failed} failed")

    # ------------------------------------------------------------------
    # Phase 4: catalog sync and invalidation
    # ------------------------------------------------------------------

    @staticmethod
    def _approved_groups(session: ApprovalSession) -> list[tuple[SeriesGroup, SeriesMatch]]:
        return [
            (g, g.selected_series) for g in session.series_groups
            if g.status == GroupStatus.APPROVED and g.selected_series is not None
        ]

    async def _sync_series(
        self,
        session: ApprovalSession,
        series_records: dict[tuple[str, str], SeriesMatch],
        written_ids: set[str],
        on_progress: ProgressCallback | None,
    ) -> set[str]:
        """Push source metadata into each approved group's catalog series. Returns touched series ids."""
        report_progress(on_progress, "Updating series metadata", "Syncing database records with source data")
        touched: set[str] = set()
        updated = 0
        failed = 0

        for group, selected in self._approved_groups(session):
            try:
                files = await self.catalog.get_files(group.file_ids)
                series_id = next((f.series_id for f in files if f.series_id), None)
                if series_id is None:
                    logger.debug("No catalog series for group %r", group.display_name)
                    continue
                series = await self.catalog.get_series(series_id)
                if series is None:
                    continue
                touched.add(series_id)

                existing = series.external_ids().get(selected.source)
                if existing and existing != selected.source_id:
                    logger.info(
                        "Series %s already linked to %s:%s, not relinking to %s",
                        series_id, selected.source, existing, selected.source_id,
                    )
                    continue

                values = self._series_values(series_records.get((selected.source, selected.source_id), selected))
                written = [
                    session.file_changes[fid] for fid in group.file_ids
                    if fid in written_ids and fid in session.file_changes
                ]
                roles = merge_creator_roles(series.creator_roles, rollup_creator_roles(written))
                if roles:
                    report_progress(on_progress, "Aggregating creator roles", selected.name)
                    values["creator_roles"] = roles
                    if not values["creators"]:
                        values["creators"] = list(dict.fromkeys(n for names in roles.values() for n in names))

                fields = await self.catalog.update_series(series_id, values)
                updated += 1
                logger.info("Updated series %s from %s: %s", series_id, selected.source, ", ".join(fields) or "no changes")
            except Exception as e:
                failed += 1
                logger.warning("Series sync failed for group %r: %s", group.display_name, e)

        report_progress(on_progress, "Series metadata update complete", f"{updated} updated, {failed} failed")
        return touched

    @staticmethod
    def _series_values(match: SeriesMatch) -> dict[str, Any]:
        values: dict[str, Any] = {
            "publisher": normalize_publisher(match.publisher)[0],
            "start_year": match.start_year,
            "end_year": match.end_year,
            "issue_count": match.issue_count,
            "summary": strip_html(match.description),
            "deck": match.deck,
            "cover_url": match.cover_url,
            "characters": match.characters,
            "locations": match.locations,
            "creators": match.creators,
            "genres": match.genres,
            "aliases": match.aliases,
        }
        column = EXTERNAL_ID_COLUMNS.get(match.source)
        if column:
            values[column] = match.source_id
        return values

    async def _invalidate(
        self,
        session: ApprovalSession,
        touched_series: set[str],
        on_progress: ProgressCallback | None,
    ) -> None:
        report_progress(on_progress, "Refreshing metadata caches", "Updating file and series data")
        for group, selected in self._approved_groups(session):
            source = group.issue_matching_series or selected
            self.issue_cache.invalidate(source.source, source.source_id)
        try:
            await self.catalog.touch_series(touched_series)
        except Exception as e:
            logger.warning("Failed to refresh %d series: %s", len(touched_series), e)

    @staticmethod
    def _summarize(run: _ApplyRun) -> ApplyChangesResult:
        results = run.results
        return ApplyChangesResult(
            total=len(results),
            successful=sum(1 for r in results if r.success),
            failed=sum(1 for r in results if not r.success and not r.skipped),
            skipped=sum(1 for r in results if r.skipped),
            converted=len(run.converted_ids),
            conversion_failed=run.conversion_failed,
            renamed=sum(1 for r in results if r.renamed),
            collisions=sum(1 for r in results if r.had_collision),
            results=results,
        )
