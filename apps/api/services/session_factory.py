"""Build a new approval session from a batch of catalog files."""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from db.models import ComicFile, LibraryType, Series
from services.approval_errors import ApprovalError
from services.approval_models import (
    ApprovalSession,
    GroupStatus,
    ParsedFileData,
    ProgressCallback,
    SeriesGroup,
    SessionStatus,
    report_progress,
)
from services.catalog_store import CatalogStore
from services.filename_parser import normalize_series_name, parse_filename
from services.metadata_provider import MetadataProvider, SeriesMatch, SeriesQuery
from services.series_approval import SeriesApprovalStage
from services.series_sidecar import SeriesCacheSidecar, SeriesSidecar, SeriesSidecarStore

logger = logging.getLogger(__name__)


@dataclass
class _PendingGroup:
    query: SeriesQuery
    file_ids: list[str] = field(default_factory=list)
    filenames: list[str] = field(default_factory=list)
    parsed_files: dict[str, ParsedFileData] = field(default_factory=dict)


def _parse(file: ComicFile, override: ParsedFileData | None) -> ParsedFileData:
    if override is not None and override.series:
        return override.model_copy(update={"page_count": override.page_count or file.page_count})
    parsed = parse_filename(file.filename)
    return ParsedFileData(
        series=parsed.series,
        number=parsed.number,
        volume=parsed.volume,
        chapter=parsed.chapter,
        year=parsed.year,
        publisher=parsed.publisher,
        page_count=file.page_count,
    )


def _approved_group(
    match: SeriesMatch,
    origin: str,
    issue_matching: SeriesMatch | None = None,
    folder_path: str | None = None,
) -> SeriesGroup:
    return SeriesGroup(
        display_name=match.name,
        query=SeriesQuery(series=match.name, year=match.start_year),
        search_results=[match],
        selected_series=match,
        issue_matching_series=issue_matching,
        status=GroupStatus.APPROVED,
        pre_approved=True,
        pre_approved_from=origin,
        folder_path=folder_path,
    )


def _add_file(group: SeriesGroup, file: ComicFile, parsed: ParsedFileData) -> None:
    group.file_ids.append(file.id)
    group.filenames.append(file.filename)
    group.parsed_files[file.id] = parsed


class SessionFactory:
    """
    Creates sessions: groups files by series and pre-approves what is already known.

    Known identities come from a folder's series.json, from catalog series that
    carry an external id, or (in mixed-series mode) from .series-cache.json.
    """

    def __init__(
        self,
        provider: MetadataProvider,
        catalog: CatalogStore,
        sidecars: SeriesSidecarStore,
        series_approval: SeriesApprovalStage,
    ) -> None:
        self.provider = provider
        self.catalog = catalog
        self.sidecars = sidecars
        self.series_approval = series_approval

    async def create_session(
        self,
        file_ids: Iterable[str],
        exclude_file_ids: Iterable[str] = (),
        mixed_series: bool = False,
        parsed_overrides: dict[str, ParsedFileData] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ApprovalSession:
        excluded = set(exclude_file_ids)
        wanted = list(dict.fromkeys(fid for fid in file_ids if fid not in excluded))
        if not wanted:
            raise ApprovalError("No files to process after exclusions")

        report_progress(on_progress, "Starting metadata approval session", f"Processing {len(wanted)} files")
        files = await self.catalog.get_files(wanted)
        if not files:
            raise ApprovalError("None of the requested files exist")
        report_progress(on_progress, f"Loaded {len(files)} files", "Ready to parse filenames")

        library_id = files[0].library_id
        library_type = LibraryType.WESTERN
        library = await self.catalog.get_library(library_id) if library_id else None
        if library is not None:
            library_type = library.type
        if library_type == LibraryType.MANGA:
            report_progress(on_progress, "Library type: Manga", "Sources without an issue index are searched first")

        folders = sorted({str(Path(f.path).parent) for f in files})
        series_json: dict[str, SeriesSidecar] = {}
        series_cache: dict[str, SeriesCacheSidecar] = {}
        if mixed_series:
            report_progress(on_progress, "Mixed series mode enabled", "Checking for cached series mappings")
            for folder in folders:
                cache = await self.sidecars.read_series_cache(folder)
                if cache is not None:
                    series_cache[folder] = cache
        else:
            report_progress(on_progress, "Checking for existing series.json files")
            for folder in folders:
                sidecar = await self.sidecars.read_series_json(folder)
                if sidecar is not None:
                    series_json[folder] = sidecar
            if series_json:
                report_progress(
                    on_progress,
                    f"Found {len(series_json)} folder(s) with series.json",
                    "Will skip series search for these",
                )

        catalog_series = await self.catalog.get_series_map(f.series_id for f in files if f.series_id)

        report_progress(on_progress, "Parsing filenames and detecting series")
        pre_approved: list[SeriesGroup] = []
        by_key: dict[tuple[str, str], SeriesGroup] = {}
        pending: dict[str, _PendingGroup] = {}

        for file in files:
            folder = str(Path(file.path).parent)
            parsed = _parse(file, (parsed_overrides or {}).get(file.id))
            series_key = normalize_series_name(parsed.series or file.filename)

            sidecar = series_json.get(folder)
            if sidecar is not None:
                key = ("sidecar", folder)
                if key not in by_key:
                    issue_matching = sidecar.issue_matching.to_match() if sidecar.issue_matching else None
                    by_key[key] = _approved_group(sidecar.to_match(), "sidecar", issue_matching, folder)
                    pre_approved.append(by_key[key])
                    report_progress(on_progress, f'Using series.json: "{sidecar.name}"', f"Folder: {Path(folder).name}")
                _add_file(by_key[key], file, parsed)
                continue

            linked = self._catalog_match(catalog_series.get(file.series_id or ""), library_type)
            if linked is not None:
                key = ("catalog", f"{linked.source}:{linked.source_id}")
                if key not in by_key:
                    by_key[key] = _approved_group(linked, "catalog")
                    pre_approved.append(by_key[key])
                    report_progress(on_progress, f'Using database series: "{linked.name}"', f"Source: {linked.source}")
                _add_file(by_key[key], file, parsed)
                continue

            cache = series_cache.get(folder)
            cached = cache.series_mappings.get(series_key) if cache else None
            if cached is not None:
                key = ("series_cache", f"{cached.source}:{cached.source_id}")
                if key not in by_key:
                    by_key[key] = _approved_group(cached.to_match(), "series_cache")
                    pre_approved.append(by_key[key])
                    report_progress(on_progress, f'Using cached series: "{cached.name}"', f"Source: {cached.source}")
                _add_file(by_key[key], file, parsed)
                continue

            group = pending.get(series_key)
            if group is None:
                group = pending[series_key] = _PendingGroup(
                    query=SeriesQuery(
                        series=parsed.series or "Unknown Series",
                        issue_number=parsed.number,
                        year=parsed.year,
                        publisher=parsed.publisher,
                    )
                )
            elif parsed.year and not group.query.year:
                group.query.year = parsed.year
            group.file_ids.append(file.id)
            group.filenames.append(file.filename)
            group.parsed_files[file.id] = parsed
            report_progress(
                on_progress,
                f"Parsing: {file.filename}",
                f'Detected: "{parsed.series or "Unknown"}" #{parsed.number or "?"}',
            )

        pending_groups = [
            SeriesGroup(
                display_name=g.query.series,
                query=g.query,
                file_ids=g.file_ids,
                filenames=g.filenames,
                parsed_files=g.parsed_files,
            )
            for g in pending.values()
        ]
        groups = [*pre_approved, *pending_groups]
        report_progress(
            on_progress,
            f"Grouped into {len(groups)} series",
            f"{len(pre_approved)} pre-approved, {len(pending_groups)} need review",
        )

        session = ApprovalSession(
            series_groups=groups,
            current_series_index=len(pre_approved),
            library_id=library_id,
            library_type=library_type,
            mixed_series=mixed_series,
        )

        if not pending_groups:
            report_progress(on_progress, "All series pre-approved", "Preparing file changes directly")
            await self.series_approval.run_file_review(session, on_progress)
            report_progress(on_progress, "Session ready", f"{len(session.file_changes)} files to review")
        else:
            session.status = SessionStatus.SERIES_APPROVAL
            await self.series_approval.search_for_current_series(session, on_progress)
            found = len(session.series_groups[session.current_series_index].search_results)
            report_progress(on_progress, f"Found {found} matches", "Ready for series approval")
            report_progress(on_progress, "Session ready", f"{len(pending_groups)} series to review")

        logger.info(
            "Created approval session %s: %d files, %d groups (%d pre-approved)",
            session.id, len(files), len(groups), len(pre_approved),
        )
        return session

    def _catalog_match(self, series: Series | None, library_type: LibraryType) -> SeriesMatch | None:
        """Identity for a catalog series already linked to a registered source."""
        if series is None:
            return None
        external = series.external_ids()
        for source in self.provider.prioritized_sources(library_type):
            if source in external:
                return SeriesMatch(
                    source=source,
                    source_id=external[source],
                    name=series.name,
                    start_year=series.start_year,
                    end_year=series.end_year,
                    publisher=series.publisher,
                    issue_count=series.issue_count,
                    description=series.summary or series.deck,
                    deck=series.deck,
                    cover_url=series.cover_url,
                    confidence=1.0,
                )
        return None
