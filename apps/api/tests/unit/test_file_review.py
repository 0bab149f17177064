"""Unit tests for file review: issue matching, field diffs and file actions."""

from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from core.config import Settings
from services.approval_errors import FileNotInSessionError, InvalidSessionStateError, SelectionNotFoundError
from services.approval_models import ApprovalSession, FileChangeStatus, SeriesGroup, SessionStatus
from services.catalog_store import CatalogStore
from services.issue_matcher import IssueMatchResult
from services.manga_classifier import classify_manga_file
from services.metadata_approval import MetadataApprovalService
from services.metadata_provider import IssueRecord, MetadataProvider, SeriesQuery


async def _reviewed(service: MetadataApprovalService, library: dict[str, Any]) -> str:
    """Session with Batman and Saga approved, sitting in file review."""
    session = await service.create_session([f.id for f in library["batman"] + library["saga"]])
    await service.approve_series(session.id, "91273")
    await service.approve_series(session.id, "48000")
    return session.id


class TestWesternReview:
    """Tests for series with a per-issue index."""

    @pytest.mark.asyncio
    async def test_files_match_issues_by_number(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        session_id = await _reviewed(approval_service, western_library)
        session = approval_service.get_session(session_id)
        first, second = western_library["batman"]

        change = session.file_changes[first.id]
        assert change.status == FileChangeStatus.MATCHED
        assert change.match_confidence == 1.0
        assert change.matched_issue is not None
        assert change.matched_issue.source_id == "cv-1"
        assert change.fields["series"].proposed == "Batman"
        assert change.fields["number"].proposed == "1"
        assert change.fields["title"].proposed == "I Am Gotham, Part One"
        assert change.fields["publisher"].proposed == "DC Comics"
        assert change.fields["rename"].current == "Batman #1.cbz"
        assert change.fields["rename"].proposed == "Batman #001 (2016).cbz"

        other = session.file_changes[second.id]
        assert other.matched_issue is not None and other.matched_issue.source_id == "cv-2"
        assert other.match_confidence == 1.0

    @pytest.mark.asyncio
    async def test_missing_credits_are_backfilled_once(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
        comicvine_source,
    ) -> None:
        session_id = await _reviewed(approval_service, western_library)
        session = approval_service.get_session(session_id)
        first, second = western_library["batman"]

        assert sorted(comicvine_source.detail_calls) == ["cv-1", "cv-2"]
        fields = session.file_changes[first.id].fields
        assert fields["writer"].proposed == "Tom King"
        assert fields["penciller"].proposed == "David Finch"
        assert fields["coverArtist"].proposed == "David Finch"
        # "artist" credits fill the penciller slot
        assert session.file_changes[second.id].fields["penciller"].proposed == "David Finch"

        available = await approval_service.get_available_issues_for_file(session_id, first.id)
        by_id = {issue.id: issue for issue in available.issues}
        assert by_id["cv-1"].has_credits
        assert not by_id["cv-3"].has_credits

    @pytest.mark.asyncio
    async def test_unchanged_values_are_not_proposed(
        self,
        approval_service: MetadataApprovalService,
        seeder,
        make_cbz: Callable[..., Path],
        tmp_path: Path,
    ) -> None:
        library = await seeder.library(tmp_path)
        path = make_cbz(tmp_path / "Batman" / "Batman #1.cbz", {"Series": "Batman", "Number": "1", "Year": 2016})
        file = await seeder.file(library, path)

        session = await approval_service.create_session([file.id])
        await approval_service.approve_series(session.id, "91273")

        fields = approval_service.get_session(session.id).file_changes[file.id].fields
        assert "series" not in fields
        assert "number" not in fields
        assert "year" not in fields
        assert fields["month"].proposed == 8

    @pytest.mark.asyncio
    async def test_unknown_number_is_unmatched(
        self,
        approval_service: MetadataApprovalService,
        seeder,
        make_cbz: Callable[..., Path],
        tmp_path: Path,
    ) -> None:
        library = await seeder.library(tmp_path)
        file = await seeder.file(library, make_cbz(tmp_path / "Batman #9.cbz"))

        session = await approval_service.create_session([file.id])
        await approval_service.approve_series(session.id, "91273")

        change = approval_service.get_session(session.id).file_changes[file.id]
        assert change.status == FileChangeStatus.UNMATCHED
        assert change.matched_issue is None
        assert change.match_confidence == 0.0
        assert change.fields == {}

    @pytest.mark.asyncio
    async def test_best_guess_below_threshold(
        self,
        provider: MetadataProvider,
        catalog: CatalogStore,
        test_settings: Settings,
        comicvine_source,
        seeder,
        make_cbz: Callable[..., Path],
        tmp_path: Path,
    ) -> None:
        comicvine_source.issues["91273"].append(IssueRecord(id="cv-5a", number="5A", title="Variant"))
        settings = test_settings.model_copy(update={"issue_match_threshold": 0.8})
        service = MetadataApprovalService.build(provider, catalog, settings=settings)
        library = await seeder.library(tmp_path)
        file = await seeder.file(library, make_cbz(tmp_path / "Batman #5.cbz"))

        session = await service.create_session([file.id])
        await service.approve_series(session.id, "91273")

        change = service.get_session(session.id).file_changes[file.id]
        assert change.status == FileChangeStatus.UNMATCHED
        assert change.match_confidence == 0.0
        assert change.matched_issue is not None
        assert change.matched_issue.source_id == "cv-5a"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("confidence", "expected"),
        [(0.5, FileChangeStatus.MATCHED), (0.4999, FileChangeStatus.UNMATCHED)],
    )
    async def test_default_threshold_is_inclusive(
        self,
        approval_service: MetadataApprovalService,
        comicvine_source,
        seeder,
        make_cbz: Callable[..., Path],
        tmp_path: Path,
        confidence: float,
        expected: FileChangeStatus,
    ) -> None:
        assert approval_service.file_review.settings.issue_match_threshold == 0.5
        library = await seeder.library(tmp_path)
        file = await seeder.file(library, make_cbz(tmp_path / "Batman" / "Batman #1.cbz"))
        scored = IssueMatchResult(comicvine_source.issues["91273"][0], confidence, "title_fuzzy", "1")

        session = await approval_service.create_session([file.id])
        with patch("services.file_review.match_file_to_issue", return_value=scored):
            await approval_service.approve_series(session.id, "91273")

        change = approval_service.get_session(session.id).file_changes[file.id]
        assert change.status == expected
        if expected == FileChangeStatus.MATCHED:
            assert change.match_confidence == 0.5

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("threshold", "expected"),
        [(0.7, FileChangeStatus.MATCHED), (0.71, FileChangeStatus.UNMATCHED)],
    )
    async def test_variant_score_at_threshold(
        self,
        provider: MetadataProvider,
        catalog: CatalogStore,
        test_settings: Settings,
        comicvine_source,
        seeder,
        make_cbz: Callable[..., Path],
        tmp_path: Path,
        threshold: float,
        expected: FileChangeStatus,
    ) -> None:
        comicvine_source.issues["91273"].append(IssueRecord(id="cv-5a", number="5A", title="Variant"))
        settings = test_settings.model_copy(update={"issue_match_threshold": threshold})
        service = MetadataApprovalService.build(provider, catalog, settings=settings)
        library = await seeder.library(tmp_path)
        file = await seeder.file(library, make_cbz(tmp_path / "Batman #5.cbz"))

        session = await service.create_session([file.id])
        await service.approve_series(session.id, "91273")

        change = service.get_session(session.id).file_changes[file.id]
        assert change.status == expected
        assert change.matched_issue is not None and change.matched_issue.source_id == "cv-5a"

    @pytest.mark.asyncio
    async def test_series_without_issues_leaves_files_unmatched(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        session_id = await _reviewed(approval_service, western_library)
        saga_id = western_library["saga"][0].id

        change = approval_service.get_session(session_id).file_changes[saga_id]
        assert change.status == FileChangeStatus.UNMATCHED

    @pytest.mark.asyncio
    async def test_group_without_selection_is_rejected(
        self,
        approval_service: MetadataApprovalService,
    ) -> None:
        group = SeriesGroup(display_name="Batman", query=SeriesQuery(series="Batman"), file_ids=["f1"])
        session = ApprovalSession(series_groups=[group])

        with pytest.raises(InvalidSessionStateError):
            await approval_service.file_review._series_detail(group)
        with pytest.raises(InvalidSessionStateError):
            await approval_service.file_review._review_group(session, group, ["f1"], None)

    @pytest.mark.asyncio
    async def test_group_failure_only_affects_that_group(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        session = await approval_service.create_session(
            [f.id for f in western_library["batman"] + western_library["saga"]]
        )
        await approval_service.approve_series(session.id, "91273")

        catalog = approval_service.file_review.catalog
        with patch.object(catalog, "get_files", side_effect=RuntimeError("catalog offline")):
            await approval_service.approve_series(session.id, "48000")

        done = approval_service.get_session(session.id)
        assert done.status == SessionStatus.FILE_REVIEW
        assert {c.status for c in done.file_changes.values()} == {FileChangeStatus.UNMATCHED}


class TestMangaReview:
    """Tests for sources without an issue index."""

    @pytest.mark.asyncio
    async def test_files_get_virtual_issue_identities(
        self,
        approval_service: MetadataApprovalService,
        manga_library: dict[str, Any],
        comicvine_source,
    ) -> None:
        volume, chapter = manga_library["files"]
        session = await approval_service.create_session([volume.id, chapter.id])
        assert session.library_type == "manga"
        assert session.series_groups[0].selected_series is not None
        assert session.series_groups[0].selected_series.source == "anilist"

        await approval_service.approve_series(session.id, "30013")
        done = approval_service.get_session(session.id)

        volume_change = done.file_changes[volume.id]
        assert volume_change.status == FileChangeStatus.MATCHED
        assert volume_change.matched_issue is not None
        assert volume_change.matched_issue.source_id == "volume-5"
        assert volume_change.matched_issue.title == "Volume 5"
        assert volume_change.match_confidence == 0.9
        assert volume_change.fields["format"].proposed == "Volume"
        assert volume_change.fields["writer"].proposed == "Eiichiro Oda"
        assert volume_change.fields["manga"].proposed == "Yes"

        chapter_change = done.file_changes[chapter.id]
        assert chapter_change.matched_issue is not None
        assert chapter_change.matched_issue.source_id == "chapter-12.5"
        assert chapter_change.fields["format"].proposed == "Chapter"

        assert comicvine_source.issue_list_calls == []

    @pytest.mark.asyncio
    async def test_manual_virtual_selection(
        self,
        approval_service: MetadataApprovalService,
        manga_library: dict[str, Any],
    ) -> None:
        volume, chapter = manga_library["files"]
        session = await approval_service.create_session([volume.id, chapter.id])
        await approval_service.approve_series(session.id, "30013")

        change = await approval_service.manual_select_issue(session.id, chapter.id, "chapter-13")

        assert change.status == FileChangeStatus.MANUAL
        assert change.match_confidence == 1.0
        assert change.matched_issue is not None
        assert change.matched_issue.source_id == "chapter-13"
        assert change.fields["title"].proposed == "Chapter 13"

        with pytest.raises(SelectionNotFoundError):
            await approval_service.manual_select_issue(session.id, chapter.id, "page-3")

    @pytest.mark.asyncio
    async def test_manual_selection_uses_classifier_settings(
        self,
        provider: MetadataProvider,
        catalog: CatalogStore,
        test_settings: Settings,
        manga_library: dict[str, Any],
    ) -> None:
        settings = test_settings.model_copy(
            update={"manga_volume_page_threshold": 150, "manga_filename_overrides_page_count": False}
        )
        service = MetadataApprovalService.build(provider, catalog, settings=settings)
        volume, chapter = manga_library["files"]
        session = await service.create_session([volume.id, chapter.id])
        await service.approve_series(session.id, "30013")

        with patch("services.file_review.classify_manga_file", wraps=classify_manga_file) as classify:
            change = await service.manual_select_issue(session.id, volume.id, "chapter-40")

        assert classify.call_count == 1
        assert classify.call_args.args == ("One Piece v05.cbz", 200)
        assert classify.call_args.kwargs == {
            "volume_page_threshold": 150,
            "filename_overrides_page_count": False,
        }
        assert change.matched_issue is not None and change.matched_issue.source_id == "chapter-40"

    @pytest.mark.asyncio
    async def test_source_without_index_in_western_library(
        self,
        approval_service: MetadataApprovalService,
        comicvine_source,
        seeder,
        make_cbz: Callable[..., Path],
        tmp_path: Path,
    ) -> None:
        library = await seeder.library(tmp_path)
        file = await seeder.file(library, make_cbz(tmp_path / "One Piece" / "One Piece v05.cbz"), page_count=200)
        session = await approval_service.create_session([file.id])
        assert session.library_type == "western"

        await approval_service.search_series_custom(session.id, "One Piece", source="anilist")
        await approval_service.approve_series(session.id, "30013")

        change = approval_service.get_session(session.id).file_changes[file.id]
        assert change.status == FileChangeStatus.MATCHED
        assert change.matched_issue is not None
        assert change.matched_issue.source == "anilist"
        assert change.matched_issue.source_id == "volume-5"

        manual = await approval_service.manual_select_issue(session.id, file.id, "chapter-3")
        assert manual.status == FileChangeStatus.MANUAL
        assert manual.matched_issue is not None and manual.matched_issue.source_id == "chapter-3"

        with pytest.raises(SelectionNotFoundError):
            await approval_service.manual_select_issue(session.id, file.id, "cv-1")

        assert comicvine_source.issue_list_calls == []
        assert comicvine_source.detail_calls == []


class TestFileActions:
    """Tests for per-file review actions."""

    @pytest.mark.asyncio
    async def test_manual_issue_selection(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        session_id = await _reviewed(approval_service, western_library)
        first = western_library["batman"][0]

        change = await approval_service.manual_select_issue(session_id, first.id, "cv-3")

        assert change.status == FileChangeStatus.MANUAL
        assert change.match_confidence == 1.0
        assert change.matched_issue is not None and change.matched_issue.number == "3"
        assert change.fields["rename"].proposed == "Batman #003 (2016).cbz"
        stored = approval_service.get_session(session_id).file_changes[first.id]
        assert stored.status == FileChangeStatus.MANUAL

        with pytest.raises(SelectionNotFoundError):
            await approval_service.manual_select_issue(session_id, first.id, "cv-99")

    @pytest.mark.asyncio
    async def test_available_issues(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        session_id = await _reviewed(approval_service, western_library)
        first = western_library["batman"][0]

        available = await approval_service.get_available_issues_for_file(session_id, first.id)

        assert available.series_name == "Batman"
        assert available.source == "comicvine"
        assert available.total_count == 3
        assert available.current_matched_issue_id == "cv-1"

        with pytest.raises(FileNotInSessionError):
            await approval_service.get_available_issues_for_file(session_id, "nope")

    @pytest.mark.asyncio
    async def test_update_field_approvals(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        session_id = await _reviewed(approval_service, western_library)
        first = western_library["batman"][0]

        change = approval_service.update_field_approvals(
            session_id,
            first.id,
            {
                "title": {"approved": False},
                "writer": {"edited_value": "Tom King & Joëlle Jones"},
                "notAField": {"approved": False},
            },
        )

        assert change.fields["title"].approved is False
        assert change.fields["writer"].edited is True
        assert change.fields["writer"].effective_value == "Tom King & Joëlle Jones"
        assert "notAField" not in change.fields

    @pytest.mark.asyncio
    async def test_snapshots_are_isolated(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        session_id = await _reviewed(approval_service, western_library)
        first = western_library["batman"][0]

        snapshot = approval_service.get_session(session_id)
        snapshot.file_changes[first.id].status = FileChangeStatus.REJECTED

        assert approval_service.get_session(session_id).file_changes[first.id].status == FileChangeStatus.MATCHED

    @pytest.mark.asyncio
    async def test_reject_and_accept_all(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        session_id = await _reviewed(approval_service, western_library)
        first = western_library["batman"][0]
        saga = western_library["saga"][0]
        approval_service.update_field_approvals(session_id, first.id, {"title": {"approved": False}})

        rejected = approval_service.reject_all_files(session_id)
        assert {c.status for c in rejected.file_changes.values()} == {FileChangeStatus.REJECTED}

        accepted = approval_service.accept_all_files(session_id)
        assert accepted.file_changes[first.id].status == FileChangeStatus.MATCHED
        assert accepted.file_changes[first.id].fields["title"].approved is True
        assert accepted.file_changes[saga.id].status == FileChangeStatus.UNMATCHED

    @pytest.mark.asyncio
    async def test_reject_single_file(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        session_id = await _reviewed(approval_service, western_library)
        first = western_library["batman"][0]

        change = approval_service.reject_file(session_id, first.id)

        assert change.status == FileChangeStatus.REJECTED
        assert change.approved_fields() == {}

    @pytest.mark.asyncio
    async def test_move_between_groups(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        session_id = await _reviewed(approval_service, western_library)
        second = western_library["batman"][1]

        moved = await approval_service.move_file_to_series_group(session_id, second.id, 1)
        session = approval_service.get_session(session_id)
        assert moved.status == FileChangeStatus.UNMATCHED
        assert second.id in session.series_groups[1].file_ids
        assert second.id not in session.series_groups[0].file_ids
        assert "Batman #2.cbz" in session.series_groups[1].filenames

        back = await approval_service.move_file_to_series_group(session_id, second.id, 0)
        assert back.status == FileChangeStatus.MATCHED
        assert back.matched_issue is not None and back.matched_issue.source_id == "cv-2"

    @pytest.mark.asyncio
    async def test_rename_preview_round_trip(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        session_id = await _reviewed(approval_service, western_library)
        first = western_library["batman"][0]

        edited = await approval_service.regenerate_rename_preview(session_id, first.id, {"number": "7"})
        assert edited is not None
        assert edited.proposed == "Batman #007 (2016).cbz"
        stored = approval_service.get_session(session_id).file_changes[first.id]
        assert stored.fields["rename"].proposed == "Batman #007 (2016).cbz"

        restored = await approval_service.regenerate_rename_preview(session_id, first.id)
        assert restored is not None
        assert restored.proposed == "Batman #001 (2016).cbz"

    @pytest.mark.asyncio
    async def test_rename_preview_uses_series_record_from_review(
        self,
        approval_service: MetadataApprovalService,
        comicvine_source,
        seeder,
        make_cbz: Callable[..., Path],
        tmp_path: Path,
    ) -> None:
        full = comicvine_source.series[0]
        # Search hits carry no start year; only the series record does
        comicvine_source.series[0] = full.model_copy(update={"start_year": None})
        comicvine_source.issues["91273"] = [
            issue.model_copy(update={"cover_date": None}) for issue in comicvine_source.issues["91273"]
        ]
        comicvine_source.details = {
            key: issue.model_copy(update={"cover_date": None}) for key, issue in comicvine_source.details.items()
        }
        library = await seeder.library(tmp_path)
        file = await seeder.file(library, make_cbz(tmp_path / "Batman" / "Batman #1.cbz"))

        session = await approval_service.create_session([file.id])
        with patch.object(comicvine_source, "get_series", return_value=full):
            await approval_service.approve_series(session.id, "91273")

        stored = approval_service.get_session(session.id).file_changes[file.id]
        assert stored.fields["rename"].proposed == "Batman #001 (2016).cbz"

        preview = await approval_service.regenerate_rename_preview(session.id, file.id, {})
        assert preview is not None
        assert preview.proposed == "Batman #001 (2016).cbz"

    @pytest.mark.asyncio
    async def test_rename_preview_matching_current_name_drops_field(
        self,
        approval_service: MetadataApprovalService,
        seeder,
        make_cbz: Callable[..., Path],
        tmp_path: Path,
    ) -> None:
        library = await seeder.library(tmp_path)
        file = await seeder.file(library, make_cbz(tmp_path / "Batman #001 (2016).cbz"))
        session = await approval_service.create_session([file.id])
        await approval_service.approve_series(session.id, "91273")
        assert "rename" not in approval_service.get_session(session.id).file_changes[file.id].fields

        preview = await approval_service.regenerate_rename_preview(session.id, file.id, {"number": "2"})
        assert preview is not None and preview.proposed == "Batman #002 (2016).cbz"

        cleared = await approval_service.regenerate_rename_preview(session.id, file.id, {})
        assert cleared is None
        assert "rename" not in approval_service.get_session(session.id).file_changes[file.id].fields
