"""Unit tests for session creation, grouping and pre-approval."""

from typing import Any

import pytest

from services.approval_errors import ApprovalError
from services.approval_models import GroupStatus, ParsedFileData, SessionStatus
from services.metadata_approval import MetadataApprovalService
from services.series_sidecar import SeriesSidecar, SeriesSidecarStore, SidecarIdentity


def _ids(library: dict[str, Any]) -> list[str]:
    return [f.id for f in library["batman"] + library["saga"]]


class TestGrouping:
    """Tests for file selection and series grouping."""

    @pytest.mark.asyncio
    async def test_duplicates_and_exclusions_are_dropped(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        ids = _ids(western_library)
        saga_id = western_library["saga"][0].id

        session = await approval_service.create_session(ids + ids[:1], exclude_file_ids=[saga_id])

        assert len(session.series_groups) == 1
        assert session.series_groups[0].file_ids == ids[:2]
        assert session.series_groups[0].filenames == ["Batman #1.cbz", "Batman #2.cbz"]
        assert session.library_id == western_library["library"].id

    @pytest.mark.asyncio
    async def test_everything_excluded(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        ids = _ids(western_library)
        with pytest.raises(ApprovalError, match="No files to process after exclusions"):
            await approval_service.create_session(ids, exclude_file_ids=ids)

    @pytest.mark.asyncio
    async def test_unknown_file_ids(self, approval_service: MetadataApprovalService) -> None:
        with pytest.raises(ApprovalError):
            await approval_service.create_session(["nope-1", "nope-2"])

    @pytest.mark.asyncio
    async def test_groups_follow_file_order_and_carry_parsed_data(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        saga_id = western_library["saga"][0].id
        batman_ids = [f.id for f in western_library["batman"]]

        session = await approval_service.create_session([saga_id, *batman_ids])

        assert [g.display_name for g in session.series_groups] == ["Saga", "Batman"]
        saga = session.series_groups[0]
        assert saga.query.year == 2018
        assert saga.parsed_files[saga_id].number == "54"
        assert session.series_groups[1].parsed_files[batman_ids[1]].number == "2"

    @pytest.mark.asyncio
    async def test_parsed_overrides_regroup_files(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        saga_id = western_library["saga"][0].id
        overrides = {saga_id: ParsedFileData(series="Batman", number="3")}

        session = await approval_service.create_session(_ids(western_library), parsed_overrides=overrides)

        assert len(session.series_groups) == 1
        group = session.series_groups[0]
        assert saga_id in group.file_ids
        assert group.parsed_files[saga_id].number == "3"

    @pytest.mark.asyncio
    async def test_progress_is_reported(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
    ) -> None:
        messages: list[str] = []

        await approval_service.create_session(
            _ids(western_library), on_progress=lambda message, detail=None: messages.append(message)
        )

        assert messages[0] == "Starting metadata approval session"
        assert "Grouped into 2 series" in messages
        assert messages[-1] == "Session ready"


class TestPreApproval:
    """Tests for identities that are already known before any search."""

    @pytest.mark.asyncio
    async def test_series_json_pre_approves_folder(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
        comicvine_source,
    ) -> None:
        folder = western_library["root"] / "Batman"
        await SeriesSidecarStore().write_series_json(folder, SeriesSidecar.from_approval(comicvine_source.series[0]))

        session = await approval_service.create_session([f.id for f in western_library["batman"]])

        assert session.status == SessionStatus.FILE_REVIEW
        group = session.series_groups[0]
        assert group.pre_approved is True
        assert group.pre_approved_from == "sidecar"
        assert group.status == GroupStatus.APPROVED
        assert group.folder_path == str(folder)
        assert group.selected_series is not None and group.selected_series.source_id == "91273"
        assert comicvine_source.search_calls == []
        assert len(session.file_changes) == 2

    @pytest.mark.asyncio
    async def test_linked_catalog_series_pre_approves(
        self,
        approval_service: MetadataApprovalService,
        seeder,
        make_cbz,
        western_library: dict[str, Any],
    ) -> None:
        series = await seeder.series("Batman", comicvine_id="91273", start_year=2016)
        root = western_library["root"]
        linked = await seeder.file(
            western_library["library"], make_cbz(root / "Loose" / "Batman #3.cbz"), series=series
        )
        saga_id = western_library["saga"][0].id

        session = await approval_service.create_session([saga_id, linked.id])

        assert [g.display_name for g in session.series_groups] == ["Batman", "Saga"]
        group = session.series_groups[0]
        assert group.pre_approved_from == "catalog"
        assert group.selected_series is not None and group.selected_series.source == "comicvine"
        assert session.current_series_index == 1
        assert session.status == SessionStatus.SERIES_APPROVAL

    @pytest.mark.asyncio
    async def test_series_cache_used_in_mixed_mode(
        self,
        approval_service: MetadataApprovalService,
        seeder,
        make_cbz,
        western_library: dict[str, Any],
        comicvine_source,
    ) -> None:
        folder = western_library["root"] / "Mixed"
        library = western_library["library"]
        files = [
            await seeder.file(library, make_cbz(folder / "Batman #1.cbz")),
            await seeder.file(library, make_cbz(folder / "Saga 001.cbz")),
        ]
        await SeriesSidecarStore().write_series_cache(
            folder, {"batman": SidecarIdentity.from_match(comicvine_source.series[0])}
        )
        # A series.json is ignored in mixed mode
        await SeriesSidecarStore().write_series_json(folder, SeriesSidecar.from_approval(comicvine_source.series[0]))

        session = await approval_service.create_session([f.id for f in files], mixed_series=True)

        assert session.mixed_series is True
        assert [g.pre_approved_from for g in session.series_groups] == ["series_cache", None]
        assert session.series_groups[0].file_ids == [files[0].id]
        assert session.series_groups[1].status == GroupStatus.PENDING
        assert session.current_series_index == 1

    @pytest.mark.asyncio
    async def test_applied_session_is_remembered_next_time(
        self,
        approval_service: MetadataApprovalService,
        western_library: dict[str, Any],
        comicvine_source,
    ) -> None:
        batman_ids = [f.id for f in western_library["batman"]]
        first = await approval_service.create_session(batman_ids)
        await approval_service.approve_series(first.id, "91273")
        await approval_service.apply_changes(first.id)
        searches = len(comicvine_source.search_calls)

        second = await approval_service.create_session(batman_ids)

        assert second.status == SessionStatus.FILE_REVIEW
        assert second.series_groups[0].pre_approved_from == "sidecar"
        assert len(comicvine_source.search_calls) == searches
