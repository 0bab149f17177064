"""Unit tests for catalog persistence."""

from datetime import timezone
from pathlib import Path

from db.models import ComicFile, FileStatus, Series, utc_now
from services.catalog_store import CatalogStore


async def test_get_files_keeps_requested_order(catalog: CatalogStore, seeder, tmp_path: Path) -> None:
    library = await seeder.library(tmp_path)
    first = await seeder.file(library, tmp_path / "a.cbz")
    second = await seeder.file(library, tmp_path / "b.cbz")

    files = await catalog.get_files([second.id, "missing", first.id])

    assert [f.id for f in files] == [second.id, first.id]
    assert await catalog.get_files([]) == []


async def test_update_path_and_mark_indexed(catalog: CatalogStore, seeder, tmp_path: Path) -> None:
    library = await seeder.library(tmp_path)
    file = await seeder.file(library, tmp_path / "a.cbr")

    await catalog.update_file_path(file.id, str(tmp_path / "a.cbz"), "a.cbz")
    await catalog.mark_file_indexed(file.id)
    assert await catalog.mark_stats_dirty([file.id]) == 1

    stored = await catalog.get_file(file.id)
    assert stored is not None
    assert stored.filename == "a.cbz"
    assert stored.path.endswith("a.cbz")
    assert stored.status == FileStatus.INDEXED
    assert stored.stats_dirty is True


async def test_refresh_file_metadata_replaces_row(catalog: CatalogStore, seeder, tmp_path: Path) -> None:
    library = await seeder.library(tmp_path)
    file = await seeder.file(library, tmp_path / "a.cbz")

    await catalog.refresh_file_metadata(file.id, {"Series": "Batman", "Year": "2016", "Writer": "Tom King"})
    await catalog.refresh_file_metadata(file.id, {"Series": "Batman", "Month": "bad"})

    cached = await catalog.get_file_metadata(file.id)
    assert cached is not None
    assert cached.series == "Batman"
    assert cached.writer is None
    assert cached.year is None
    assert cached.month is None


async def test_update_series_respects_locked_fields(catalog: CatalogStore, seeder) -> None:
    series = await seeder.series("Batman", publisher="DC", locked_fields=["publisher"])

    updated = await catalog.update_series(
        series.id,
        {"publisher": "DC Comics", "start_year": 2016, "comicvine_id": "91273", "summary": "", "name": "Other"},
    )

    assert sorted(updated) == ["comicvine_id", "start_year"]
    stored = await catalog.get_series(series.id)
    assert stored is not None
    assert stored.publisher == "DC"
    assert stored.name == "Batman"
    assert stored.external_ids() == {"comicvine": "91273"}


async def test_update_unknown_series_is_noop(catalog: CatalogStore) -> None:
    assert await catalog.update_series("missing", {"publisher": "DC"}) == []


def test_timestamp_defaults_are_timezone_aware() -> None:
    assert utc_now().tzinfo is timezone.utc
    assert Series(name="Batman").updated_at.tzinfo is timezone.utc
    assert ComicFile(library_id="l", path="/a.cbz", filename="a.cbz").updated_at.tzinfo is timezone.utc
