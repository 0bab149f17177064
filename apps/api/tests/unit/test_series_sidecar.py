"""Unit tests for series.json and .series-cache.json sidecars."""

import json
from pathlib import Path

from services.metadata_provider import SeriesMatch
from services.series_sidecar import (
    SERIES_CACHE_JSON,
    SERIES_JSON,
    SeriesSidecar,
    SeriesSidecarStore,
    SidecarIdentity,
)

BATMAN = SeriesMatch(
    source="comicvine",
    source_id="91273",
    name="Batman",
    start_year=2016,
    publisher="DC Comics",
    description="<p>Rebirth</p>",
    url="https://comicvine.example/batman-2016/",
    confidence=0.7,
)
BEYOND = SeriesMatch(source="comicvine", source_id="91500", name="Batman Beyond")


async def test_series_json_round_trip(tmp_path: Path) -> None:
    store = SeriesSidecarStore()
    await store.write_series_json(tmp_path, SeriesSidecar.from_approval(BATMAN, BEYOND))

    raw = json.loads((tmp_path / SERIES_JSON).read_text(encoding="utf-8"))
    assert raw["source_id"] == "91273"
    assert raw["site_url"] == "https://comicvine.example/batman-2016/"
    assert "end_year" not in raw

    sidecar = await store.read_series_json(tmp_path)
    assert sidecar is not None
    match = sidecar.to_match()
    assert match.confidence == 1.0
    assert match.description == "<p>Rebirth</p>"
    assert sidecar.issue_matching is not None
    assert sidecar.issue_matching.to_match().source_id == "91500"
    assert not (tmp_path / f"{SERIES_JSON}.tmp").exists()


async def test_missing_or_corrupt_sidecar_reads_as_none(tmp_path: Path) -> None:
    store = SeriesSidecarStore()
    assert await store.read_series_json(tmp_path) is None

    (tmp_path / SERIES_JSON).write_text("{not json", encoding="utf-8")
    assert await store.read_series_json(tmp_path) is None

    (tmp_path / SERIES_JSON).write_text(json.dumps({"name": "Batman"}), encoding="utf-8")
    assert await store.read_series_json(tmp_path) is None


async def test_series_cache_merges_mappings(tmp_path: Path) -> None:
    store = SeriesSidecarStore()
    await store.write_series_cache(tmp_path, {"batman": SidecarIdentity.from_match(BATMAN)})
    await store.write_series_cache(tmp_path, {"batman beyond": SidecarIdentity.from_match(BEYOND)})

    cache = await store.read_series_cache(tmp_path)

    assert cache is not None
    assert sorted(cache.series_mappings) == ["batman", "batman beyond"]
    assert cache.series_mappings["batman"].publisher == "DC Comics"
    assert (tmp_path / SERIES_CACHE_JSON).is_file()
