"""Per-folder series sidecar files (series.json and .series-cache.json)."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from services.metadata_provider import SeriesMatch

logger = logging.getLogger(__name__)

SERIES_JSON = "series.json"
SERIES_CACHE_JSON = ".series-cache.json"


class SidecarIdentity(BaseModel):
    """A series identity as persisted next to the files."""

    source: str
    source_id: str
    name: str
    start_year: int | None = None
    end_year: int | None = None
    publisher: str | None = None
    issue_count: int | None = None

    @classmethod
    def from_match(cls, match: SeriesMatch) -> "SidecarIdentity":
        return cls(
            source=match.source,
            source_id=match.source_id,
            name=match.name,
            start_year=match.start_year,
            end_year=match.end_year,
            publisher=match.publisher,
            issue_count=match.issue_count,
        )

    def to_match(self) -> SeriesMatch:
        return SeriesMatch(
            source=self.source,
            source_id=self.source_id,
            name=self.name,
            start_year=self.start_year,
            end_year=self.end_year,
            publisher=self.publisher,
            issue_count=self.issue_count,
            confidence=1.0,
        )


class SeriesSidecar(SidecarIdentity):
    """Contents of series.json: the single series a folder holds."""

    summary: str | None = None
    deck: str | None = None
    cover_url: str | None = None
    site_url: str | None = None
    issue_matching: SidecarIdentity | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_approval(cls, selected: SeriesMatch, issue_matching: SeriesMatch | None = None) -> "SeriesSidecar":
        return cls(
            **SidecarIdentity.from_match(selected).model_dump(),
            summary=selected.description,
            deck=selected.deck,
            cover_url=selected.cover_url,
            site_url=selected.url,
            issue_matching=SidecarIdentity.from_match(issue_matching) if issue_matching else None,
        )

    def to_match(self) -> SeriesMatch:
        return super().to_match().model_copy(
            update={
                "description": self.summary or self.deck,
                "deck": self.deck,
                "cover_url": self.cover_url,
                "url": self.site_url,
            }
        )


class SeriesCacheSidecar(BaseModel):
    """Contents of .series-cache.json: normalized series name -> identity, for mixed folders."""

    series_mappings: dict[str, SidecarIdentity] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def _read_model(path: Path, model: type[BaseModel]) -> BaseModel | None:
    if not path.is_file():
        return None
    try:
        return model.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.warning("Ignoring unreadable sidecar %s: %s", path, e)
        return None


def _write_model(path: Path, model: BaseModel) -> None:
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(model.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
    tmp.replace(path)


class SeriesSidecarStore:
    """Reads and writes folder sidecars off the event loop."""

    async def read_series_json(self, folder: str | Path) -> SeriesSidecar | None:
        return await asyncio.to_thread(_read_model, Path(folder) / SERIES_JSON, SeriesSidecar)

    async def write_series_json(self, folder: str | Path, sidecar: SeriesSidecar) -> None:
        await asyncio.to_thread(_write_model, Path(folder) / SERIES_JSON, sidecar)

    async def read_series_cache(self, folder: str | Path) -> SeriesCacheSidecar | None:
        return await asyncio.to_thread(_read_model, Path(folder) / SERIES_CACHE_JSON, SeriesCacheSidecar)

    async def write_series_cache(self, folder: str | Path, mappings: dict[str, SidecarIdentity]) -> None:
        """Merge ``mappings`` into the folder's cache, keeping entries for other series."""
        existing = await self.read_series_cache(folder)
        merged = dict(existing.series_mappings) if existing else {}
        merged.update(mappings)
        await asyncio.to_thread(
            _write_model, Path(folder) / SERIES_CACHE_JSON, SeriesCacheSidecar(series_mappings=merged)
        )
