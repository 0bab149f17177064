"""Catalog persistence for comic files and series."""

import logging
from collections.abc import Callable, Iterable
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ComicFile, FileMetadata, FileStatus, Library, Series, utc_now

logger = logging.getLogger(__name__)

# ComicInfo element -> FileMetadata column
COMICINFO_CACHE_COLUMNS = {
    "Series": "series",
    "Number": "number",
    "Title": "title",
    "Volume": "volume",
    "Year": "year",
    "Month": "month",
    "Day": "day",
    "Writer": "writer",
    "Penciller": "penciller",
    "Inker": "inker",
    "Colorist": "colorist",
    "Letterer": "letterer",
    "CoverArtist": "cover_artist",
    "Editor": "editor",
    "Publisher": "publisher",
    "Summary": "summary",
    "Genre": "genre",
    "Characters": "characters",
    "Teams": "teams",
    "Locations": "locations",
    "StoryArc": "story_arc",
}

# Series columns an external source may fill
SERIES_UPDATABLE_FIELDS = {
    "publisher", "start_year", "end_year", "issue_count", "summary", "deck", "cover_url",
    "comicvine_id", "metron_id", "anilist_id", "mal_id",
    "characters", "locations", "creators", "creator_roles", "genres", "aliases",
}


class CatalogStore:
    """Reads and updates catalog rows, one short transaction per call."""

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_file(self, file_id: str) -> ComicFile | None:
        async with self._session_factory() as session:
            return await session.get(ComicFile, file_id)

    async def get_files(self, file_ids: Iterable[str]) -> list[ComicFile]:
        """Files for ``file_ids`` in the order given; unknown ids are dropped."""
        ids = list(file_ids)
        if not ids:
            return []
        async with self._session_factory() as session:
            result = await session.execute(select(ComicFile).where(ComicFile.id.in_(ids)))
            by_id = {f.id: f for f in result.scalars().all()}
        return [by_id[i] for i in ids if i in by_id]

    async def get_library(self, library_id: str) -> Library | None:
        async with self._session_factory() as session:
            return await session.get(Library, library_id)

    async def get_series(self, series_id: str) -> Series | None:
        async with self._session_factory() as session:
            return await session.get(Series, series_id)

    async def get_series_map(self, series_ids: Iterable[str]) -> dict[str, Series]:
        ids = [i for i in set(series_ids) if i]
        if not ids:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(select(Series).where(Series.id.in_(ids)))
            return {s.id: s for s in result.scalars().all()}

    async def get_file_metadata(self, file_id: str) -> FileMetadata | None:
        async with self._session_factory() as session:
            return await session.get(FileMetadata, file_id)

    async def update_file_path(self, file_id: str, path: str, filename: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(ComicFile)
                .where(ComicFile.id == file_id)
                .values(path=path, filename=filename, updated_at=utc_now())
            )
            await session.commit()

    async def mark_file_indexed(self, file_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(ComicFile)
                .where(ComicFile.id == file_id)
                .values(status=FileStatus.INDEXED, updated_at=utc_now())
            )
            await session.commit()

    async def mark_stats_dirty(self, file_ids: Iterable[str]) -> int:
        ids = list(file_ids)
        if not ids:
            return 0
        async with self._session_factory() as session:
            result = await session.execute(
                update(ComicFile).where(ComicFile.id.in_(ids)).values(stats_dirty=True)
            )
            await session.commit()
            return result.rowcount or 0

    async def refresh_file_metadata(self, file_id: str, comicinfo: dict[str, Any]) -> None:
        """Replace the cached metadata row with freshly read ComicInfo values."""
        values: dict[str, Any] = {column: None for column in COMICINFO_CACHE_COLUMNS.values()}
        for element, column in COMICINFO_CACHE_COLUMNS.items():
            value = comicinfo.get(element)
            if value is None:
                continue
            if column in ("volume", "year", "month", "day"):
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    value = None
            else:
                value = str(value)
            values[column] = value

        async with self._session_factory() as session:
            row = await session.get(FileMetadata, file_id)
            if row is None:
                row = FileMetadata(file_id=file_id)
            for column, value in values.items():
                setattr(row, column, value)
            row.updated_at = utc_now()
            session.add(row)
            await session.commit()

    async def update_series(self, series_id: str, values: dict[str, Any]) -> list[str]:
        """Apply externally sourced values, never touching locked fields. Returns updated field names."""
        async with self._session_factory() as session:
            series = await session.get(Series, series_id)
            if series is None:
                return []
            locked = set(series.locked_fields or [])
            updated = []
            for field, value in values.items():
                if field not in SERIES_UPDATABLE_FIELDS or field in locked:
                    continue
                if value is None or value == [] or value == "":
                    continue
                if getattr(series, field) != value:
                    setattr(series, field, value)
                    updated.append(field)
            if updated:
                series.updated_at = utc_now()
                session.add(series)
                await session.commit()
            return updated

    async def touch_series(self, series_ids: Iterable[str]) -> None:
        """Bump ``updated_at`` so derived series views are rebuilt."""
        ids = [i for i in set(series_ids) if i]
        if not ids:
            return
        async with self._session_factory() as session:
            await session.execute(
                update(Series).where(Series.id.in_(ids)).values(updated_at=utc_now())
            )
            await session.commit()
