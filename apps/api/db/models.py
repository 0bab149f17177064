"""Database models using SQLModel."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlmodel import JSON, Column, Field, SQLModel


def _new_id() -> str:
    return str(uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LibraryType(str, Enum):
    """Kind of material a library holds; drives source prioritization."""

    WESTERN = "western"
    MANGA = "manga"


class FileStatus(str, Enum):
    """Comic file indexing status."""

    PENDING = "pending"
    INDEXED = "indexed"
    ORPHANED = "orphaned"
    QUARANTINED = "quarantined"


class Library(SQLModel, table=True):
    """A root folder of comic archives."""

    __tablename__ = "libraries"

    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str = Field(index=True)
    type: LibraryType = Field(default=LibraryType.WESTERN)
    root_path: str = Field(description="Absolute library root folder")
    created_at: datetime = Field(default_factory=utc_now)


class Series(SQLModel, table=True):
    """Catalog series record."""

    __tablename__ = "series"

    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str = Field(index=True)
    publisher: str | None = Field(default=None)
    start_year: int | None = Field(default=None)
    end_year: int | None = Field(default=None)
    issue_count: int | None = Field(default=None)
    summary: str | None = Field(default=None)
    deck: str | None = Field(default=None)
    cover_url: str | None = Field(default=None)
    comicvine_id: str | None = Field(default=None, index=True)
    metron_id: str | None = Field(default=None, index=True)
    anilist_id: str | None = Field(default=None, index=True)
    mal_id: str | None = Field(default=None, index=True)
    characters: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    locations: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    creators: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    creator_roles: dict[str, list[str]] = Field(
        default_factory=dict,
        sa_column=Column(JSON),
        description="Role -> contributor names rolled up from issue credits",
    )
    genres: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    aliases: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    locked_fields: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON),
        description="Fields the user pinned; external updates never touch them",
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def external_ids(self) -> dict[str, str]:
        """Source name -> external id for every id this series carries."""
        ids = {
            "comicvine": self.comicvine_id,
            "metron": self.metron_id,
            "anilist": self.anilist_id,
            "mal": self.mal_id,
        }
        return {source: value for source, value in ids.items() if value}


class ComicFile(SQLModel, table=True):
    """One archive on disk."""

    __tablename__ = "comic_files"

    id: str = Field(default_factory=_new_id, primary_key=True)
    library_id: str = Field(foreign_key="libraries.id", index=True)
    series_id: str | None = Field(default=None, foreign_key="series.id", index=True)
    path: str = Field(index=True, description="Absolute path to the archive")
    filename: str
    status: FileStatus = Field(default=FileStatus.PENDING, index=True)
    page_count: int | None = Field(default=None)
    stats_dirty: bool = Field(default=False, description="Derived reading/collection stats need recompute")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class FileMetadata(SQLModel, table=True):
    """Cached copy of a file's embedded ComicInfo fields."""

    __tablename__ = "file_metadata"

    file_id: str = Field(foreign_key="comic_files.id", primary_key=True)
    series: str | None = None
    number: str | None = None
    title: str | None = None
    volume: int | None = None
    year: int | None = None
    month: int | None = None
    day: int | None = None
    writer: str | None = None
    penciller: str | None = None
    inker: str | None = None
    colorist: str | None = None
    letterer: str | None = None
    cover_artist: str | None = None
    editor: str | None = None
    publisher: str | None = None
    summary: str | None = None
    genre: str | None = None
    characters: str | None = None
    teams: str | None = None
    locations: str | None = None
    story_arc: str | None = None
    updated_at: datetime = Field(default_factory=utc_now)

    def as_field_values(self) -> dict[str, Any]:
        """Cached values keyed by field-change names."""
        return {
            "series": self.series,
            "number": self.number,
            "title": self.title,
            "volume": self.volume,
            "year": self.year,
            "month": self.month,
            "day": self.day,
            "writer": self.writer,
            "penciller": self.penciller,
            "inker": self.inker,
            "colorist": self.colorist,
            "letterer": self.letterer,
            "coverArtist": self.cover_artist,
            "editor": self.editor,
            "publisher": self.publisher,
            "summary": self.summary,
            "genre": self.genre,
            "characters": self.characters,
            "teams": self.teams,
            "locations": self.locations,
            "storyArc": self.story_arc,
        }
