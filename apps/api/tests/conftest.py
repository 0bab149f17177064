"""Pytest fixtures for API tests."""

import zipfile
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from api.routes.approval import get_approval_service
from core.config import Settings, get_settings
from db.models import ComicFile, Library, LibraryType, Series
from db.session import get_session
from main import app
from services.catalog_store import CatalogStore
from services.comicinfo_archive import render_comicinfo
from services.filename_parser import normalize_series_name
from services.metadata_approval import MetadataApprovalService
from services.metadata_provider import (
    Credit,
    IssueRecord,
    MetadataProvider,
    MetadataProviderError,
    SearchPagination,
    SeriesMatch,
    SeriesQuery,
    SeriesSearchResults,
)


# Test database URL (SQLite in-memory for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeSource:
    """In-memory metadata source with canned series, issue lists and issue details."""

    def __init__(
        self,
        name: str,
        provides_issue_index: bool = True,
        series: list[SeriesMatch] | None = None,
        issues: dict[str, list[IssueRecord]] | None = None,
        details: dict[str, IssueRecord] | None = None,
    ) -> None:
        self.name = name
        self.provides_issue_index = provides_issue_index
        self.series = list(series or [])
        self.issues = dict(issues or {})
        self.details = dict(details or {})
        self.fail_search = False
        self.search_calls: list[tuple[str, int, int]] = []
        self.issue_list_calls: list[str] = []
        self.detail_calls: list[str] = []

    async def search_series(self, query: SeriesQuery, limit: int, offset: int = 0) -> SeriesSearchResults:
        self.search_calls.append((query.series, limit, offset))
        if self.fail_search:
            raise MetadataProviderError(f"{self.name} unavailable")
        wanted = normalize_series_name(query.series)
        hits = [
            s for s in self.series
            if any(wanted in normalize_series_name(name) for name in [s.name, *s.aliases])
        ]
        page = hits[offset:offset + limit]
        return SeriesSearchResults(
            series=page,
            pagination=SearchPagination(
                offset=offset,
                limit=limit,
                has_more=offset + len(page) < len(hits),
                total=len(hits),
            ),
        )

    async def get_series(self, source_id: str) -> SeriesMatch | None:
        return next((s for s in self.series if s.source_id == source_id), None)

    async def get_series_issues(self, source_id: str) -> list[IssueRecord]:
        self.issue_list_calls.append(source_id)
        return list(self.issues.get(source_id, []))

    async def get_issue(self, issue_id: str) -> IssueRecord | None:
        self.detail_calls.append(issue_id)
        return self.details.get(issue_id)


class CatalogSeeder:
    """Inserts catalog rows for a test."""

    def __init__(self, session_maker: Callable[[], AsyncSession]) -> None:
        self._session_maker = session_maker

    async def _add(self, row: Any) -> Any:
        async with self._session_maker() as session:
            session.add(row)
            await session.commit()
        return row

    async def library(self, root: Path, type: LibraryType = LibraryType.WESTERN, name: str = "Comics") -> Library:
        return await self._add(Library(name=name, type=type, root_path=str(root)))

    async def series(self, name: str, **values: Any) -> Series:
        return await self._add(Series(name=name, **values))

    async def file(
        self,
        library: Library,
        path: Path,
        series: Series | None = None,
        page_count: int | None = None,
    ) -> ComicFile:
        return await self._add(
            ComicFile(
                library_id=library.id,
                series_id=series.id if series else None,
                path=str(path),
                filename=path.name,
                page_count=page_count,
            )
        )


BATMAN = SeriesMatch(
    source="comicvine",
    source_id="91273",
    name="Batman",
    start_year=2016,
    end_year=2020,
    publisher="DC Comics",
    issue_count=86,
    description="<p>The <b>Rebirth</b> run.</p>",
    url="https://comicvine.example/batman-2016/",
)

BATMAN_BEYOND = SeriesMatch(
    source="comicvine",
    source_id="91500",
    name="Batman Beyond",
    start_year=2016,
    publisher="DC Comics",
    issue_count=50,
)

SAGA = SeriesMatch(
    source="comicvine",
    source_id="48000",
    name="Saga",
    start_year=2012,
    publisher="Image",
    issue_count=66,
)

ONE_PIECE = SeriesMatch(
    source="anilist",
    source_id="30013",
    name="One Piece",
    start_year=1997,
    publisher="Shueisha",
    description="Gol D. Roger was known as the Pirate King.",
    creators=["Eiichiro Oda"],
    genres=["Action", "Adventure"],
    url="https://anilist.example/manga/30013",
)

BATMAN_ISSUES = [
    IssueRecord(id="cv-1", number="1", title="I Am Gotham, Part One", cover_date="2016-08-01"),
    IssueRecord(id="cv-2", number="2", title="I Am Gotham, Part Two", cover_date="2016-08-15"),
    IssueRecord(id="cv-3", number="3", title="I Am Gotham, Part Three", cover_date="2016-09-01"),
]

BATMAN_DETAILS = {
    "cv-1": BATMAN_ISSUES[0].model_copy(
        update={"credits": [Credit(name="Tom King", role="writer"), Credit(name="David Finch", role="penciler, cover")]}
    ),
    "cv-2": BATMAN_ISSUES[1].model_copy(
        update={"credits": [Credit(name="Tom King", role="writer"), Credit(name="David Finch", role="artist")]}
    ),
    "cv-3": BATMAN_ISSUES[2].model_copy(update={"credits": [Credit(name="Tom King", role="writer")]}),
}


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings with overrides."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        debug=True,
        environment="development",
        data_dir="/tmp/test_comic_data",
        credit_batch_delay_ms=0,
        comicvine_api_key="test-key",
    )


@pytest.fixture
async def test_engine(test_settings: Settings) -> AsyncGenerator[Any, None]:
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine: Any) -> Callable[[], AsyncSession]:
    return sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_session(session_maker: Callable[[], AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def catalog(session_maker: Callable[[], AsyncSession]) -> CatalogStore:
    return CatalogStore(session_maker)


@pytest.fixture
def seeder(session_maker: Callable[[], AsyncSession]) -> CatalogSeeder:
    return CatalogSeeder(session_maker)


@pytest.fixture
def make_cbz() -> Callable[..., Path]:
    """Write a small CBZ, optionally carrying ComicInfo.xml built from ``{Element: value}``."""

    def write(path: Path, comicinfo: dict[str, Any] | None = None, pages: int = 2) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(path, "w") as archive:
            for page in range(1, pages + 1):
                archive.writestr(f"{page:03}.jpg", b"\xff\xd8\xff\xe0" + bytes(16))
            if comicinfo is not None:
                archive.writestr("ComicInfo.xml", render_comicinfo(None, comicinfo))
        return path

    return write


@pytest.fixture
async def western_library(
    seeder: CatalogSeeder,
    make_cbz: Callable[..., Path],
    tmp_path: Path,
) -> dict[str, Any]:
    """Two Batman issues in one folder and a Saga issue in another, without ComicInfo."""
    root = tmp_path / "comics"
    library = await seeder.library(root)
    batman = [
        await seeder.file(library, make_cbz(root / "Batman" / "Batman #1.cbz")),
        await seeder.file(library, make_cbz(root / "Batman" / "Batman #2.cbz")),
    ]
    saga = [await seeder.file(library, make_cbz(root / "Saga" / "Saga 054 (2018).cbz"))]
    return {"root": root, "library": library, "batman": batman, "saga": saga}


@pytest.fixture
async def manga_library(
    seeder: CatalogSeeder,
    make_cbz: Callable[..., Path],
    tmp_path: Path,
) -> dict[str, Any]:
    """One Piece as a full volume and a single chapter."""
    root = tmp_path / "manga"
    library = await seeder.library(root, type=LibraryType.MANGA, name="Manga")
    folder = root / "One Piece"
    files = [
        await seeder.file(library, make_cbz(folder / "One Piece v05.cbz"), page_count=200),
        await seeder.file(library, make_cbz(folder / "One Piece - Chapter 12.5.cbz"), page_count=20),
    ]
    return {"root": root, "library": library, "files": files}


@pytest.fixture
def comicvine_source() -> FakeSource:
    return FakeSource(
        "comicvine",
        provides_issue_index=True,
        series=[BATMAN, BATMAN_BEYOND, SAGA],
        issues={BATMAN.source_id: list(BATMAN_ISSUES)},
        details=dict(BATMAN_DETAILS),
    )


@pytest.fixture
def anilist_source() -> FakeSource:
    return FakeSource("anilist", provides_issue_index=False, series=[ONE_PIECE])


@pytest.fixture
def provider(comicvine_source: FakeSource, anilist_source: FakeSource) -> MetadataProvider:
    return MetadataProvider([comicvine_source, anilist_source])


@pytest.fixture
def approval_service(
    provider: MetadataProvider,
    catalog: CatalogStore,
    test_settings: Settings,
) -> MetadataApprovalService:
    return MetadataApprovalService.build(provider, catalog, settings=test_settings)


@pytest.fixture
async def client(
    test_session: AsyncSession,
    test_settings: Settings,
    approval_service: MetadataApprovalService,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with dependency overrides."""

    async def override_get_session() -> AsyncGenerator[AsyncSession, None]:
        yield test_session

    def override_get_settings() -> Settings:
        return test_settings

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_settings] = override_get_settings
    app.dependency_overrides[get_approval_service] = lambda: approval_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
