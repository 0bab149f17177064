"""Aggregated access to external bibliographic metadata sources."""

import logging
from difflib import SequenceMatcher
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from db.models import LibraryType
from services.filename_parser import normalize_series_name

logger = logging.getLogger(__name__)


class MetadataProviderError(Exception):
    """Raised when metadata sources cannot answer a request."""

    pass


class SeriesQuery(BaseModel):
    """What we know about a series before asking a source."""

    series: str
    issue_number: str | None = None
    year: int | None = None
    publisher: str | None = None


class Credit(BaseModel):
    """One contributor credit; ``role`` may list several roles ("writer, penciler")."""

    name: str
    role: str = ""


class SeriesMatch(BaseModel):
    """A candidate series identity from one source."""

    source: str
    source_id: str
    name: str
    start_year: int | None = None
    end_year: int | None = None
    publisher: str | None = None
    issue_count: int | None = None
    description: str | None = None
    deck: str | None = None
    cover_url: str | None = None
    url: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    creators: list[str] = Field(default_factory=list)
    characters: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    genres: list[str] = Field(default_factory=list)
    aliases: list[str] = Field(default_factory=list)


class IssueRecord(BaseModel):
    """One issue from a source's per-issue index."""

    id: str
    number: str | None = None
    title: str | None = None
    cover_date: str | None = None
    description: str | None = None
    # None means the payload did not carry credits at all (bulk listings)
    credits: list[Credit] | None = None
    characters: list[str] = Field(default_factory=list)
    teams: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    story_arcs: list[str] = Field(default_factory=list)
    page_count: int | None = None
    gtin: str | None = None
    url: str | None = None

    @property
    def has_credits(self) -> bool:
        return self.credits is not None


class SearchPagination(BaseModel):
    """Paging cursor for series search results."""

    offset: int = 0
    limit: int
    has_more: bool = False
    total: int | None = None


class SeriesSearchResults(BaseModel):
    """One page of ranked series candidates."""

    series: list[SeriesMatch] = Field(default_factory=list)
    pagination: SearchPagination


@runtime_checkable
class MetadataSourceClient(Protocol):
    """A single external source (ComicVine, AniList, ...)."""

    name: str
    provides_issue_index: bool

    async def search_series(self, query: SeriesQuery, limit: int, offset: int = 0) -> SeriesSearchResults:
        ...

    async def get_series(self, source_id: str) -> SeriesMatch | None:
        ...

    async def get_series_issues(self, source_id: str) -> list[IssueRecord]:
        ...

    async def get_issue(self, issue_id: str) -> IssueRecord | None:
        ...


def similarity_ratio(s1: str, s2: str) -> float:
    """Calculate similarity ratio between two strings."""
    if not s1 or not s2:
        return 0.0
    return SequenceMatcher(None, s1, s2).ratio()


def score_series_match(query: SeriesQuery, candidate: SeriesMatch) -> float:
    """
    Confidence that ``candidate`` is the series described by ``query``.

    Name agreement dominates (exact normalized name scores 0.9, fuzzy names
    scale down from 0.85); year and issue count nudge the result.
    """
    wanted = normalize_series_name(query.series)
    names = [candidate.name, *candidate.aliases]
    best = 0.0
    for name in names:
        normalized = normalize_series_name(name)
        if not normalized:
            continue
        if normalized == wanted:
            best = 0.9
            break
        best = max(best, similarity_ratio(wanted, normalized) * 0.85)

    score = best
    if query.year and candidate.start_year:
        end_year = candidate.end_year or candidate.start_year
        if candidate.start_year <= query.year <= max(end_year, candidate.start_year):
            score += 0.1
        elif abs(query.year - candidate.start_year) > 1:
            score -= 0.2
    elif best >= 0.9:
        score += 0.05

    if query.issue_number and candidate.issue_count:
        try:
            if float(query.issue_number) > candidate.issue_count:
                score -= 0.1
        except ValueError:
            pass

    return round(min(max(score, 0.0), 1.0), 4)


class MetadataProvider:
    """
    Front door to every registered metadata source.

    Searches are fanned out to the sources relevant to a library type, scored
    against the query, and merged into one ranked page.
    """

    def __init__(self, clients: list[MetadataSourceClient] | None = None) -> None:
        self._clients: dict[str, MetadataSourceClient] = {}
        for client in clients or []:
            self.register(client)

    def register(self, client: MetadataSourceClient) -> None:
        self._clients[client.name] = client

    @property
    def source_names(self) -> list[str]:
        return list(self._clients)

    def client_for(self, source: str) -> MetadataSourceClient:
        try:
            return self._clients[source]
        except KeyError:
            raise MetadataProviderError(f"Unknown metadata source: {source}") from None

    def provides_issue_index(self, source: str) -> bool:
        """Whether ``source`` publishes a per-issue index (western) or not (manga)."""
        client = self._clients.get(source)
        # Unknown sources go down the issue-index path, where lookups fail softly
        return True if client is None else bool(client.provides_issue_index)

    def prioritized_sources(self, library_type: LibraryType | None) -> list[str]:
        """Sources ordered for a library type: manga prefers sources without an issue index."""
        names = list(self._clients)
        if library_type is None:
            return names
        prefer_index = library_type != LibraryType.MANGA
        return sorted(names, key=lambda n: self._clients[n].provides_issue_index != prefer_index)

    async def search_series(
        self,
        query: SeriesQuery,
        limit: int = 10,
        offset: int = 0,
        sources: list[str] | None = None,
        library_type: LibraryType | None = None,
    ) -> SeriesSearchResults:
        """Search every selected source and return one merged, ranked page."""
        selected = sources or self.prioritized_sources(library_type)
        merged: list[tuple[int, SeriesMatch]] = []
        has_more = False
        total = 0
        failures = 0

        for priority, name in enumerate(selected):
            try:
                client = self.client_for(name)
                page = await client.search_series(query, limit=limit, offset=offset)
            except Exception as e:
                failures += 1
                logger.warning("Series search failed on %s for %r: %s", name, query.series, e)
                continue

            has_more = has_more or page.pagination.has_more
            total += page.pagination.total or len(page.series)
            for candidate in page.series:
                scored = candidate.model_copy(update={"confidence": score_series_match(query, candidate)})
                merged.append((priority, scored))

        if selected and failures == len(selected):
            raise MetadataProviderError(f"All metadata sources failed for {query.series!r}")

        merged.sort(key=lambda item: (-item[1].confidence, item[0]))
        return SeriesSearchResults(
            series=[match for _, match in merged],
            pagination=SearchPagination(offset=offset, limit=limit, has_more=has_more, total=total),
        )

    async def get_series_by_id(self, source: str, source_id: str) -> SeriesMatch | None:
        return await self.client_for(source).get_series(source_id)

    async def get_series_issues(self, source: str, source_id: str) -> list[IssueRecord]:
        return await self.client_for(source).get_series_issues(source_id)

    async def get_issue_detail(self, source: str, issue_id: str) -> IssueRecord | None:
        return await self.client_for(source).get_issue(issue_id)
