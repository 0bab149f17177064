"""
AniList GraphQL client for manga series.

AniList describes a manga at series level only (volume/chapter counts, staff,
characters); it has no per-issue index, so issue lookups return nothing.
"""

import logging
from typing import Any

import httpx

from core.config import get_settings
from services.metadata_provider import (
    IssueRecord,
    MetadataProviderError,
    SearchPagination,
    SeriesMatch,
    SeriesQuery,
    SeriesSearchResults,
)

logger = logging.getLogger(__name__)

MEDIA_FIELDS = """
    id
    title { romaji english native }
    synonyms
    startDate { year }
    endDate { year }
    volumes
    chapters
    description(asHtml: false)
    genres
    siteUrl
    coverImage { large }
    staff(perPage: 10) { edges { role node { name { full } } } }
    characters(perPage: 25, sort: ROLE) { nodes { name { full } } }
"""

SEARCH_QUERY = """
query ($search: String, $page: Int, $perPage: Int) {
  Page(page: $page, perPage: $perPage) {
    pageInfo { total hasNextPage }
    media(search: $search, type: MANGA, sort: SEARCH_MATCH) { %s }
  }
}
""" % MEDIA_FIELDS

MEDIA_QUERY = """
query ($id: Int) {
  Media(id: $id, type: MANGA) { %s }
}
""" % MEDIA_FIELDS


class AniListClient:
    """Async AniList client."""

    name = "anilist"
    provides_issue_index = False

    def __init__(self, base_url: str | None = None, http_client: httpx.AsyncClient | None = None) -> None:
        settings = get_settings()
        self.base_url = base_url or settings.anilist_base_url
        self._client = http_client or httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            headers={"User-Agent": settings.http_user_agent, "Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _query(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(self.base_url, json={"query": query, "variables": variables})
        except httpx.HTTPError as e:
            raise MetadataProviderError(f"AniList request failed: {e}") from e

        if response.status_code == 429:
            raise MetadataProviderError("AniList rate limited (429)")
        if response.status_code == 404:
            return {}
        if response.status_code != 200:
            raise MetadataProviderError(f"AniList returned HTTP {response.status_code}")

        payload = response.json()
        if payload.get("errors"):
            message = payload["errors"][0].get("message", "unknown error")
            raise MetadataProviderError(f"AniList error: {message}")
        return payload.get("data") or {}

    @staticmethod
    def _to_series(media: dict[str, Any]) -> SeriesMatch:
        title = media.get("title") or {}
        name = title.get("english") or title.get("romaji") or title.get("native") or ""
        aliases = [t for t in (title.get("romaji"), title.get("native")) if t and t != name]
        aliases.extend(media.get("synonyms") or [])
        staff = [
            edge["node"]["name"]["full"]
            for edge in (media.get("staff") or {}).get("edges") or []
            if edge.get("node", {}).get("name", {}).get("full")
        ]
        characters = [
            node["name"]["full"]
            for node in (media.get("characters") or {}).get("nodes") or []
            if node.get("name", {}).get("full")
        ]
        return SeriesMatch(
            source="anilist",
            source_id=str(media["id"]),
            name=name,
            start_year=(media.get("startDate") or {}).get("year"),
            end_year=(media.get("endDate") or {}).get("year"),
            issue_count=media.get("volumes") or media.get("chapters"),
            description=media.get("description"),
            cover_url=(media.get("coverImage") or {}).get("large"),
            url=media.get("siteUrl"),
            creators=staff,
            characters=characters,
            genres=list(media.get("genres") or []),
            aliases=aliases,
        )

    async def search_series(self, query: SeriesQuery, limit: int, offset: int = 0) -> SeriesSearchResults:
        page = offset // max(limit, 1) + 1
        data = await self._query(SEARCH_QUERY, {"search": query.series, "page": page, "perPage": limit})
        page_data = data.get("Page") or {}
        info = page_data.get("pageInfo") or {}
        results = [self._to_series(m) for m in page_data.get("media") or [] if m.get("id")]
        return SeriesSearchResults(
            series=results,
            pagination=SearchPagination(
                offset=offset,
                limit=limit,
                has_more=bool(info.get("hasNextPage")),
                total=info.get("total"),
            ),
        )

    async def get_series(self, source_id: str) -> SeriesMatch | None:
        try:
            data = await self._query(MEDIA_QUERY, {"id": int(source_id)})
        except (MetadataProviderError, ValueError) as e:
            logger.warning("AniList media %s unavailable: %s", source_id, e)
            return None
        media = data.get("Media")
        return self._to_series(media) if media else None

    async def get_series_issues(self, source_id: str) -> list[IssueRecord]:
        return []

    async def get_issue(self, issue_id: str) -> IssueRecord | None:
        return None
