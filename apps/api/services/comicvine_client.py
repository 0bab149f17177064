"""
ComicVine API client.

API Docs: https://comicvine.gamespot.com/api/documentation
Western comics source with a per-issue index. Bulk issue listings do not
include person credits; those come from the issue detail endpoint.
"""

import logging
from typing import Any

import httpx

from core.config import get_settings
from services.metadata_provider import (
    Credit,
    IssueRecord,
    MetadataProviderError,
    SearchPagination,
    SeriesMatch,
    SeriesQuery,
    SeriesSearchResults,
)

logger = logging.getLogger(__name__)

VOLUME_PREFIX = "4050-"
ISSUE_PREFIX = "4000-"
ISSUE_PAGE_SIZE = 100
MAX_ISSUE_PAGES = 20

ISSUE_LIST_FIELDS = "id,issue_number,name,cover_date,description,deck,site_detail_url"


def _names(items: list[dict[str, Any]] | None) -> list[str]:
    return [item["name"] for item in items or [] if item.get("name")]


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class ComicVineClient:
    """Async ComicVine client."""

    name = "comicvine"
    provides_issue_index = True

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.comicvine_api_key
        self.base_url = (base_url or settings.comicvine_base_url).rstrip("/")
        self._client = http_client or httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            headers={"User-Agent": settings.http_user_agent},
            follow_redirects=True,
        )

        if not self.api_key:
            logger.warning("ComicVine API key not configured; searches will fail")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.api_key:
            raise MetadataProviderError("ComicVine API key not configured")

        query = dict(params or {})
        query["api_key"] = self.api_key
        query["format"] = "json"

        try:
            response = await self._client.get(f"{self.base_url}/{endpoint}/", params=query)
        except httpx.HTTPError as e:
            raise MetadataProviderError(f"ComicVine request failed: {e}") from e

        if response.status_code in (420, 429):
            raise MetadataProviderError(f"ComicVine rate limited ({response.status_code})")
        if response.status_code != 200:
            raise MetadataProviderError(f"ComicVine returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise MetadataProviderError(f"ComicVine returned invalid JSON: {e}") from e

        if data.get("status_code") != 1:
            raise MetadataProviderError(f"ComicVine error: {data.get('error', 'unknown')}")
        return data

    @staticmethod
    def _to_series(volume: dict[str, Any]) -> SeriesMatch:
        publisher = volume.get("publisher") or {}
        image = volume.get("image") or {}
        aliases = [a.strip() for a in (volume.get("aliases") or "").splitlines() if a.strip()]
        return SeriesMatch(
            source="comicvine",
            source_id=str(volume["id"]),
            name=volume.get("name") or "",
            start_year=_int_or_none(volume.get("start_year")),
            publisher=publisher.get("name"),
            issue_count=_int_or_none(volume.get("count_of_issues")),
            description=volume.get("description"),
            deck=volume.get("deck"),
            cover_url=image.get("original_url") or image.get("medium_url"),
            url=volume.get("site_detail_url"),
            creators=_names(volume.get("people")),
            characters=_names(volume.get("characters")),
            locations=_names(volume.get("locations")),
            aliases=aliases,
        )

    @staticmethod
    def _to_issue(issue: dict[str, Any], with_credits: bool) -> IssueRecord:
        credits = None
        if with_credits:
            credits = [
                Credit(name=p["name"], role=p.get("role") or "")
                for p in issue.get("person_credits") or []
                if p.get("name")
            ]
        return IssueRecord(
            id=str(issue["id"]),
            number=issue.get("issue_number"),
            title=issue.get("name"),
            cover_date=issue.get("cover_date"),
            description=issue.get("description") or issue.get("deck"),
            credits=credits,
            characters=_names(issue.get("character_credits")),
            teams=_names(issue.get("team_credits")),
            locations=_names(issue.get("location_credits")),
            story_arcs=_names(issue.get("story_arc_credits")),
            url=issue.get("site_detail_url"),
        )

    async def search_series(self, query: SeriesQuery, limit: int, offset: int = 0) -> SeriesSearchResults:
        page = offset // max(limit, 1) + 1
        data = await self._get(
            "search",
            {"resources": "volume", "query": query.series, "limit": min(limit, 100), "page": page},
        )
        results = [self._to_series(v) for v in data.get("results") or [] if v.get("id")]
        total = _int_or_none(data.get("number_of_total_results")) or 0
        return SeriesSearchResults(
            series=results,
            pagination=SearchPagination(
                offset=offset,
                limit=limit,
                has_more=offset + len(results) < total,
                total=total,
            ),
        )

    async def get_series(self, source_id: str) -> SeriesMatch | None:
        try:
            data = await self._get(f"volume/{VOLUME_PREFIX}{source_id}")
        except MetadataProviderError as e:
            logger.warning("ComicVine volume %s unavailable: %s", source_id, e)
            return None
        results = data.get("results")
        return self._to_series(results) if results else None

    async def get_series_issues(self, source_id: str) -> list[IssueRecord]:
        issues: list[IssueRecord] = []
        offset = 0
        for _ in range(MAX_ISSUE_PAGES):
            data = await self._get(
                "issues",
                {
                    "filter": f"volume:{source_id}",
                    "sort": "issue_number:asc",
                    "limit": ISSUE_PAGE_SIZE,
                    "offset": offset,
                    "field_list": ISSUE_LIST_FIELDS,
                },
            )
            page = data.get("results") or []
            issues.extend(self._to_issue(i, with_credits=False) for i in page if i.get("id"))
            offset += len(page)
            total = _int_or_none(data.get("number_of_total_results")) or 0
            if not page or offset >= total:
                break
        return issues

    async def get_issue(self, issue_id: str) -> IssueRecord | None:
        data = await self._get(f"issue/{ISSUE_PREFIX}{issue_id}")
        results = data.get("results")
        return self._to_issue(results, with_credits=True) if results else None
