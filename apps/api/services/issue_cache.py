"""TTL cache of per-series issue lists."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from services.metadata_provider import IssueRecord, MetadataProvider

logger = logging.getLogger(__name__)


@dataclass
class CachedIssues:
    """Issue list for one series identity."""
    source: str
    source_id: str
    issues: list[IssueRecord]
    fetched_at: float
    from_cache: bool = False
    by_id: dict[str, IssueRecord] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        if not self.by_id:
            self.by_id = {issue.id: issue for issue in self.issues}


class IssueCache:
    """
    Caches ``MetadataProvider.get_series_issues`` per (source, series id).

    A failed or empty fetch yields ``None`` and is not cached, so the next
    review retries the source.
    """

    def __init__(
        self,
        provider: MetadataProvider,
        ttl_seconds: float = 86400,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], CachedIssues] = {}

    async def get_or_fetch_issues(self, source: str, source_id: str) -> CachedIssues | None:
        key = (source, source_id)
        cached = self._entries.get(key)
        now = self._clock()
        if cached is not None and now - cached.fetched_at < self.ttl_seconds:
            return CachedIssues(
                source=source,
                source_id=source_id,
                issues=cached.issues,
                fetched_at=cached.fetched_at,
                from_cache=True,
                by_id=cached.by_id,
            )

        try:
            issues = await self.provider.get_series_issues(source, source_id)
        except Exception as e:
            logger.warning("Failed to fetch issues for %s:%s: %s", source, source_id, e)
            return None

        if not issues:
            logger.info("No issues available for %s:%s", source, source_id)
            return None

        entry = CachedIssues(source=source, source_id=source_id, issues=list(issues), fetched_at=now)
        self._entries[key] = entry
        return entry

    def store_issue(self, source: str, source_id: str, issue: IssueRecord) -> None:
        """Replace one cached issue with a richer copy (e.g. after a credit backfill)."""
        cached = self._entries.get((source, source_id))
        if cached is None or issue.id not in cached.by_id:
            return
        cached.issues = [issue if existing.id == issue.id else existing for existing in cached.issues]
        cached.by_id[issue.id] = issue

    def invalidate(self, source: str, source_id: str) -> None:
        self._entries.pop((source, source_id), None)

    def clear(self) -> None:
        self._entries.clear()
