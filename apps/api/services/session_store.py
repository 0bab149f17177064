"""In-memory store for approval sessions with idle-TTL eviction."""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from services.approval_models import ApprovalSession

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    session: ApprovalSession
    expires_at: float


class SessionStore:
    """
    Holds one ApprovalSession per id.

    Every ``set`` restarts the entry's idle TTL, so a session is only reclaimed
    once nobody has written to it for ``ttl_seconds``. Expired entries are
    invisible to ``get`` even before the sweeper removes them. The store does
    not serialize concurrent writers; callers drive one session at a time.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    def get(self, session_id: str) -> ApprovalSession | None:
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[session_id]
            logger.info("Approval session %s expired", session_id)
            return None
        return entry.session

    def set(self, session: ApprovalSession, ttl_seconds: float | None = None) -> None:
        """Store ``session``; ``ttl_seconds`` overrides the idle TTL for this write."""
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        session.touch()
        self._entries[session.id] = _Entry(session=session, expires_at=self._clock() + ttl)

    def delete(self, session_id: str) -> bool:
        return self._entries.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        return isinstance(session_id, str) and self.get(session_id) is not None

    def evict_expired(self) -> int:
        """Drop every expired session; returns how many were removed."""
        now = self._clock()
        expired = [sid for sid, entry in self._entries.items() if entry.expires_at <= now]
        for sid in expired:
            del self._entries[sid]
        if expired:
            logger.info("Evicted %d expired approval session(s)", len(expired))
        return len(expired)

    async def run_sweeper(self, interval_seconds: float, stop_event: asyncio.Event) -> None:
        """Periodically evict expired sessions until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                self.evict_expired()
