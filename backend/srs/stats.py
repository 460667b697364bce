"""Per-deck statistics cache.

Counts are cached for a short TTL and adjusted incrementally as cards are
graded. A miss means the caller recounts from the persisted review states.
Incremental updates keep the original expiry so a drifting count is never
kept longer than one TTL window.
"""

import logging
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass, replace

from backend.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeckStats:
    new_cards: int = 0
    due_cards: int = 0
    total_review_cards: int = 0

    @property
    def total_cards(self) -> int:
        return self.new_cards + self.total_review_cards


class DeckStatsCache:
    """In-process TTL cache of ``DeckStats`` keyed by (deck_id, user_id)."""

    def __init__(
        self,
        ttl_seconds: float = settings.stats_cache_ttl_seconds,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, DeckStats]] = {}

    def get(self, key: Hashable) -> DeckStats | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, stats = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return stats

    def set(self, key: Hashable, stats: DeckStats) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, stats)

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def record_review(self, key: Hashable, was_new: bool, was_due: bool) -> None:
        """Adjust cached counts after one card was graded; no-op on a miss."""
        stats = self.get(key)
        if stats is None:
            return
        if was_new:
            stats = replace(
                stats,
                new_cards=max(0, stats.new_cards - 1),
                total_review_cards=stats.total_review_cards + 1,
            )
        elif was_due:
            stats = replace(stats, due_cards=max(0, stats.due_cards - 1))
        else:
            return
        expires_at, _ = self._entries[key]
        self._entries[key] = (expires_at, stats)
        logger.debug("Stats cache %s -> %s", key, stats)


stats_cache = DeckStatsCache()
