"""Review orchestrator.

Coordinates card selection, scheduling, persistence and the stats cache
for one user studying one deck at a time.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from backend.config import settings, utcnow
from backend.errors import InvalidArgument, NotFound
from backend.models.deck import Deck
from backend.models.user_card import UserCard
from backend.srs import scheduler
from backend.srs.memory import Grade, ScheduleResult, SchedulerParameters, State
from backend.srs.repository import ReviewRepository, to_review_state
from backend.srs.selection import EmptyState, select_next
from backend.srs.stats import DeckStats, DeckStatsCache, stats_cache

logger = logging.getLogger(__name__)


@dataclass
class GradeOutcome:
    """Result of grading one card."""

    user_card: UserCard
    result: ScheduleResult
    algorithm: scheduler.Algorithm


def _default_parameters() -> SchedulerParameters:
    return SchedulerParameters(
        requested_retention=settings.default_requested_retention,
        maximum_interval=settings.default_maximum_interval,
    )


class ReviewOrchestrator:
    """Drives a user's study session over the persistence port."""

    def __init__(
        self,
        db: AsyncSession,
        user_id: int,
        cache: DeckStatsCache = stats_cache,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repo = ReviewRepository(db)
        self.user_id = user_id
        self.cache = cache
        self.rng = rng or random.Random()
        self.clock = clock

    def _cache_key(self, deck_id: int) -> tuple[int, int]:
        return (deck_id, self.user_id)

    # --- Configuration ---

    async def scheduler_parameters(self, deck_id: int) -> SchedulerParameters:
        """Per-user-deck overrides on top of the configured defaults."""
        user_deck = await self.repo.get_user_deck(deck_id, self.user_id)
        if user_deck is None or not user_deck.fsrs_parameters:
            return _default_parameters()
        defaults = _default_parameters()
        return SchedulerParameters.from_mapping(
            user_deck.fsrs_parameters,
            requested_retention=defaults.requested_retention,
            maximum_interval=defaults.maximum_interval,
        )

    async def update_parameters(self, deck_id: int, data: Mapping[str, Any]) -> SchedulerParameters:
        await self.repo.get_deck(deck_id)
        params = SchedulerParameters.from_mapping(data)
        user_deck = await self.repo.ensure_user_deck(deck_id, self.user_id)
        user_deck.fsrs_parameters = params.to_mapping()
        await self.repo.db.commit()
        logger.info("Updated scheduler parameters for deck %d user %d", deck_id, self.user_id)
        return params

    # --- Selection ---

    async def select_next(self, deck_id: int) -> UserCard | EmptyState | None:
        """Next card to present; ``EMPTY`` if none is available, ``None`` if the deck has no cards."""
        deck = await self.repo.get_deck(deck_id)
        return await select_next(
            self.repo,
            deck,
            self.user_id,
            self.clock(),
            self.rng,
            settings.new_card_probability,
        )

    # --- Grading ---

    async def _load_card(self, deck_id: int, user_card_id: int) -> tuple[Deck, UserCard]:
        deck = await self.repo.get_deck(deck_id)
        user_card = await self.repo.load_review_state(user_card_id)
        if user_card.deck_id != deck_id or user_card.user_id != self.user_id:
            raise NotFound(f"Card {user_card_id} not found in deck {deck_id}")
        return deck, user_card

    async def apply_grade(self, deck_id: int, user_card_id: int, grade: Any) -> GradeOutcome:
        """Grade a card, persist the new state and log, and update cached stats.

        Raises:
            InvalidArgument: If the grade is not 0-3 or the card is suspended.
            NotFound: If the card does not exist in this deck for this user.
        """
        parsed = Grade.parse(grade)
        deck, user_card = await self._load_card(deck_id, user_card_id)
        if user_card.suspended_at is not None:
            raise InvalidArgument(f"Card {user_card_id} is suspended")

        now = self.clock()
        algorithm = scheduler.Algorithm.parse(deck.algorithm)
        params = await self.scheduler_parameters(deck_id)
        state = to_review_state(user_card)
        result = scheduler.schedule(algorithm, state, parsed, params, now)

        was_new = state.state == State.NEW
        was_due = not was_new and state.due <= now
        await self.repo.save_review_state(user_card, result, algorithm.value)
        self.cache.record_review(self._cache_key(deck_id), was_new=was_new, was_due=was_due)

        logger.info(
            "Card %d graded %s: %s -> %s, due %s",
            user_card_id,
            parsed.name,
            state.state.name,
            result.state.state.name,
            result.state.due.isoformat(),
        )
        return GradeOutcome(user_card=user_card, result=result, algorithm=algorithm)

    async def preview(self, deck_id: int, user_card_id: int) -> dict[Grade, ScheduleResult]:
        """Outcome of each grade without persisting anything."""
        deck, user_card = await self._load_card(deck_id, user_card_id)
        algorithm = scheduler.Algorithm.parse(deck.algorithm)
        params = await self.scheduler_parameters(deck_id)
        return scheduler.preview(algorithm, to_review_state(user_card), params, self.clock())

    # --- Suspension ---

    async def suspend(self, deck_id: int, user_card_id: int) -> UserCard:
        _, user_card = await self._load_card(deck_id, user_card_id)
        if user_card.suspended_at is None:
            await self.repo.set_suspended(user_card, self.clock())
            self.cache.invalidate(self._cache_key(deck_id))
        return user_card

    async def resume(self, deck_id: int, user_card_id: int) -> UserCard:
        _, user_card = await self._load_card(deck_id, user_card_id)
        if user_card.suspended_at is not None:
            await self.repo.set_suspended(user_card, None)
            self.cache.invalidate(self._cache_key(deck_id))
        return user_card

    # --- Stats ---

    async def deck_stats(self, deck_id: int) -> DeckStats:
        """Cached counts, recounted from storage on a miss."""
        await self.repo.get_deck(deck_id)
        key = self._cache_key(deck_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        stats = await self.repo.load_deck_card_counts(deck_id, self.user_id, self.clock())
        self.cache.set(key, stats)
        return stats
