"""Next-card selection for a study session.

Two presentation modes:

- sequential (audio decks): the due card with the lowest id.
- random (normal decks): with probability ``new_probability`` try a random
  New card first, then a random due review card, then fall back to any
  New card.

Both modes distinguish "nothing due right now" (``EMPTY``) from "the deck
has no cards at all" (``None``).
"""

import logging
import random
from datetime import datetime

from backend.models.deck import Deck
from backend.models.user_card import UserCard
from backend.srs.repository import ReviewRepository

logger = logging.getLogger(__name__)


class EmptyState:
    """Sentinel: the deck has cards but none is available right now."""

    _instance = None

    def __new__(cls):  # noqa: ANN204
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "EMPTY"


EMPTY = EmptyState()

SEQUENTIAL_DECK_TYPES = frozenset({"audio"})


def is_sequential(deck: Deck) -> bool:
    return deck.deck_type in SEQUENTIAL_DECK_TYPES


async def _nothing_available(repo: ReviewRepository, deck_id: int, user_id: int) -> EmptyState | None:
    if await repo.count_cards(deck_id, user_id) == 0:
        return None
    return EMPTY


async def select_next(
    repo: ReviewRepository,
    deck: Deck,
    user_id: int,
    now: datetime,
    rng: random.Random,
    new_probability: float,
) -> UserCard | EmptyState | None:
    """Pick the next card to present.

    Returns:
        The chosen ``UserCard``; ``EMPTY`` when the deck has cards but none
        is available; ``None`` when the deck has no cards.
    """
    if is_sequential(deck):
        user_card = await repo.first_due_card(deck.id, user_id, now)
        if user_card is not None:
            return user_card
        return await _nothing_available(repo, deck.id, user_id)

    chosen: int | None = None
    new_ids: list[int] | None = None

    if rng.random() < new_probability:
        new_ids = await repo.new_card_ids(deck.id, user_id)
        if new_ids:
            chosen = rng.choice(new_ids)

    if chosen is None:
        due_ids = await repo.due_review_ids(deck.id, user_id, now)
        if due_ids:
            chosen = rng.choice(due_ids)

    if chosen is None:
        if new_ids is None:
            new_ids = await repo.new_card_ids(deck.id, user_id)
        if new_ids:
            chosen = rng.choice(new_ids)

    if chosen is None:
        return await _nothing_available(repo, deck.id, user_id)

    logger.debug("Selected user card %d from deck %d", chosen, deck.id)
    return await repo.load_review_state(chosen)
