"""Persistence port for the scheduler, orchestrator and importer.

Wraps an ``AsyncSession`` so the core never builds queries itself.
"""

import logging
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from backend.config import utcnow
from backend.errors import InvalidArgument, NotFound
from backend.models.card import Card
from backend.models.deck import ALGORITHMS, DECK_TYPES, Deck
from backend.models.review_log import ReviewLog
from backend.models.user_card import UserCard
from backend.models.user_deck import UserDeck
from backend.srs.memory import ReviewState, ScheduleResult, State
from backend.srs.stats import DeckStats

logger = logging.getLogger(__name__)


def to_review_state(user_card: UserCard) -> ReviewState:
    return ReviewState(
        due=user_card.due,
        stability=user_card.stability,
        difficulty=user_card.difficulty,
        elapsed_days=user_card.elapsed_days,
        scheduled_days=user_card.scheduled_days,
        reps=user_card.reps,
        lapses=user_card.lapses,
        learning_steps=user_card.learning_steps,
        state=State(user_card.state),
        last_review=user_card.last_review,
    )


def apply_review_state(user_card: UserCard, state: ReviewState) -> None:
    user_card.due = state.due
    user_card.stability = state.stability
    user_card.difficulty = state.difficulty
    user_card.elapsed_days = state.elapsed_days
    user_card.scheduled_days = state.scheduled_days
    user_card.reps = state.reps
    user_card.lapses = state.lapses
    user_card.learning_steps = state.learning_steps
    user_card.state = int(state.state)
    user_card.last_review = state.last_review


class ReviewRepository:
    """Database access for decks, cards and review states."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # --- Decks ---

    async def get_deck(self, deck_id: int) -> Deck:
        deck = await self.db.get(Deck, deck_id)
        if deck is None:
            raise NotFound(f"Deck {deck_id} not found")
        return deck

    async def create_deck(
        self,
        name: str,
        creator_id: int,
        description: str | None = None,
        deck_type: str = "normal",
        algorithm: str | None = None,
        status: str = "completed",
        task_id: str | None = None,
    ) -> Deck:
        """Create a deck and subscribe its creator to it.

        Audio decks default to the legacy scheduler.
        """
        if deck_type not in DECK_TYPES:
            raise InvalidArgument(f"Unknown deck type: {deck_type!r}")
        if algorithm is None:
            algorithm = "sm2" if deck_type == "audio" else "fsrs"
        if algorithm not in ALGORITHMS:
            raise InvalidArgument(f"Unknown scheduling algorithm: {algorithm!r}")
        deck = Deck(
            name=name,
            description=description,
            deck_type=deck_type,
            algorithm=algorithm,
            status=status,
            task_id=task_id,
            creator_id=creator_id,
        )
        self.db.add(deck)
        await self.db.flush()
        self.db.add(UserDeck(deck_id=deck.id, user_id=creator_id))
        await self.db.commit()
        logger.info("Created deck %d (%s, %s)", deck.id, deck_type, algorithm)
        return deck

    async def list_user_decks(self, user_id: int) -> list[Deck]:
        stmt = (
            select(Deck)
            .join(UserDeck, UserDeck.deck_id == Deck.id)
            .where(UserDeck.user_id == user_id)
            .order_by(Deck.id.asc())
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_user_deck(self, deck_id: int, user_id: int) -> UserDeck | None:
        stmt = select(UserDeck).where(and_(UserDeck.deck_id == deck_id, UserDeck.user_id == user_id))
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def ensure_user_deck(self, deck_id: int, user_id: int) -> UserDeck:
        user_deck = await self.get_user_deck(deck_id, user_id)
        if user_deck is None:
            user_deck = UserDeck(deck_id=deck_id, user_id=user_id)
            self.db.add(user_deck)
            await self.db.flush()
        return user_deck

    async def set_deck_status(self, deck_id: int, status: str) -> None:
        await self.db.execute(update(Deck).where(Deck.id == deck_id).values(status=status))
        await self.db.commit()

    # --- Review states ---

    async def load_review_state(self, user_card_id: int) -> UserCard:
        stmt = (
            select(UserCard)
            .where(UserCard.id == user_card_id)
            .options(selectinload(UserCard.card))
        )
        user_card = (await self.db.execute(stmt)).scalar_one_or_none()
        if user_card is None:
            raise NotFound(f"Card {user_card_id} not found")
        return user_card

    async def save_review_state(
        self,
        user_card: UserCard,
        result: ScheduleResult,
        algorithm: str,
    ) -> None:
        """Persist the new state and its log row in one transaction."""
        apply_review_state(user_card, result.state)
        log = result.log
        self.db.add(
            ReviewLog(
                user_card_id=user_card.id,
                user_id=user_card.user_id,
                algorithm=algorithm,
                rating=int(log.rating),
                state=int(log.state),
                due=log.due,
                stability=log.stability,
                difficulty=log.difficulty,
                elapsed_days=log.elapsed_days,
                last_elapsed_days=log.last_elapsed_days,
                scheduled_days=log.scheduled_days,
                learning_steps=log.learning_steps,
                reviewed_at=log.review,
            )
        )
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    async def set_suspended(self, user_card: UserCard, suspended_at: datetime | None) -> None:
        user_card.suspended_at = suspended_at
        await self.db.commit()

    # --- Selection queries ---

    def _active(self, deck_id: int, user_id: int):  # noqa: ANN202
        return and_(
            UserCard.deck_id == deck_id,
            UserCard.user_id == user_id,
            UserCard.suspended_at.is_(None),
        )

    async def new_card_ids(self, deck_id: int, user_id: int) -> list[int]:
        stmt = (
            select(UserCard.id)
            .where(and_(self._active(deck_id, user_id), UserCard.state == int(State.NEW)))
            .order_by(UserCard.id.asc())
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def due_review_ids(self, deck_id: int, user_id: int, now: datetime) -> list[int]:
        stmt = (
            select(UserCard.id)
            .where(
                and_(
                    self._active(deck_id, user_id),
                    UserCard.state != int(State.NEW),
                    UserCard.due <= now,
                )
            )
            .order_by(UserCard.id.asc())
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def first_due_card(self, deck_id: int, user_id: int, now: datetime) -> UserCard | None:
        stmt = (
            select(UserCard)
            .where(and_(self._active(deck_id, user_id), UserCard.due <= now))
            .order_by(UserCard.id.asc())
            .limit(1)
            .options(selectinload(UserCard.card))
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def count_cards(self, deck_id: int, user_id: int) -> int:
        stmt = select(func.count(UserCard.id)).where(self._active(deck_id, user_id))
        return (await self.db.execute(stmt)).scalar() or 0

    async def load_deck_card_counts(self, deck_id: int, user_id: int, now: datetime) -> DeckStats:
        """Recount new/due/review cards from the persisted review states."""
        active = self._active(deck_id, user_id)
        new_stmt = select(func.count(UserCard.id)).where(
            and_(active, UserCard.state == int(State.NEW))
        )
        review_stmt = select(func.count(UserCard.id)).where(
            and_(active, UserCard.state != int(State.NEW))
        )
        due_stmt = select(func.count(UserCard.id)).where(
            and_(active, UserCard.state != int(State.NEW), UserCard.due <= now)
        )
        return DeckStats(
            new_cards=(await self.db.execute(new_stmt)).scalar() or 0,
            due_cards=(await self.db.execute(due_stmt)).scalar() or 0,
            total_review_cards=(await self.db.execute(review_stmt)).scalar() or 0,
        )

    # --- Card creation ---

    async def create_cards(
        self,
        deck_id: int,
        user_id: int,
        cards: Sequence[tuple[str, str]],
        content_type: str = "text",
    ) -> int:
        """Insert (front, back) pairs as cards with fresh New review states.

        The whole sequence is committed as one unit.
        """
        if not cards:
            return 0
        now = utcnow()
        try:
            rows = [Card(deck_id=deck_id, front=front, back=back, content_type=content_type) for front, back in cards]
            self.db.add_all(rows)
            await self.db.flush()
            self.db.add_all(
                [
                    UserCard(
                        user_id=user_id,
                        deck_id=deck_id,
                        card_id=row.id,
                        due=now,
                        state=int(State.NEW),
                    )
                    for row in rows
                ]
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.debug("Created %d cards in deck %d", len(rows), deck_id)
        return len(rows)

    async def create_card(self, deck_id: int, user_id: int, front: str, back: str) -> None:
        await self.create_cards(deck_id, user_id, [(front, back)])
