"""Tests for card selection, grading, suspension and cached deck stats."""

import random
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from backend.config import utcnow
from backend.errors import InvalidArgument, NotFound
from backend.models import ReviewLog, User
from backend.srs.memory import Grade, State
from backend.srs.orchestrator import ReviewOrchestrator
from backend.srs.repository import ReviewRepository
from backend.srs.selection import EMPTY
from backend.srs.stats import DeckStats, DeckStatsCache


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class StubRandom:
    """Fixed draw for the new-card coin flip; always picks the first candidate."""

    def __init__(self, draw: float) -> None:
        self.draw = draw

    def random(self) -> float:
        return self.draw

    def choice(self, seq):  # noqa: ANN001, ANN201
        return seq[0]


@pytest.fixture
def clock() -> FakeClock:
    # Cards are created due at the real current time
    return FakeClock(utcnow() + timedelta(minutes=1))


@pytest.fixture
def cache() -> DeckStatsCache:
    return DeckStatsCache(ttl_seconds=300, clock=FakeMonotonic())


def orchestrator(db, user_id, clock, cache, draw: float = 0.0) -> ReviewOrchestrator:
    return ReviewOrchestrator(db, user_id, cache=cache, rng=StubRandom(draw), clock=clock)


async def make_deck(db, user_id: int, cards: int, deck_type: str = "normal") -> tuple[int, list[int]]:
    repo = ReviewRepository(db)
    deck = await repo.create_deck("Spanish", user_id, deck_type=deck_type)
    await repo.create_cards(deck.id, user_id, [(f"front {i}", f"back {i}") for i in range(cards)])
    return deck.id, await repo.new_card_ids(deck.id, user_id)


class TestSelection:
    @pytest.mark.asyncio
    async def test_empty_deck_returns_none(self, db, user_id, clock, cache) -> None:
        deck_id, _ = await make_deck(db, user_id, 0)
        assert await orchestrator(db, user_id, clock, cache).select_next(deck_id) is None

    @pytest.mark.asyncio
    async def test_new_card_when_draw_below_probability(self, db, user_id, clock, cache) -> None:
        deck_id, ids = await make_deck(db, user_id, 2)
        orch = orchestrator(db, user_id, clock, cache, draw=0.1)
        await orch.apply_grade(deck_id, ids[0], Grade.GOOD)
        clock.advance(hours=1)

        chosen = await orch.select_next(deck_id)

        assert chosen.id == ids[1]

    @pytest.mark.asyncio
    async def test_due_review_when_draw_above_probability(self, db, user_id, clock, cache) -> None:
        deck_id, ids = await make_deck(db, user_id, 2)
        orch = orchestrator(db, user_id, clock, cache, draw=0.9)
        await orch.apply_grade(deck_id, ids[0], Grade.GOOD)
        clock.advance(hours=1)

        chosen = await orch.select_next(deck_id)

        assert chosen.id == ids[0]

    @pytest.mark.asyncio
    async def test_new_card_share_is_about_seventy_percent(self, db, user_id, clock, cache) -> None:
        deck_id, ids = await make_deck(db, user_id, 2)
        orch = ReviewOrchestrator(db, user_id, cache=cache, rng=random.Random(20240611), clock=clock)
        await orch.apply_grade(deck_id, ids[0], Grade.GOOD)
        clock.advance(hours=1)

        picks = [(await orch.select_next(deck_id)).id for _ in range(400)]

        assert set(picks) == {ids[0], ids[1]}
        assert 0.62 <= picks.count(ids[1]) / len(picks) <= 0.78

    @pytest.mark.asyncio
    async def test_falls_back_to_new_when_nothing_due(self, db, user_id, clock, cache) -> None:
        deck_id, ids = await make_deck(db, user_id, 2)
        orch = orchestrator(db, user_id, clock, cache, draw=0.9)
        await orch.apply_grade(deck_id, ids[0], Grade.GOOD)

        chosen = await orch.select_next(deck_id)

        assert chosen.id == ids[1]

    @pytest.mark.asyncio
    async def test_empty_when_nothing_available(self, db, user_id, clock, cache) -> None:
        deck_id, ids = await make_deck(db, user_id, 1)
        orch = orchestrator(db, user_id, clock, cache, draw=0.1)
        await orch.apply_grade(deck_id, ids[0], Grade.GOOD)

        result = await orch.select_next(deck_id)

        assert result is EMPTY
        assert not result

    @pytest.mark.asyncio
    async def test_suspended_cards_are_skipped(self, db, user_id, clock, cache) -> None:
        deck_id, ids = await make_deck(db, user_id, 2)
        orch = orchestrator(db, user_id, clock, cache, draw=0.1)
        await orch.suspend(deck_id, ids[0])

        assert (await orch.select_next(deck_id)).id == ids[1]
        await orch.suspend(deck_id, ids[1])
        assert await orch.select_next(deck_id) is None

    @pytest.mark.asyncio
    async def test_sequential_deck_picks_lowest_due_id(self, db, user_id, clock, cache) -> None:
        deck_id, ids = await make_deck(db, user_id, 3, deck_type="audio")
        orch = orchestrator(db, user_id, clock, cache, draw=0.9)

        first = await orch.select_next(deck_id)
        assert first.id == ids[0]
        await orch.apply_grade(deck_id, first.id, Grade.GOOD)

        assert (await orch.select_next(deck_id)).id == ids[1]

    @pytest.mark.asyncio
    async def test_unknown_deck(self, db, user_id, clock, cache) -> None:
        with pytest.raises(NotFound):
            await orchestrator(db, user_id, clock, cache).select_next(999)


class TestGrading:
    @pytest.mark.asyncio
    async def test_persists_state_and_log(self, db, user_id, clock, cache) -> None:
        deck_id, ids = await make_deck(db, user_id, 1)
        orch = orchestrator(db, user_id, clock, cache)

        outcome = await orch.apply_grade(deck_id, ids[0], 2)

        assert outcome.algorithm.value == "fsrs"
        assert outcome.user_card.state == int(State.LEARNING)
        assert outcome.user_card.reps == 1
        assert outcome.user_card.due == clock.now + timedelta(minutes=10)
        logs = await db.execute(select(func.count(ReviewLog.id)).where(ReviewLog.user_card_id == ids[0]))
        assert logs.scalar() == 1

    @pytest.mark.asyncio
    async def test_legacy_deck_uses_fixed_intervals(self, db, user_id, clock, cache) -> None:
        deck_id, ids = await make_deck(db, user_id, 1, deck_type="audio")
        orch = orchestrator(db, user_id, clock, cache)

        outcome = await orch.apply_grade(deck_id, ids[0], Grade.GOOD)

        assert outcome.algorithm.value == "sm2"
        assert outcome.user_card.state == int(State.REVIEW)
        assert outcome.user_card.due == clock.now + timedelta(minutes=35)

        outcome = await orch.apply_grade(deck_id, ids[0], Grade.AGAIN)
        assert outcome.user_card.due == clock.now + timedelta(minutes=5)
        assert outcome.user_card.difficulty == pytest.approx(2.3)

    @pytest.mark.parametrize("grade", [4, -1, "good", 2.5, True])
    @pytest.mark.asyncio
    async def test_invalid_grade(self, db, user_id, clock, cache, grade) -> None:
        deck_id, ids = await make_deck(db, user_id, 1)
        with pytest.raises(InvalidArgument):
            await orchestrator(db, user_id, clock, cache).apply_grade(deck_id, ids[0], grade)

    @pytest.mark.asyncio
    async def test_card_from_other_deck(self, db, user_id, clock, cache) -> None:
        deck_id, ids = await make_deck(db, user_id, 1)
        other_deck, _ = await make_deck(db, user_id, 0)
        with pytest.raises(NotFound):
            await orchestrator(db, user_id, clock, cache).apply_grade(other_deck, ids[0], Grade.GOOD)

    @pytest.mark.asyncio
    async def test_card_of_other_user(self, db, user_id, clock, cache) -> None:
        deck_id, ids = await make_deck(db, user_id, 1)
        other = User(name="someone else")
        db.add(other)
        await db.commit()
        with pytest.raises(NotFound):
            await orchestrator(db, other.id, clock, cache).apply_grade(deck_id, ids[0], Grade.GOOD)

    @pytest.mark.asyncio
    async def test_suspended_card_cannot_be_graded(self, db, user_id, clock, cache) -> None:
        deck_id, ids = await make_deck(db, user_id, 1)
        orch = orchestrator(db, user_id, clock, cache)
        await orch.suspend(deck_id, ids[0])

        with pytest.raises(InvalidArgument):
            await orch.apply_grade(deck_id, ids[0], Grade.GOOD)

        await orch.resume(deck_id, ids[0])
        await orch.apply_grade(deck_id, ids[0], Grade.GOOD)

    @pytest.mark.asyncio
    async def test_preview_does_not_persist(self, db, user_id, clock, cache) -> None:
        deck_id, ids = await make_deck(db, user_id, 1)
        orch = orchestrator(db, user_id, clock, cache)

        options = await orch.preview(deck_id, ids[0])

        assert set(options) == set(Grade)
        assert options[Grade.AGAIN].state.due <= options[Grade.EASY].state.due
        logs = await db.execute(select(func.count(ReviewLog.id)))
        assert logs.scalar() == 0


class TestParameters:
    @pytest.mark.asyncio
    async def test_defaults_without_overrides(self, db, user_id, clock, cache) -> None:
        deck_id, _ = await make_deck(db, user_id, 0)
        params = await orchestrator(db, user_id, clock, cache).scheduler_parameters(deck_id)
        assert params.requested_retention == 0.9

    @pytest.mark.asyncio
    async def test_overrides_are_stored_per_user_deck(self, db, user_id, clock, cache) -> None:
        deck_id, _ = await make_deck(db, user_id, 0)
        orch = orchestrator(db, user_id, clock, cache)

        await orch.update_parameters(deck_id, {"requested_retention": 0.85, "learning_steps": ["5m"]})
        params = await orch.scheduler_parameters(deck_id)

        assert params.requested_retention == 0.85
        assert params.learning_steps == (timedelta(minutes=5),)

    @pytest.mark.asyncio
    async def test_rejects_out_of_range_retention(self, db, user_id, clock, cache) -> None:
        deck_id, _ = await make_deck(db, user_id, 0)
        with pytest.raises(InvalidArgument):
            await orchestrator(db, user_id, clock, cache).update_parameters(deck_id, {"requested_retention": 1.5})


class TestDeckStats:
    @pytest.mark.asyncio
    async def test_counts_and_incremental_updates(self, db, user_id, clock, cache) -> None:
        deck_id, ids = await make_deck(db, user_id, 3)
        orch = orchestrator(db, user_id, clock, cache)

        assert await orch.deck_stats(deck_id) == DeckStats(new_cards=3, due_cards=0, total_review_cards=0)

        await orch.apply_grade(deck_id, ids[0], Grade.GOOD)

        stats = await orch.deck_stats(deck_id)
        assert stats == DeckStats(new_cards=2, due_cards=0, total_review_cards=1)
        assert stats.total_cards == 3

    @pytest.mark.asyncio
    async def test_cache_expires_after_ttl(self, db, user_id, clock, cache) -> None:
        deck_id, _ = await make_deck(db, user_id, 1)
        orch = orchestrator(db, user_id, clock, cache)
        await orch.deck_stats(deck_id)
        await ReviewRepository(db).create_card(deck_id, user_id, "extra", "card")

        assert (await orch.deck_stats(deck_id)).new_cards == 1
        cache._clock.value += 301
        assert (await orch.deck_stats(deck_id)).new_cards == 2

    @pytest.mark.asyncio
    async def test_suspend_invalidates(self, db, user_id, clock, cache) -> None:
        deck_id, ids = await make_deck(db, user_id, 2)
        orch = orchestrator(db, user_id, clock, cache)
        await orch.deck_stats(deck_id)

        await orch.suspend(deck_id, ids[0])

        assert (await orch.deck_stats(deck_id)).new_cards == 1


class TestStatsCache:
    def test_record_review_is_noop_on_miss(self) -> None:
        cache = DeckStatsCache(ttl_seconds=300, clock=FakeMonotonic())
        cache.record_review((1, 1), was_new=True, was_due=False)
        assert cache.get((1, 1)) is None

    def test_record_review_keeps_expiry(self) -> None:
        clock = FakeMonotonic()
        cache = DeckStatsCache(ttl_seconds=300, clock=clock)
        cache.set((1, 1), DeckStats(new_cards=0, due_cards=2, total_review_cards=5))

        clock.value += 200
        cache.record_review((1, 1), was_new=False, was_due=True)
        assert cache.get((1, 1)).due_cards == 1

        clock.value += 100
        assert cache.get((1, 1)) is None
