"""FSRS (Free Spaced Repetition Scheduler) strategy.

Reference: https://github.com/open-spaced-repetition/fsrs4anki

Two layers live here:

- Memory kernels: the closed-form stability/difficulty equations of a
  published FSRS version. Each kernel exposes one entry point,
  ``compute_next``, plus the forgetting curve and its inverse. Kernels are
  chosen by the length of the weight vector (17 -> FSRS-4.5, 19 -> FSRS-5,
  21 -> FSRS-6); any other length falls back to the FSRS-6 defaults.
- The scheduling strategy ``schedule``: the step ladder for Learning and
  Relearning cards, the state transitions, interval clamping and fuzz.

Key concepts:
- Stability (S): days until recall probability drops to the requested retention.
- Difficulty (D): 1-10, inherent item hardness.
- Retrievability (R): probability of recall after t days.
- Grade G: the kernels use Anki's 1-4 numbering (Grade + 1).
"""

from __future__ import annotations

import logging
import math
import random
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from backend.srs.memory import (
    Grade,
    ReviewLogEntry,
    ReviewState,
    ScheduleResult,
    SchedulerParameters,
    State,
)

logger = logging.getLogger(__name__)

MIN_DIFFICULTY = 1.0
MAX_DIFFICULTY = 10.0
MIN_STABILITY = 0.001

# Fuzz bands: (start_days, end_days, factor). The fuzz radius grows by
# ``factor`` for every day of the interval that falls inside the band.
FUZZ_RANGES = (
    (2.5, 7.0, 0.15),
    (7.0, 20.0, 0.1),
    (20.0, math.inf, 0.05),
)
MIN_FUZZ_INTERVAL = 2.5


@dataclass(frozen=True)
class MemoryUpdate:
    stability: float
    difficulty: float
    retrievability: float


def _clamp_difficulty(d: float) -> float:
    return max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, d))


class FSRS45Kernel:
    """FSRS-4.5 equations (17 weights, fixed power-law decay)."""

    arity = 17
    default_weights: tuple[float, ...] = (
        0.4872, 1.4003, 3.7145, 13.8206, 5.1618, 1.2298, 0.8975, 0.031, 1.6474,
        0.1367, 1.0461, 2.1072, 0.0793, 0.3246, 1.587, 0.2272, 2.8755,
    )

    def __init__(self, weights: Sequence[float] | None = None) -> None:
        self.w = tuple(weights) if weights else self.default_weights
        if len(self.w) != self.arity:
            raise ValueError(f"{type(self).__name__} expects {self.arity} weights, got {len(self.w)}")

    @property
    def decay(self) -> float:
        return -0.5

    @property
    def factor(self) -> float:
        # Chosen so that R(S, S) == 0.9
        return 0.9 ** (1 / self.decay) - 1

    def retrievability(self, elapsed_days: float, stability: float) -> float:
        """Power forgetting curve: R = (1 + FACTOR * t / S) ^ DECAY."""
        if stability <= 0 or elapsed_days <= 0:
            return 1.0
        return (1 + self.factor * elapsed_days / stability) ** self.decay

    def next_interval(self, stability: float, retention: float) -> float:
        """Days until R drops to ``retention`` (inverse of the forgetting curve)."""
        return stability / self.factor * (retention ** (1 / self.decay) - 1)

    def initial_stability(self, g: int) -> float:
        return max(MIN_STABILITY, self.w[g - 1])

    def initial_difficulty(self, g: int) -> float:
        return _clamp_difficulty(self.w[4] - (g - 3) * self.w[5])

    def next_difficulty(self, d: float, g: int) -> float:
        next_d = d - self.w[6] * (g - 3)
        return _clamp_difficulty(self._mean_reversion(self.initial_difficulty(3), next_d))

    def _mean_reversion(self, init: float, current: float) -> float:
        return self.w[7] * init + (1 - self.w[7]) * current

    def recall_stability(self, s: float, d: float, r: float, g: int) -> float:
        hard_penalty = self.w[15] if g == 2 else 1.0
        easy_bonus = self.w[16] if g == 4 else 1.0
        return s * (
            1
            + math.exp(self.w[8])
            * (11 - d)
            * s ** (-self.w[9])
            * (math.exp((1 - r) * self.w[10]) - 1)
            * hard_penalty
            * easy_bonus
        )

    def forget_stability(self, s: float, d: float, r: float) -> float:
        return (
            self.w[11]
            * d ** (-self.w[12])
            * ((s + 1) ** self.w[13] - 1)
            * math.exp((1 - r) * self.w[14])
        )

    def short_term_stability(self, s: float, g: int) -> float | None:
        """Same-day stability update, or None when the version has none."""
        return None

    def compute_next(
        self,
        stability: float,
        difficulty: float,
        elapsed_days: float,
        grade: Grade,
        *,
        first_review: bool = False,
        short_term: bool = False,
    ) -> MemoryUpdate:
        """Apply one review to a memory state.

        Args:
            stability: Stability before the review (ignored on first review).
            difficulty: Difficulty before the review (ignored on first review).
            elapsed_days: Days since the previous review.
            grade: The recall grade.
            first_review: True for a card that has never been reviewed.
            short_term: Use the same-day update when the version supports one.

        Returns:
            The new stability/difficulty and the retrievability at review time.
        """
        g = int(grade) + 1
        if first_review or stability <= 0:
            return MemoryUpdate(
                stability=self.initial_stability(g),
                difficulty=self.initial_difficulty(g),
                retrievability=1.0,
            )

        r = self.retrievability(elapsed_days, stability)
        new_d = self.next_difficulty(difficulty, g)
        short = self.short_term_stability(stability, g) if short_term else None
        if short is not None:
            new_s = short
        elif g == 1:
            new_s = self._lapse_stability(stability, difficulty, r)
        else:
            new_s = self.recall_stability(stability, difficulty, r, g)
        return MemoryUpdate(
            stability=max(MIN_STABILITY, new_s),
            difficulty=new_d,
            retrievability=r,
        )

    def _lapse_stability(self, s: float, d: float, r: float) -> float:
        return min(self.forget_stability(s, d, r), s)


class FSRS5Kernel(FSRS45Kernel):
    """FSRS-5 equations (19 weights, adds same-day reviews)."""

    arity = 19
    default_weights = (
        0.40255, 1.18385, 3.173, 15.69105, 7.1949, 0.5345, 1.4604, 0.0046, 1.54575,
        0.1192, 1.01925, 1.9395, 0.11, 0.29605, 2.2698, 0.2315, 2.9898, 0.51655, 0.6621,
    )

    def initial_difficulty(self, g: int) -> float:
        return _clamp_difficulty(self._raw_initial_difficulty(g))

    def _raw_initial_difficulty(self, g: int) -> float:
        return self.w[4] - math.exp(self.w[5] * (g - 1)) + 1

    def next_difficulty(self, d: float, g: int) -> float:
        delta = -self.w[6] * (g - 3)
        damped = d + delta * (10 - d) / 9  # linear damping towards the bounds
        return _clamp_difficulty(self._mean_reversion(self._raw_initial_difficulty(4), damped))

    def short_term_stability(self, s: float, g: int) -> float | None:
        increase = math.exp(self.w[17] * (g - 3 + self.w[18]))
        if g >= 3:
            increase = max(increase, 1.0)
        return s * increase

    def _lapse_stability(self, s: float, d: float, r: float) -> float:
        return min(self.forget_stability(s, d, r), s / math.exp(self.w[17] * self.w[18]))


class FSRS6Kernel(FSRS5Kernel):
    """FSRS-6 equations (21 weights, trainable decay)."""

    arity = 21
    default_weights = (
        0.212, 1.2931, 2.3065, 8.2956, 6.4133, 0.8334, 3.0194, 0.001, 1.8722, 0.1666,
        0.796, 1.4835, 0.0614, 0.2629, 1.6483, 0.6014, 1.8729, 0.5425, 0.0912, 0.0658,
        0.1542,
    )

    @property
    def decay(self) -> float:
        return -self.w[20]

    def short_term_stability(self, s: float, g: int) -> float | None:
        increase = math.exp(self.w[17] * (g - 3 + self.w[18])) * s ** (-self.w[19])
        if g >= 3:
            increase = max(increase, 1.0)
        return s * increase


KERNELS: dict[int, type[FSRS45Kernel]] = {
    FSRS45Kernel.arity: FSRS45Kernel,
    FSRS5Kernel.arity: FSRS5Kernel,
    FSRS6Kernel.arity: FSRS6Kernel,
}
DEFAULT_KERNEL = FSRS6Kernel


def resolve_kernel(weights: Sequence[float] | None) -> FSRS45Kernel:
    """Pick the kernel matching the weight vector, substituting defaults on mismatch."""
    if weights:
        kernel_cls = KERNELS.get(len(weights))
        if kernel_cls is not None:
            return kernel_cls(weights)
        logger.warning(
            "Weight vector of length %d matches no FSRS version; using FSRS-6 defaults",
            len(weights),
        )
    return DEFAULT_KERNEL()


def _fuzz_interval(interval: float, maximum_interval: int, rng: random.Random) -> int:
    """Jitter an interval by a few percent so cards reviewed together drift apart."""
    if interval < MIN_FUZZ_INTERVAL:
        return round(interval)
    delta = 1.0
    for start, end, factor in FUZZ_RANGES:
        delta += factor * max(min(interval, end) - start, 0.0)
    low = max(2, round(interval - delta))
    high = min(round(interval + delta), maximum_interval)
    if low >= high:
        return min(low, maximum_interval)
    return rng.randint(low, high)


def _fuzz_rng(state: ReviewState, grade: Grade, now: datetime) -> random.Random:
    # Deterministic per review so re-running a schedule reproduces it
    seed = f"{now.isoformat()}|{state.reps}|{state.lapses}|{state.stability:.6f}|{state.difficulty:.6f}|{int(grade)}"
    return random.Random(seed)


class FSRSScheduler:
    """Schedules one review under the FSRS memory model."""

    def __init__(self, params: SchedulerParameters) -> None:
        self.params = params
        self.kernel = resolve_kernel(params.weights)

    def interval_days(self, stability: float, state: ReviewState, grade: Grade, now: datetime) -> int:
        """Whole-day interval for a stability, clamped to [1, maximum_interval]."""
        raw = self.kernel.next_interval(stability, self.params.requested_retention)
        if self.params.enable_fuzz:
            days = _fuzz_interval(raw, self.params.maximum_interval, _fuzz_rng(state, grade, now))
        else:
            days = round(raw)
        return max(1, min(days, self.params.maximum_interval))

    def review_intervals(
        self, state: ReviewState, elapsed_days: float, now: datetime, short_term: bool
    ) -> dict[Grade, tuple[MemoryUpdate, int]]:
        """Memory updates and intervals for Hard/Good/Easy on a Review card.

        Intervals are forced into Hard <= Good <= Easy order so a better
        grade never schedules the card sooner.
        """
        updates = {
            grade: self.kernel.compute_next(
                state.stability, state.difficulty, elapsed_days, grade, short_term=short_term
            )
            for grade in (Grade.HARD, Grade.GOOD, Grade.EASY)
        }
        hard = self.interval_days(updates[Grade.HARD].stability, state, Grade.HARD, now)
        good = self.interval_days(updates[Grade.GOOD].stability, state, Grade.GOOD, now)
        hard = min(hard, good)
        good = max(good, hard + 1)
        easy = self.interval_days(updates[Grade.EASY].stability, state, Grade.EASY, now)
        easy = max(easy, good + 1)
        maximum = self.params.maximum_interval
        return {
            Grade.HARD: (updates[Grade.HARD], min(hard, maximum)),
            Grade.GOOD: (updates[Grade.GOOD], min(good, maximum)),
            Grade.EASY: (updates[Grade.EASY], min(easy, maximum)),
        }

    def _ladder(self, state: State) -> tuple[timedelta, ...]:
        if not self.params.enable_short_term:
            return ()
        if state in (State.NEW, State.LEARNING):
            return self.params.learning_steps
        return self.params.relearning_steps

    def schedule(self, state: ReviewState, grade: Grade, now: datetime) -> ScheduleResult:
        elapsed_days = 0.0
        if state.last_review is not None:
            elapsed_days = max(0.0, (now - state.last_review).total_seconds() / 86400)
        short_term = self.params.enable_short_term and state.last_review is not None and elapsed_days < 1

        if state.state == State.REVIEW and grade != Grade.AGAIN:
            update, days = self.review_intervals(state, elapsed_days, now, short_term)[grade]
        else:
            update = self.kernel.compute_next(
                state.stability,
                state.difficulty,
                elapsed_days,
                grade,
                first_review=state.state == State.NEW,
                short_term=short_term,
            )
            days = None

        stability, difficulty = update.stability, update.difficulty
        if grade == Grade.AGAIN and state.state != State.NEW:
            # Forgetting never makes a card easier or more stable
            difficulty = max(difficulty, state.difficulty)
            stability = min(stability, max(state.stability, MIN_STABILITY))

        next_state, step, delay = self._transition(state, grade)
        if delay is None:
            if days is None:
                days = self.interval_days(stability, state, grade, now)
            delay = timedelta(days=days)

        new_state = state.with_updates(
            due=now + delay,
            stability=stability,
            difficulty=difficulty,
            elapsed_days=elapsed_days,
            scheduled_days=delay.total_seconds() / 86400,
            reps=state.reps + (0 if grade == Grade.AGAIN else 1),
            lapses=state.lapses + (1 if grade == Grade.AGAIN else 0),
            learning_steps=step,
            state=next_state,
            last_review=now,
        )
        return ScheduleResult(state=new_state, log=_log_entry(state, grade, elapsed_days, now))

    def _transition(self, state: ReviewState, grade: Grade) -> tuple[State, int, timedelta | None]:
        """Return (next state, ladder position, ladder delay or None for a formula interval)."""
        ladder = self._ladder(state.state)

        if state.state == State.NEW:
            if not ladder:
                return State.REVIEW, 0, None
            step = 0 if grade == Grade.AGAIN else 1
            return State.LEARNING, step, ladder[min(step, len(ladder) - 1)]

        if state.state == State.REVIEW:
            if grade != Grade.AGAIN:
                return State.REVIEW, 0, None
            if not ladder:
                return State.REVIEW, 0, None
            return State.RELEARNING, 0, ladder[0]

        # Learning / Relearning: walk the ladder one step per non-Again grade
        if not ladder:
            return State.REVIEW, 0, None
        if grade == Grade.AGAIN:
            return state.state, 0, ladder[0]
        step = state.learning_steps + 1
        if step >= len(ladder):
            return State.REVIEW, 0, None
        return state.state, step, ladder[step]


def _log_entry(state: ReviewState, grade: Grade, elapsed_days: float, now: datetime) -> ReviewLogEntry:
    return ReviewLogEntry(
        rating=grade,
        state=state.state,
        due=state.due,
        stability=state.stability,
        difficulty=state.difficulty,
        elapsed_days=elapsed_days,
        last_elapsed_days=state.elapsed_days,
        scheduled_days=state.scheduled_days,
        learning_steps=state.learning_steps,
        review=now,
    )


def schedule(
    state: ReviewState, grade: Grade, params: SchedulerParameters, now: datetime
) -> ScheduleResult:
    """Compute the next memory state under FSRS."""
    return FSRSScheduler(params).schedule(state, grade, now)
