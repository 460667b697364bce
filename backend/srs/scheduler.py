"""Scheduling strategy selection.

Decks pick one of two unrelated strategies by tag; both share only the
``(state, grade, params, now) -> ScheduleResult`` shape.
"""

from collections.abc import Callable
from datetime import datetime
from enum import Enum

from backend.config import settings
from backend.errors import InvalidArgument
from backend.srs import fsrs, legacy
from backend.srs.memory import Grade, ReviewState, ScheduleResult, SchedulerParameters


class Algorithm(str, Enum):
    FSRS = "fsrs"
    LEGACY_SM2 = "sm2"

    @classmethod
    def parse(cls, value: str) -> "Algorithm":
        try:
            return cls(value)
        except ValueError:
            raise InvalidArgument(f"Unknown scheduling algorithm: {value!r}") from None


def _legacy(
    state: ReviewState, grade: Grade, params: SchedulerParameters, now: datetime
) -> ScheduleResult:
    intervals = legacy.LegacyIntervals(
        retry_minutes=settings.legacy_retry_minutes,
        follow_up_minutes=settings.legacy_follow_up_minutes,
        bonus_minutes=settings.legacy_bonus_minutes,
    )
    return legacy.schedule(state, grade, now, intervals)


STRATEGIES: dict[Algorithm, Callable[[ReviewState, Grade, SchedulerParameters, datetime], ScheduleResult]] = {
    Algorithm.FSRS: fsrs.schedule,
    Algorithm.LEGACY_SM2: _legacy,
}


def schedule(
    algorithm: Algorithm,
    state: ReviewState,
    grade: Grade | int,
    params: SchedulerParameters,
    now: datetime,
) -> ScheduleResult:
    """Compute the next state and log entry for one review.

    Raises:
        InvalidArgument: If the grade is outside 0-3.
    """
    return STRATEGIES[algorithm](state, Grade.parse(grade), params, now)


def preview(
    algorithm: Algorithm,
    state: ReviewState,
    params: SchedulerParameters,
    now: datetime,
) -> dict[Grade, ScheduleResult]:
    """Outcome of every grade, for showing intervals under the answer buttons."""
    return {grade: schedule(algorithm, state, grade, params, now) for grade in Grade}
