"""Simplified SM-2 strategy used by sequential (audio) decks.

Audio decks are short lessons worked through in order, so the follow-up
interval is a fixed number of minutes rather than the classic SM-2
``ease x previous interval`` growth. The ease factor is still tracked with
the SM-2 update rule and stored in ``ReviewState.difficulty``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from backend.srs.memory import Grade, ReviewLogEntry, ReviewState, ScheduleResult, State

INITIAL_EASE = 2.5
MIN_EASE = 1.3
MAX_EASE = 2.5
EASE_PENALTY = 0.2
BONUS_EASE_THRESHOLD = 2.0


@dataclass(frozen=True)
class LegacyIntervals:
    """Fixed intervals, in minutes."""

    retry_minutes: int = 5
    follow_up_minutes: int = 30
    bonus_minutes: int = 5


def _clamp_ease(ease: float) -> float:
    return max(MIN_EASE, min(MAX_EASE, ease))


def sm2_ease_delta(quality: int) -> float:
    """Classic SM-2 ease adjustment for a 0-3 quality."""
    miss = 3 - quality
    return 0.1 - miss * (0.08 + miss * 0.02)


def schedule(
    state: ReviewState,
    grade: Grade,
    now: datetime,
    intervals: LegacyIntervals | None = None,
) -> ScheduleResult:
    """Compute the next state for a legacy-scheduled card.

    Again/Hard: short retry and an ease penalty.
    Good/Easy: fixed follow-up, SM-2 ease update, and a small bonus for
    cards whose ease stays above 2.0.
    Every attempt moves the card to Review and counts as a repetition.
    """
    intervals = intervals or LegacyIntervals()
    ease = _clamp_ease(state.difficulty) if state.difficulty > 0 else INITIAL_EASE

    if grade < Grade.GOOD:
        minutes = intervals.retry_minutes
        ease = max(MIN_EASE, ease - EASE_PENALTY)
    else:
        minutes = intervals.follow_up_minutes
        ease = _clamp_ease(ease + sm2_ease_delta(int(grade)))
        if ease > BONUS_EASE_THRESHOLD and grade >= Grade.HARD:
            minutes += intervals.bonus_minutes

    elapsed_days = 0.0
    if state.last_review is not None:
        elapsed_days = max(0.0, (now - state.last_review).total_seconds() / 86400)
    delay = timedelta(minutes=minutes)

    new_state = state.with_updates(
        due=now + delay,
        difficulty=ease,
        elapsed_days=elapsed_days,
        scheduled_days=delay.total_seconds() / 86400,
        reps=state.reps + 1,
        lapses=state.lapses + (1 if grade == Grade.AGAIN else 0),
        learning_steps=0,
        state=State.REVIEW,
        last_review=now,
    )
    log = ReviewLogEntry(
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
    return ScheduleResult(state=new_state, log=log)
