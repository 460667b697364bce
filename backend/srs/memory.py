"""Memory model shared by both scheduling strategies.

A ``ReviewState`` is the complete scheduling state of one user x card
pairing. Both strategies are pure functions from
``(ReviewState, Grade, SchedulerParameters, now)`` to a new state plus a
``ReviewLogEntry``; nothing here touches the database.

State machine (FSRS strategy)::

    New --(first review, any grade)--> Learning
    Learning --(steps exhausted, grade >= Hard)--> Review
    Review --(Again)--> Relearning
    Relearning --(relearning steps exhausted, grade >= Hard)--> Review
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Any

from backend.errors import InvalidArgument


class State(IntEnum):
    NEW = 0
    LEARNING = 1
    REVIEW = 2
    RELEARNING = 3


class Grade(IntEnum):
    """Recall grade supplied by the reviewer (wire format 0-3)."""

    AGAIN = 0
    HARD = 1
    GOOD = 2
    EASY = 3

    @classmethod
    def parse(cls, value: Any) -> Grade:
        """Coerce a caller-supplied value into a Grade.

        Raises:
            InvalidArgument: If the value is not one of 0-3.
        """
        if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
            raise InvalidArgument(f"Invalid grade: {value!r}")
        if isinstance(value, Grade):
            return value
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            raise InvalidArgument(f"Invalid grade: {value!r} (expected 0=Again .. 3=Easy)") from None


@dataclass(frozen=True)
class ReviewState:
    """The memory state of a card for one user."""

    due: datetime
    stability: float = 0.0  # Days until recall probability drops to the target retention
    difficulty: float = 0.0  # FSRS: ~[1, 10]; legacy: ease factor in [1.3, 2.5]
    elapsed_days: float = 0.0
    scheduled_days: float = 0.0
    reps: int = 0
    lapses: int = 0
    learning_steps: int = 0  # Position within the learning/relearning ladder
    state: State = State.NEW
    last_review: datetime | None = None

    @classmethod
    def new(cls, now: datetime) -> ReviewState:
        """An empty card that is due immediately."""
        return cls(due=now)

    def with_updates(self, **changes: Any) -> ReviewState:
        return replace(self, **changes)


@dataclass(frozen=True)
class ReviewLogEntry:
    """Snapshot of a single review, recorded against the pre-review state."""

    rating: Grade
    state: State
    due: datetime
    stability: float
    difficulty: float
    elapsed_days: float
    last_elapsed_days: float
    scheduled_days: float
    learning_steps: int
    review: datetime


@dataclass(frozen=True)
class ScheduleResult:
    state: ReviewState
    log: ReviewLogEntry

    @property
    def interval(self) -> timedelta:
        return self.state.due - self.log.review


DEFAULT_LEARNING_STEPS: tuple[timedelta, ...] = (timedelta(minutes=1), timedelta(minutes=10))
DEFAULT_RELEARNING_STEPS: tuple[timedelta, ...] = (timedelta(minutes=10),)


@dataclass(frozen=True)
class SchedulerParameters:
    """Tunable scheduler settings, optionally overridden per user-deck.

    ``weights`` is opaque here; the FSRS kernel substitutes its default vector
    when the length does not match any supported arity.
    """

    requested_retention: float = 0.9
    maximum_interval: int = 36500
    weights: tuple[float, ...] = ()
    enable_fuzz: bool = True
    enable_short_term: bool = True
    learning_steps: tuple[timedelta, ...] = DEFAULT_LEARNING_STEPS
    relearning_steps: tuple[timedelta, ...] = DEFAULT_RELEARNING_STEPS

    def __post_init__(self) -> None:
        if not 0 < self.requested_retention <= 1:
            raise InvalidArgument(
                f"requested_retention must be in (0, 1], got {self.requested_retention}"
            )
        if self.maximum_interval < 1:
            raise InvalidArgument(f"maximum_interval must be >= 1, got {self.maximum_interval}")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None, **defaults: Any) -> SchedulerParameters:
        """Build parameters from a stored JSON mapping.

        Accepts both the snake_case keys used by the API and the short keys
        used by stored deck configurations (``request_retention``, ``w``).
        Steps may be given as minutes (numbers) or strings like ``"10m"``,
        ``"1h"``, ``"2d"``. Empty lists fall back to the defaults.
        """
        data = dict(data or {})
        kwargs: dict[str, Any] = dict(defaults)

        retention = data.get("requested_retention", data.get("request_retention"))
        if retention is not None:
            kwargs["requested_retention"] = float(retention)
        maximum = data.get("maximum_interval")
        if maximum is not None:
            kwargs["maximum_interval"] = int(maximum)
        weights = data.get("weights", data.get("w"))
        if weights:
            kwargs["weights"] = tuple(float(w) for w in weights)
        for key in ("enable_fuzz", "enable_short_term"):
            if data.get(key) is not None:
                kwargs[key] = bool(data[key])
        for key in ("learning_steps", "relearning_steps"):
            if data.get(key):
                kwargs[key] = tuple(parse_step(step) for step in data[key])
        return cls(**kwargs)

    def to_mapping(self) -> dict[str, Any]:
        return {
            "requested_retention": self.requested_retention,
            "maximum_interval": self.maximum_interval,
            "weights": list(self.weights),
            "enable_fuzz": self.enable_fuzz,
            "enable_short_term": self.enable_short_term,
            "learning_steps": [format_step(s) for s in self.learning_steps],
            "relearning_steps": [format_step(s) for s in self.relearning_steps],
        }


_STEP_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def parse_step(value: Any) -> timedelta:
    """Parse a ladder step: a number of minutes or a string like ``"10m"``."""
    if isinstance(value, timedelta):
        step = value
    elif isinstance(value, int | float) and not isinstance(value, bool):
        step = timedelta(minutes=value)
    elif isinstance(value, str) and value.strip():
        text = value.strip().lower()
        unit = _STEP_UNITS.get(text[-1])
        try:
            step = timedelta(**{unit: float(text[:-1])}) if unit else timedelta(minutes=float(text))
        except ValueError:
            raise InvalidArgument(f"Invalid step: {value!r}") from None
    else:
        raise InvalidArgument(f"Invalid step: {value!r}")
    if step <= timedelta(0):
        raise InvalidArgument(f"Step must be positive: {value!r}")
    return step


def format_step(step: timedelta) -> str:
    seconds = int(step.total_seconds())
    for suffix, size in (("d", 86400), ("h", 3600), ("m", 60)):
        if seconds % size == 0:
            return f"{seconds // size}{suffix}"
    return f"{seconds}s"

