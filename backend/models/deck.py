"""Deck model: a named collection of cards with its presentation and scheduling mode."""

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.models.base import Base, TimestampMixin

DECK_TYPES = ("normal", "audio")
DECK_STATUSES = ("processing", "completed", "failed")
ALGORITHMS = ("fsrs", "sm2")


class Deck(Base, TimestampMixin):
    __tablename__ = "decks"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    deck_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="normal"
    )  # normal (random presentation), audio (sequential presentation)
    algorithm: Mapped[str] = mapped_column(String(20), nullable=False, default="fsrs")  # fsrs, sm2
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="completed"
    )  # processing, completed, failed
    task_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    creator_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    cards: Mapped[list["Card"]] = relationship(back_populates="deck")  # type: ignore[name-defined] # noqa: F821
    user_decks: Mapped[list["UserDeck"]] = relationship(back_populates="deck")  # type: ignore[name-defined] # noqa: F821
