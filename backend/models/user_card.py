"""Per-user review state for a card."""

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.config import utcnow
from backend.models.base import Base, TimestampMixin


class UserCard(Base, TimestampMixin):
    """A card as seen by one user, carrying that user's memory state."""

    __tablename__ = "user_cards"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    deck_id: Mapped[int] = mapped_column(ForeignKey("decks.id"), nullable=False, index=True)
    card_id: Mapped[int] = mapped_column(ForeignKey("cards.id"), nullable=False)

    due: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    stability: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    difficulty: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    elapsed_days: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    scheduled_days: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    reps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lapses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    learning_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )  # 0=New, 1=Learning, 2=Review, 3=Relearning
    last_review: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    suspended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    user: Mapped["User"] = relationship(back_populates="user_cards")  # type: ignore[name-defined] # noqa: F821
    card: Mapped["Card"] = relationship(back_populates="user_cards")  # type: ignore[name-defined] # noqa: F821
    review_logs: Mapped[list["ReviewLog"]] = relationship(back_populates="user_card")  # type: ignore[name-defined] # noqa: F821
    chat_messages: Mapped[list["ChatMessage"]] = relationship(back_populates="user_card")  # type: ignore[name-defined] # noqa: F821
