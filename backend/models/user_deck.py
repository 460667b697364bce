from sqlalchemy import JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.models.base import Base, TimestampMixin


class UserDeck(Base, TimestampMixin):
    """A user's subscription to a deck, with optional scheduler overrides."""

    __tablename__ = "user_decks"
    __table_args__ = (UniqueConstraint("user_id", "deck_id"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    deck_id: Mapped[int] = mapped_column(ForeignKey("decks.id"), nullable=False)
    fsrs_parameters: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    user: Mapped["User"] = relationship(back_populates="user_decks")  # type: ignore[name-defined] # noqa: F821
    deck: Mapped["Deck"] = relationship(back_populates="user_decks")  # type: ignore[name-defined] # noqa: F821
