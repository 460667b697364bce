"""Card model: the shared front/back content of a deck entry."""

from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.models.base import Base, TimestampMixin


class Card(Base, TimestampMixin):
    __tablename__ = "cards"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    deck_id: Mapped[int] = mapped_column(ForeignKey("decks.id"), nullable=False)
    front: Mapped[str] = mapped_column(Text, nullable=False)
    back: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(String(20), nullable=False, default="text")  # text, audio

    deck: Mapped["Deck"] = relationship(back_populates="cards")  # type: ignore[name-defined] # noqa: F821
    user_cards: Mapped[list["UserCard"]] = relationship(back_populates="card")  # type: ignore[name-defined] # noqa: F821
