from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.models.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    user_decks: Mapped[list["UserDeck"]] = relationship(back_populates="user")  # type: ignore[name-defined] # noqa: F821
    user_cards: Mapped[list["UserCard"]] = relationship(back_populates="user")  # type: ignore[name-defined] # noqa: F821
