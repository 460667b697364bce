from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.config import utcnow
from backend.models.base import Base


class ReviewLog(Base):
    __tablename__ = "review_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_card_id: Mapped[int] = mapped_column(ForeignKey("user_cards.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    algorithm: Mapped[str] = mapped_column(String(20), nullable=False)  # fsrs, sm2
    rating: Mapped[int] = mapped_column(Integer, nullable=False)  # 0=Again, 1=Hard, 2=Good, 3=Easy
    state: Mapped[int] = mapped_column(Integer, nullable=False)  # State before the review
    due: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # Due date before the review
    stability: Mapped[float] = mapped_column(Float, nullable=False)
    difficulty: Mapped[float] = mapped_column(Float, nullable=False)
    elapsed_days: Mapped[float] = mapped_column(Float, nullable=False)
    last_elapsed_days: Mapped[float] = mapped_column(Float, nullable=False)
    scheduled_days: Mapped[float] = mapped_column(Float, nullable=False)
    learning_steps: Mapped[int] = mapped_column(Integer, nullable=False)
    reviewed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    user_card: Mapped["UserCard"] = relationship(back_populates="review_logs")  # type: ignore[name-defined] # noqa: F821
