"""SQLAlchemy ORM models for the Flashdeck database."""

from backend.models.base import Base
from backend.models.card import Card
from backend.models.chat_message import ChatMessage
from backend.models.deck import Deck
from backend.models.review_log import ReviewLog
from backend.models.user import User
from backend.models.user_card import UserCard
from backend.models.user_deck import UserDeck

__all__ = ["Base", "Card", "ChatMessage", "Deck", "ReviewLog", "User", "UserCard", "UserDeck"]
