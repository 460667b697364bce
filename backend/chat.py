"""Ask questions about a card while studying it.

Each user card keeps its own conversation history; the card's front and
back (with markup stripped) are given to the model as context.
"""

import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.errors import InvalidArgument, NotFound
from backend.llm_client import LLMClient
from backend.models.chat_message import ChatMessage
from backend.srs.repository import ReviewRepository
from ingestion.templates import strip_tags

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20

SYSTEM_PROMPT = """You are a patient study tutor. The learner is reviewing a flashcard.

Front of the card:
{front}

Back of the card:
{back}

Answer questions about this card concisely. Use the card content as ground truth."""


async def get_history(db: AsyncSession, user_card_id: int) -> list[ChatMessage]:
    stmt = (
        select(ChatMessage)
        .where(ChatMessage.user_card_id == user_card_id)
        .order_by(ChatMessage.id.asc())
    )
    return list((await db.execute(stmt)).scalars().all())


async def ask_about_card(
    db: AsyncSession,
    llm: LLMClient,
    user_id: int,
    user_card_id: int,
    question: str,
) -> ChatMessage:
    """Append a question to the card's conversation and store the model's reply.

    Raises:
        InvalidArgument: If the question is blank.
        NotFound: If the card does not belong to the user.
    """
    question = question.strip()
    if not question:
        raise InvalidArgument("Question must not be empty")

    user_card = await ReviewRepository(db).load_review_state(user_card_id)
    if user_card.user_id != user_id:
        raise NotFound(f"Card {user_card_id} not found")

    history = await get_history(db, user_card_id)
    messages = [{"role": m.role, "content": m.content} for m in history[-HISTORY_LIMIT:]]
    messages.append({"role": "user", "content": question})
    system = SYSTEM_PROMPT.format(
        front=strip_tags(user_card.card.front),
        back=strip_tags(user_card.card.back),
    )

    # The Anthropic client is synchronous
    reply = await asyncio.to_thread(llm.chat, messages, system)

    db.add(ChatMessage(user_card_id=user_card_id, role="user", content=question))
    answer = ChatMessage(user_card_id=user_card_id, role="assistant", content=reply)
    db.add(answer)
    await db.commit()
    logger.info("Chat reply stored for card %d (%d chars)", user_card_id, len(reply))
    return answer
