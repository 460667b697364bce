"""API routes for asking questions about a card."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_llm
from backend.api.schemas import ChatMessageResponse, ChatRequest
from backend.chat import ask_about_card, get_history
from backend.database import get_session
from backend.errors import NotFound
from backend.llm_client import LLMClient
from backend.srs.repository import ReviewRepository

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("", response_model=ChatMessageResponse)
async def ask(
    user_id: int,
    request: ChatRequest,
    db: AsyncSession = Depends(get_session),
    llm: LLMClient = Depends(get_llm),
) -> ChatMessageResponse:
    answer = await ask_about_card(db, llm, user_id, request.user_card_id, request.question)
    return ChatMessageResponse.model_validate(answer)


@router.get("/{user_card_id}", response_model=list[ChatMessageResponse])
async def history(
    user_card_id: int,
    user_id: int,
    db: AsyncSession = Depends(get_session),
) -> list[ChatMessageResponse]:
    user_card = await ReviewRepository(db).load_review_state(user_card_id)
    if user_card.user_id != user_id:
        raise NotFound(f"Card {user_card_id} not found")
    return [ChatMessageResponse.model_validate(m) for m in await get_history(db, user_card_id)]
