"""API routes for studying a deck: next card, grading, preview and suspension."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.schemas import (
    CardResponse,
    GradeRequest,
    GradeResponse,
    NextCardResponse,
    PreviewOption,
    SuspendResponse,
)
from backend.database import get_session
from backend.models.user_card import UserCard
from backend.srs.orchestrator import ReviewOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/review", tags=["review"])


def _card_response(user_card: UserCard) -> CardResponse:
    return CardResponse(
        user_card_id=user_card.id,
        card_id=user_card.card_id,
        front=user_card.card.front,
        back=user_card.card.back,
        content_type=user_card.card.content_type,
        state=user_card.state,
        due=user_card.due,
        stability=user_card.stability,
        difficulty=user_card.difficulty,
        reps=user_card.reps,
        lapses=user_card.lapses,
    )


@router.get("/{deck_id}/next", response_model=NextCardResponse)
async def next_card(
    deck_id: int,
    user_id: int,
    db: AsyncSession = Depends(get_session),
) -> NextCardResponse:
    """Pick the next card to study."""
    chosen = await ReviewOrchestrator(db, user_id).select_next(deck_id)
    if chosen is None:
        return NextCardResponse(card=None, empty_deck=True)
    if not chosen:
        return NextCardResponse(card=None, empty_deck=False)
    return NextCardResponse(card=_card_response(chosen))


@router.post("/{deck_id}/cards/{user_card_id}/grade", response_model=GradeResponse)
async def grade_card(
    deck_id: int,
    user_card_id: int,
    user_id: int,
    request: GradeRequest,
    db: AsyncSession = Depends(get_session),
) -> GradeResponse:
    outcome = await ReviewOrchestrator(db, user_id).apply_grade(deck_id, user_card_id, request.grade)
    state = outcome.result.state
    return GradeResponse(
        user_card_id=user_card_id,
        grade=int(outcome.result.log.rating),
        algorithm=outcome.algorithm.value,
        state=int(state.state),
        due=state.due,
        interval_seconds=outcome.result.interval.total_seconds(),
        stability=state.stability,
        difficulty=state.difficulty,
        reps=state.reps,
        lapses=state.lapses,
    )


@router.get("/{deck_id}/cards/{user_card_id}/preview", response_model=list[PreviewOption])
async def preview_card(
    deck_id: int,
    user_card_id: int,
    user_id: int,
    db: AsyncSession = Depends(get_session),
) -> list[PreviewOption]:
    """Where each grade would send the card, without saving anything."""
    outcomes = await ReviewOrchestrator(db, user_id).preview(deck_id, user_card_id)
    return [
        PreviewOption(
            grade=int(grade),
            state=int(result.state.state),
            due=result.state.due,
            interval_seconds=result.interval.total_seconds(),
        )
        for grade, result in outcomes.items()
    ]


@router.post("/{deck_id}/cards/{user_card_id}/suspend", response_model=SuspendResponse)
async def suspend_card(
    deck_id: int,
    user_card_id: int,
    user_id: int,
    db: AsyncSession = Depends(get_session),
) -> SuspendResponse:
    await ReviewOrchestrator(db, user_id).suspend(deck_id, user_card_id)
    return SuspendResponse(user_card_id=user_card_id, suspended=True)


@router.post("/{deck_id}/cards/{user_card_id}/resume", response_model=SuspendResponse)
async def resume_card(
    deck_id: int,
    user_card_id: int,
    user_id: int,
    db: AsyncSession = Depends(get_session),
) -> SuspendResponse:
    await ReviewOrchestrator(db, user_id).resume(deck_id, user_card_id)
    return SuspendResponse(user_card_id=user_card_id, suspended=False)
