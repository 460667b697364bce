"""API routes for decks, deck statistics and per-deck scheduler configuration."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.schemas import DeckCreateRequest, DeckResponse, DeckStatsResponse, SchedulerConfig
from backend.database import get_session
from backend.srs.orchestrator import ReviewOrchestrator
from backend.srs.repository import ReviewRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/decks", tags=["decks"])


@router.post("", response_model=DeckResponse, status_code=201)
async def create_deck(
    user_id: int,
    request: DeckCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> DeckResponse:
    """Create an empty deck owned by the user."""
    deck = await ReviewRepository(db).create_deck(
        name=request.name,
        creator_id=user_id,
        description=request.description,
        deck_type=request.deck_type,
        algorithm=request.algorithm,
    )
    return DeckResponse.model_validate(deck)


@router.get("", response_model=list[DeckResponse])
async def list_decks(user_id: int, db: AsyncSession = Depends(get_session)) -> list[DeckResponse]:
    decks = await ReviewRepository(db).list_user_decks(user_id)
    return [DeckResponse.model_validate(d) for d in decks]


@router.get("/{deck_id}", response_model=DeckResponse)
async def get_deck(deck_id: int, db: AsyncSession = Depends(get_session)) -> DeckResponse:
    return DeckResponse.model_validate(await ReviewRepository(db).get_deck(deck_id))


@router.get("/{deck_id}/stats", response_model=DeckStatsResponse)
async def deck_stats(
    deck_id: int,
    user_id: int,
    db: AsyncSession = Depends(get_session),
) -> DeckStatsResponse:
    """New, due and review counts; served from the stats cache when warm."""
    stats = await ReviewOrchestrator(db, user_id).deck_stats(deck_id)
    return DeckStatsResponse(
        deck_id=deck_id,
        new_cards=stats.new_cards,
        due_cards=stats.due_cards,
        total_review_cards=stats.total_review_cards,
        total_cards=stats.total_cards,
    )


@router.get("/{deck_id}/config", response_model=SchedulerConfig)
async def get_config(
    deck_id: int,
    user_id: int,
    db: AsyncSession = Depends(get_session),
) -> SchedulerConfig:
    orchestrator = ReviewOrchestrator(db, user_id)
    await orchestrator.repo.get_deck(deck_id)
    params = await orchestrator.scheduler_parameters(deck_id)
    return SchedulerConfig(**params.to_mapping())


@router.put("/{deck_id}/config", response_model=SchedulerConfig)
async def update_config(
    deck_id: int,
    user_id: int,
    request: SchedulerConfig,
    db: AsyncSession = Depends(get_session),
) -> SchedulerConfig:
    params = await ReviewOrchestrator(db, user_id).update_parameters(
        deck_id, request.model_dump(exclude_none=True)
    )
    return SchedulerConfig(**params.to_mapping())
