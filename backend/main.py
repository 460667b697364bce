"""FastAPI application entry point and configuration."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from backend.api.chat_router import router as chat_router
from backend.api.deck_router import router as deck_router
from backend.api.import_router import router as import_router
from backend.api.review_router import router as review_router
from backend.config import settings
from backend.database import async_session, engine
from backend.errors import FlashdeckError
from backend.models import Base
from backend.notifications import progress_hub
from backend.tasks import task_registry
from ingestion.pipeline import ImportManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create tables on startup; stop background imports and dispose the engine on shutdown."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await task_registry.shutdown()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Spaced repetition flashcards with FSRS scheduling and Anki package import",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.imports = ImportManager(async_session, progress_hub, task_registry, settings)
app.state.llm = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FlashdeckError)
async def flashdeck_error_handler(request: Request, exc: FlashdeckError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


app.include_router(deck_router)
app.include_router(review_router)
app.include_router(import_router)
app.include_router(chat_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Check database connectivity and return status."""
    async with async_session() as session:
        await session.execute(text("SELECT 1"))
    return {"status": "ok"}
