"""API routes for importing Anki packages.

The parse step runs inside the request; ingestion runs as a background
task whose progress is polled via ``/status`` or streamed over the
WebSocket endpoint.
"""

import logging

from fastapi import APIRouter, Depends, File, Form, UploadFile, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_import_manager
from backend.api.schemas import (
    ImportStatusResponse,
    ParseResponse,
    ProcessTemplatesRequest,
    TemplateSampleResponse,
    TemplateSummaryResponse,
)
from backend.config import settings
from backend.database import get_session
from backend.errors import InvalidArgument, ResourceExhaustion
from backend.srs.repository import ReviewRepository
from ingestion.pipeline import ImportManager, ImportSession, TemplateSelection

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/imports", tags=["imports"])

_UPLOAD_CHUNK = 1024 * 1024


async def _store_upload(upload: UploadFile, session: ImportSession) -> None:
    if not (upload.filename or "").lower().endswith(".apkg"):
        raise InvalidArgument("Only .apkg files can be imported")
    written = 0
    with session.upload_path.open("wb") as out:
        while chunk := await upload.read(_UPLOAD_CHUNK):
            written += len(chunk)
            if written > settings.import_max_archive_bytes:
                raise ResourceExhaustion("Upload exceeds the archive size limit")
            out.write(chunk)
    logger.info("Stored upload %s (%d bytes) for import %s", upload.filename, written, session.task_id)


async def _receive(upload: UploadFile, manager: ImportManager, user_id: int) -> ImportSession:
    session = manager.new_session(user_id)
    try:
        await _store_upload(upload, session)
    except Exception:
        manager.cleanup(session)
        manager.sessions.pop(session.task_id, None)
        raise
    return session


def _status_response(session: ImportSession) -> ImportStatusResponse:
    return ImportStatusResponse(
        task_id=session.task_id,
        status=session.status.value,
        progress=session.progress,
        message=session.message,
        deck_id=session.deck_id,
        total_cards=session.total_cards,
        imported=session.imported,
        retryable=session.retryable,
        error=session.error,
    )


@router.post("/parse", response_model=ParseResponse)
async def parse_apkg(
    user_id: int,
    file: UploadFile = File(...),
    manager: ImportManager = Depends(get_import_manager),
) -> ParseResponse:
    """Upload an archive and list its card templates for selection."""
    session = await _receive(file, manager, user_id)
    await manager.parse_upload(session)
    return ParseResponse(
        task_id=session.task_id,
        total_notes=session.total_notes,
        total_cards=session.total_cards,
        media_count=session.media_count,
        templates=[
            TemplateSummaryResponse(
                name=t.name,
                question_format=t.question_format,
                answer_format=t.answer_format,
                fields=t.fields,
                card_count=t.card_count,
                samples=[TemplateSampleResponse(front=s.front, back=s.back) for s in t.samples],
            )
            for t in session.templates
        ],
    )


@router.post("/process", response_model=ImportStatusResponse, status_code=202)
async def process_templates(
    user_id: int,
    request: ProcessTemplatesRequest,
    db: AsyncSession = Depends(get_session),
    manager: ImportManager = Depends(get_import_manager),
) -> ImportStatusResponse:
    """Create a deck and import the selected templates into it in the background."""
    selections = [
        TemplateSelection(name=t.name, question_format=t.question_format, answer_format=t.answer_format)
        for t in request.templates
    ]
    session = manager.get(request.task_id)
    if session.user_id != user_id:
        raise InvalidArgument(f"Import {request.task_id} belongs to another user")
    manager.validate_selection(session.task_id, selections)
    deck = await ReviewRepository(db).create_deck(
        name=request.deck_name,
        creator_id=user_id,
        description=request.description,
        deck_type=request.deck_type,
        status="processing",
        task_id=session.task_id,
    )
    await manager.start_selected(session.task_id, deck.id, selections)
    return _status_response(session)


@router.post("", response_model=ImportStatusResponse, status_code=202)
async def import_apkg(
    user_id: int,
    deck_name: str = Form(..., min_length=1, max_length=100),
    description: str | None = Form(None),
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_session),
    manager: ImportManager = Depends(get_import_manager),
) -> ImportStatusResponse:
    """Upload an archive and import every card in the background."""
    session = await _receive(file, manager, user_id)
    deck = await ReviewRepository(db).create_deck(
        name=deck_name,
        creator_id=user_id,
        description=description,
        status="processing",
        task_id=session.task_id,
    )
    await manager.start_one_shot(session, deck.id)
    return _status_response(session)


@router.get("/{task_id}", response_model=ImportStatusResponse)
async def import_status(
    task_id: str,
    manager: ImportManager = Depends(get_import_manager),
) -> ImportStatusResponse:
    return _status_response(manager.get(task_id))


@router.post("/{task_id}/cancel", response_model=ImportStatusResponse)
async def cancel_import(
    task_id: str,
    manager: ImportManager = Depends(get_import_manager),
) -> ImportStatusResponse:
    return _status_response(await manager.cancel(task_id))


@router.post("/{task_id}/retry", response_model=ImportStatusResponse, status_code=202)
async def retry_import(
    task_id: str,
    manager: ImportManager = Depends(get_import_manager),
) -> ImportStatusResponse:
    """Resume a failed import from its saved parse results."""
    return _status_response(await manager.retry(task_id))


@router.websocket("/ws/{task_id}")
async def import_progress(websocket: WebSocket, task_id: str) -> None:
    """Stream progress events until the import reaches a terminal status."""
    await websocket.accept()
    hub = websocket.app.state.imports.notifier
    queue = hub.subscribe(task_id)
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())
            if event.status in ("completed", "failed"):
                break
        await websocket.close()
    except WebSocketDisconnect:
        logger.debug("Progress subscriber for %s disconnected", task_id)
    finally:
        hub.unsubscribe(task_id, queue)
