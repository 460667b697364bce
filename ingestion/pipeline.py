"""APKG import pipeline: ties together extraction, parsing, template analysis and ingestion.

Stages::

    Pending -> Extracting -> Parsing -> AwaitingSelection -> Ingesting -> Completed
                                                                      \\-> Failed

Two entry points share the stages:

1. Two-step import. ``parse_upload`` extracts and parses while the caller
   waits, saves the parsed cards to the session's working directory, and
   returns one summary per template. ``start_selected`` then ingests only
   the templates the caller picked, in the background.
2. One-shot import. ``start_one_shot`` runs every stage in the background
   and imports all templates.

Background runs report progress through the notification port and check
the task's cancellation token between archive entries and between batches.
Extraction or parse failures clean up everything. An ingest failure keeps
the parsed cards so ``retry`` can resume at the first uncommitted batch.
"""

import asyncio
import gc
import json
import logging
import shutil
import time
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.config import Settings
from backend.errors import FlashdeckError, InvalidArgument, NotFound, TransientIO
from backend.notifications import ProgressHub
from backend.srs.repository import ReviewRepository
from backend.tasks import CancellationToken, TaskCancelled, TaskRegistry, new_task_id
from ingestion.analysis import TemplateSummary, analyze_templates
from ingestion.archive import extract_archive
from ingestion.collection import ParsedCard, read_collection
from ingestion.constants import (
    PROGRESS_COMPLETE,
    PROGRESS_EXTRACTED,
    PROGRESS_FAILED,
    PROGRESS_FINALIZED,
    PROGRESS_INGEST_END,
    PROGRESS_INGEST_START,
    PROGRESS_PARSED,
    PROGRESS_TASK_STARTED,
)
from ingestion.templates import render_card, sanitize_html
from ingestion.utils import batch_items, interpolate_progress

logger = logging.getLogger(__name__)

PARSED_RESULTS = "parsed_results.json"
UPLOAD_NAME = "upload.apkg"


class ImportStatus(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    PARSING = "parsing"
    AWAITING_SELECTION = "awaiting_selection"
    INGESTING = "ingesting"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({ImportStatus.COMPLETED, ImportStatus.FAILED})


@dataclass
class TemplateSelection:
    """A template chosen for import, with optional replacement formats.

    Empty formats keep the template's original format.
    """

    name: str
    question_format: str = ""
    answer_format: str = ""


@dataclass
class ImportSession:
    """State of one import, from upload to terminal status."""

    task_id: str
    user_id: int
    work_dir: Path
    deck_id: int | None = None
    status: ImportStatus = ImportStatus.PENDING
    progress: int = 0
    message: str = ""
    error: str | None = None
    total_notes: int = 0
    total_cards: int = 0
    media_count: int = 0
    used_fallback: bool = False
    templates: list[TemplateSummary] = field(default_factory=list)
    selections: list[TemplateSelection] | None = None
    imported: int = 0
    retryable: bool = False
    updated_at: float = field(default_factory=time.monotonic)

    @property
    def upload_path(self) -> Path:
        return self.work_dir / UPLOAD_NAME

    @property
    def results_path(self) -> Path:
        return self.work_dir / PARSED_RESULTS

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def apply_selections(cards: Sequence[ParsedCard], selections: Sequence[TemplateSelection]) -> list[ParsedCard]:
    """Keep cards whose template was selected, swapping in edited formats."""
    by_name = {s.name: s for s in selections}
    chosen: list[ParsedCard] = []
    for card in cards:
        selection = by_name.get(card.template.name)
        if selection is None:
            continue
        template = replace(
            card.template,
            question_format=selection.question_format or card.template.question_format,
            answer_format=selection.answer_format or card.template.answer_format,
        )
        chosen.append(replace(card, template=template))
    return chosen


def render_for_import(card: ParsedCard) -> tuple[str, str]:
    front, back = render_card(card.template.question_format, card.template.answer_format, card.fields)
    return sanitize_html(front), sanitize_html(back)


def save_parsed_cards(path: Path, cards: Sequence[ParsedCard]) -> None:
    path.write_text(json.dumps([c.to_dict() for c in cards], ensure_ascii=False), encoding="utf-8")


def load_parsed_cards(path: Path) -> list[ParsedCard]:
    if not path.is_file():
        raise InvalidArgument("Parsed results are gone; upload the archive again")
    return [ParsedCard.from_dict(d) for d in json.loads(path.read_text(encoding="utf-8"))]


class ImportManager:
    """Runs imports and tracks their sessions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: ProgressHub,
        registry: TaskRegistry,
        settings: Settings,
    ) -> None:
        self.session_factory = session_factory
        self.notifier = notifier
        self.registry = registry
        self.settings = settings
        self.sessions: dict[str, ImportSession] = {}

    @property
    def temp_root(self) -> Path:
        return self.settings.upload_dir / "apkg-temp"

    # --- Session bookkeeping ---

    def new_session(self, user_id: int) -> ImportSession:
        """Create a session and its working directory; the caller stores the upload at ``upload_path``."""
        self.sweep_expired()
        task_id = new_task_id()
        session = ImportSession(task_id=task_id, user_id=user_id, work_dir=self.temp_root / task_id)
        session.work_dir.mkdir(parents=True, exist_ok=True)
        self.sessions[task_id] = session
        return session

    def get(self, task_id: str) -> ImportSession:
        session = self.sessions.get(task_id)
        if session is None:
            raise NotFound(f"Import task {task_id} not found")
        return session

    def _set_status(self, session: ImportSession, status: ImportStatus) -> None:
        logger.info("Import %s: %s -> %s", session.task_id, session.status.value, status.value)
        session.status = status
        session.updated_at = time.monotonic()

    def _progress(self, session: ImportSession, percent: int, message: str) -> None:
        session.progress = percent
        session.message = message
        session.updated_at = time.monotonic()
        self.notifier.on_progress(session.task_id, percent, message, session.status.value)

    def cleanup(self, session: ImportSession) -> None:
        """Remove the working directory, including the uploaded archive."""
        if session.work_dir.exists():
            shutil.rmtree(session.work_dir, ignore_errors=True)
            logger.info("Removed import working directory %s", session.work_dir)
        session.retryable = False

    def sweep_expired(self) -> int:
        """Drop terminal or idle sessions older than the configured TTL."""
        cutoff = time.monotonic() - self.settings.import_session_ttl_seconds
        expired = [
            s
            for s in self.sessions.values()
            if s.updated_at < cutoff and not self.registry.is_running(s.task_id)
        ]
        for session in expired:
            self.cleanup(session)
            self.notifier.forget(session.task_id)
            del self.sessions[session.task_id]
        if expired:
            logger.info("Swept %d expired import sessions", len(expired))
        return len(expired)

    # --- Stages ---

    def _extract_and_parse(self, session: ImportSession, token: CancellationToken | None) -> list[ParsedCard]:
        """Blocking stages; run in a worker thread."""
        self._set_status(session, ImportStatus.EXTRACTING)
        archive = extract_archive(
            session.upload_path,
            session.work_dir / "extracted",
            self.settings.import_max_archive_bytes,
            token,
        )
        session.media_count = archive.media_count
        if token is not None:
            token.raise_if_cancelled()

        self._set_status(session, ImportStatus.PARSING)
        parsed = read_collection(archive.collection_path)
        session.total_notes = parsed.note_count
        session.total_cards = len(parsed.cards)
        session.used_fallback = parsed.used_fallback
        if not parsed.cards:
            raise InvalidArgument("Archive contains no cards")
        save_parsed_cards(session.results_path, parsed.cards)
        # Extracted media is not imported; only the parsed cards are kept
        shutil.rmtree(archive.root, ignore_errors=True)
        session.upload_path.unlink(missing_ok=True)
        return parsed.cards

    async def _ingest(self, session: ImportSession, cards: Sequence[ParsedCard], token: CancellationToken) -> None:
        """Persist cards in batches, resuming after ``session.imported`` cards."""
        self._set_status(session, ImportStatus.INGESTING)
        total = len(cards)
        if total == 0:
            self._progress(session, PROGRESS_INGEST_END, "No cards to import")
            return
        batch_size = self.settings.import_batch_size
        for _, _, batch in batch_items(cards, batch_size, "cards", start=session.imported):
            token.raise_if_cancelled()
            rendered = [render_for_import(card) for card in batch]
            try:
                async with self.session_factory() as db:
                    await ReviewRepository(db).create_cards(session.deck_id, session.user_id, rendered)
            except SQLAlchemyError as e:
                raise TransientIO(f"Failed to store cards {session.imported + 1}-{session.imported + len(batch)}: {e}") from e
            session.imported += len(batch)
            self._progress(
                session,
                interpolate_progress(session.imported, total, PROGRESS_INGEST_START, PROGRESS_INGEST_END),
                f"Imported {session.imported}/{total} cards",
            )
            if self.settings.import_gc_between_batches:
                gc.collect()
            # Let progress reach subscribers between batches
            await asyncio.sleep(0)

    async def _set_deck_status(self, session: ImportSession, status: str) -> None:
        if session.deck_id is None:
            return
        async with self.session_factory() as db:
            await ReviewRepository(db).set_deck_status(session.deck_id, status)

    async def _complete(self, session: ImportSession) -> None:
        self._progress(session, PROGRESS_FINALIZED, "Cleaning up temporary files")
        self.cleanup(session)
        await self._set_deck_status(session, "completed")
        self._set_status(session, ImportStatus.COMPLETED)
        self._progress(session, PROGRESS_COMPLETE, f"Imported {session.imported} cards")

    async def _fail(self, session: ImportSession, error: Exception, keep_artifacts: bool) -> None:
        message = "Import cancelled" if isinstance(error, TaskCancelled) else str(error) or type(error).__name__
        session.error = message
        self._set_status(session, ImportStatus.FAILED)
        session.progress = PROGRESS_FAILED
        session.message = message
        if keep_artifacts and session.results_path.is_file():
            session.retryable = True
        else:
            self.cleanup(session)
        try:
            await self._set_deck_status(session, "failed")
        except SQLAlchemyError:
            logger.exception("Could not mark deck %s failed", session.deck_id)
        self.notifier.on_failure(session.task_id, message)

    async def _run(self, session: ImportSession, token: CancellationToken, parse: bool) -> None:
        """Background task body for both entry points and for retries."""
        stage_ingest = False
        try:
            if parse:
                self._progress(session, PROGRESS_TASK_STARTED, "Extracting archive")
                cards = await asyncio.to_thread(self._extract_and_parse, session, token)
                self._progress(session, PROGRESS_EXTRACTED, "Archive extracted")
                self._progress(session, PROGRESS_PARSED, f"Parsed {len(cards)} cards from {session.total_notes} notes")
            else:
                cards = await asyncio.to_thread(load_parsed_cards, session.results_path)
            if session.selections is not None:
                cards = apply_selections(cards, session.selections)
            self._progress(session, PROGRESS_INGEST_START, f"Importing {len(cards)} cards")
            stage_ingest = True
            await self._ingest(session, cards, token)
            await self._complete(session)
        except (FlashdeckError, TaskCancelled, OSError, SQLAlchemyError) as e:
            if isinstance(e, TaskCancelled):
                logger.info("Import %s cancelled", session.task_id)
            else:
                logger.error("Import %s failed: %s", session.task_id, e)
            keep = stage_ingest and not isinstance(e, TaskCancelled)
            await self._fail(session, e, keep_artifacts=keep)
        except Exception as e:
            logger.exception("Import %s crashed", session.task_id)
            await self._fail(session, e, keep_artifacts=stage_ingest)
            raise

    # --- Entry points ---

    async def parse_upload(self, session: ImportSession) -> ImportSession:
        """Extract and parse an uploaded archive and summarize its templates.

        Raises:
            InvalidArgument, ResourceExhaustion, TransientIO: The archive could
                not be read; the session is failed and cleaned up.
        """
        try:
            cards = await asyncio.to_thread(self._extract_and_parse, session, None)
        except (FlashdeckError, OSError) as e:
            await self._fail(session, e, keep_artifacts=False)
            raise
        session.templates = analyze_templates(cards)
        self._set_status(session, ImportStatus.AWAITING_SELECTION)
        logger.info(
            "Import %s parsed: %d notes, %d cards, %d templates, %d media files",
            session.task_id,
            session.total_notes,
            session.total_cards,
            len(session.templates),
            session.media_count,
        )
        return session

    def validate_selection(self, task_id: str, selections: Sequence[TemplateSelection]) -> ImportSession:
        """Check that a parsed import can start with these templates.

        Raises:
            NotFound: Unknown task.
            InvalidArgument: Wrong session status, empty or unknown selection.
        """
        session = self.get(task_id)
        if session.status != ImportStatus.AWAITING_SELECTION:
            raise InvalidArgument(f"Import {task_id} is {session.status.value}, not awaiting template selection")
        if not selections:
            raise InvalidArgument("Select at least one template")
        known = {t.name for t in session.templates}
        unknown = [s.name for s in selections if s.name not in known]
        if unknown:
            raise InvalidArgument(f"Unknown templates: {', '.join(unknown)}")
        return session

    async def start_selected(
        self,
        task_id: str,
        deck_id: int,
        selections: Sequence[TemplateSelection],
    ) -> ImportSession:
        """Import the selected templates of a parsed archive in the background."""
        session = self.validate_selection(task_id, selections)
        session.deck_id = deck_id
        session.selections = list(selections)
        self._set_status(session, ImportStatus.PENDING)
        self.notifier.on_task_init(task_id)
        self._progress(session, PROGRESS_TASK_STARTED, "Import started")
        self.registry.start(task_id, lambda token: self._run(session, token, parse=False))
        return session

    async def start_one_shot(self, session: ImportSession, deck_id: int) -> ImportSession:
        """Run every stage for an uploaded archive in the background, importing all templates."""
        session.deck_id = deck_id
        self.notifier.on_task_init(session.task_id)
        self.registry.start(session.task_id, lambda token: self._run(session, token, parse=True))
        return session

    async def retry(self, task_id: str) -> ImportSession:
        """Resume a failed ingest at the first batch that was not stored."""
        session = self.get(task_id)
        if session.status != ImportStatus.FAILED or not session.retryable:
            raise InvalidArgument(f"Import {task_id} cannot be retried")
        if self.registry.is_running(task_id):
            raise InvalidArgument(f"Import {task_id} is still running")
        session.error = None
        session.retryable = False
        await self._set_deck_status(session, "processing")
        self._set_status(session, ImportStatus.PENDING)
        self.notifier.on_task_init(task_id, f"Retrying after {session.imported} imported cards")
        self.registry.start(task_id, lambda token: self._run(session, token, parse=False))
        return session

    async def cancel(self, task_id: str) -> ImportSession:
        """Cancel a running import, or discard one that is waiting for template selection."""
        session = self.get(task_id)
        if self.registry.cancel(task_id):
            return session
        if session.is_terminal and not session.retryable:
            raise InvalidArgument(f"Import {task_id} already {session.status.value}")
        await self._fail(session, TaskCancelled(), keep_artifacts=False)
        return session
