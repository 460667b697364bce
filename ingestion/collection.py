"""Read notes, cards and note types out of an Anki collection database."""

import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.exc import DatabaseError, OperationalError, SQLAlchemyError

from backend.errors import Inconsistent, InvalidArgument, TransientIO
from ingestion.constants import FIELD_SEPARATOR, SEPARATOR_CANDIDATES

logger = logging.getLogger(__name__)


@dataclass
class CardTemplate:
    name: str
    question_format: str
    answer_format: str


@dataclass
class NoteModel:
    """A note type: its field names and card templates."""

    id: str
    name: str
    fields: list[str]
    templates: list[CardTemplate]


@dataclass
class ParsedCard:
    """One card to render: a note's field values plus the template to show them with."""

    note_id: int
    model_name: str
    template: CardTemplate
    fields: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "note_id": self.note_id,
            "model_name": self.model_name,
            "template": {
                "name": self.template.name,
                "question_format": self.template.question_format,
                "answer_format": self.template.answer_format,
            },
            "fields": self.fields,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ParsedCard":
        return cls(
            note_id=data["note_id"],
            model_name=data["model_name"],
            template=CardTemplate(**data["template"]),
            fields=dict(data["fields"]),
        )


def parse_models(raw: str | None) -> dict[str, NoteModel]:
    """Parse the ``col.models`` JSON into note models keyed by string id.

    Raises:
        InvalidArgument: If the JSON is missing or malformed.
    """
    if not raw:
        raise InvalidArgument("Collection has no note type definitions")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidArgument(f"Unparseable note type definitions: {e}") from e
    if not isinstance(data, dict):
        raise InvalidArgument("Note type definitions are not a JSON object")

    models: dict[str, NoteModel] = {}
    for model_id, model in data.items():
        try:
            models[str(model_id)] = NoteModel(
                id=str(model_id),
                name=model.get("name", ""),
                fields=[f["name"] for f in model.get("flds", [])],
                templates=[
                    CardTemplate(
                        name=t.get("name", ""),
                        question_format=t.get("qfmt", ""),
                        answer_format=t.get("afmt", ""),
                    )
                    for t in model.get("tmpls", [])
                ],
            )
        except (AttributeError, KeyError, TypeError) as e:
            raise InvalidArgument(f"Malformed note type {model_id}: {e}") from e
    return models


def detect_separator(sample: str | None) -> str:
    """Pick the field separator used by a note's field blob."""
    if sample:
        for candidate in SEPARATOR_CANDIDATES:
            if candidate in sample:
                if candidate != FIELD_SEPARATOR:
                    logger.info("Using escaped field separator %r", candidate)
                return candidate
    return FIELD_SEPARATOR


def map_fields(model: NoteModel, blob: str, separator: str) -> dict[str, str]:
    values = blob.split(separator)
    return {name: values[i] if i < len(values) else "" for i, name in enumerate(model.fields)}


def _join_card(
    card: dict[str, Any],
    notes_by_id: dict[int, dict[str, Any]],
    models: dict[str, NoteModel],
    separator: str,
) -> ParsedCard:
    note = notes_by_id.get(card["nid"])
    if note is None:
        raise Inconsistent(f"note {card['nid']} does not exist")
    model = models.get(str(note["mid"]))
    if model is None:
        raise Inconsistent(f"note type {note['mid']} does not exist")
    ordinal = card["ord"]
    if not 0 <= ordinal < len(model.templates):
        raise Inconsistent(f"note type {model.name!r} has no template {ordinal}")
    return ParsedCard(
        note_id=note["id"],
        model_name=model.name,
        template=model.templates[ordinal],
        fields=map_fields(model, note["flds"], separator),
    )


def join_cards(
    notes: Sequence[dict[str, Any]],
    cards: Iterable[dict[str, Any]],
    models: dict[str, NoteModel],
    separator: str,
) -> list[ParsedCard]:
    """Join each card row to its note and template; unmatched rows are skipped."""
    notes_by_id = {note["id"]: note for note in notes}
    parsed: list[ParsedCard] = []
    skipped = 0
    for card in cards:
        try:
            parsed.append(_join_card(card, notes_by_id, models, separator))
        except Inconsistent as e:
            logger.debug("Skipping card %s: %s", card["id"], e)
            skipped += 1
    if skipped:
        logger.warning("Skipped %d cards with no matching note or template", skipped)
    return parsed


def cards_per_template(
    notes: Sequence[dict[str, Any]],
    models: dict[str, NoteModel],
    separator: str,
) -> list[ParsedCard]:
    """One card per note and template of its note type, ignoring the cards table."""
    parsed: list[ParsedCard] = []
    for note in notes:
        model = models.get(str(note["mid"]))
        if model is None:
            continue
        fields = map_fields(model, note["flds"], separator)
        parsed.extend(
            ParsedCard(note_id=note["id"], model_name=model.name, template=template, fields=dict(fields))
            for template in model.templates
        )
    return parsed


@dataclass
class ParsedCollection:
    cards: list[ParsedCard]
    note_count: int
    card_rows: int
    used_fallback: bool = False


def read_collection(path: Path) -> ParsedCollection:
    """Read an Anki collection file and build the cards to import.

    Falls back to one card per note and template when joining the cards
    table produces nothing.

    Raises:
        InvalidArgument: Missing database or unusable note type definitions.
        TransientIO: The database could not be read.
    """
    if not path.is_file():
        raise InvalidArgument(f"Collection database not found: {path.name}")

    engine = create_engine(f"sqlite:///{path}")
    try:
        with engine.connect() as conn:
            row = conn.execute(text("SELECT models FROM col LIMIT 1")).first()
            if row is None:
                raise InvalidArgument("Collection has no metadata row")
            models = parse_models(row[0])
            notes = [dict(r) for r in conn.execute(text("SELECT id, mid, flds FROM notes ORDER BY id")).mappings()]
            try:
                cards = [dict(r) for r in conn.execute(text("SELECT id, nid, ord FROM cards ORDER BY id")).mappings()]
            except OperationalError:
                logger.warning("Collection %s has no readable cards table", path.name)
                cards = []
    except DatabaseError as e:
        raise InvalidArgument(f"Not an Anki collection database: {e}") from e
    except SQLAlchemyError as e:
        raise TransientIO(f"Failed to read collection {path.name}: {e}") from e
    finally:
        engine.dispose()

    separator = detect_separator(notes[0]["flds"] if notes else None)
    parsed = join_cards(notes, cards, models, separator)
    used_fallback = False
    if not parsed and notes:
        logger.warning(
            "No cards joined from %d card rows; generating one card per note and template",
            len(cards),
        )
        parsed = cards_per_template(notes, models, separator)
        used_fallback = True

    logger.info("Parsed %d cards from %d notes (%d card rows)", len(parsed), len(notes), len(cards))
    return ParsedCollection(cards=parsed, note_count=len(notes), card_rows=len(cards), used_fallback=used_fallback)
