"""Tests for APKG extraction and collection parsing."""

import zipfile
from pathlib import Path

import pytest
from conftest import BASIC_MODEL_ID, REVERSED_MODEL_ID, basic_notes, write_collection

from backend.errors import InvalidArgument, ResourceExhaustion
from backend.tasks import CancellationToken, TaskCancelled
from ingestion.archive import extract_archive
from ingestion.collection import detect_separator, parse_models, read_collection

LIMIT = 10 * 1024 * 1024


class TestParseModels:
    def test_parses_fields_and_templates(self) -> None:
        raw = '{"7": {"name": "Vocab", "flds": [{"name": "Word"}, {"name": "Meaning"}], "tmpls": [{"name": "Recall", "qfmt": "{{Word}}", "afmt": "{{Meaning}}"}]}}'
        models = parse_models(raw)
        assert list(models) == ["7"]
        assert models["7"].fields == ["Word", "Meaning"]
        assert models["7"].templates[0].question_format == "{{Word}}"

    @pytest.mark.parametrize("raw", ["", "{not json", "[1, 2]", '{"1": {"flds": [{"label": "x"}]}}'])
    def test_invalid_models_rejected(self, raw: str) -> None:
        with pytest.raises(InvalidArgument):
            parse_models(raw)


class TestSeparatorDetection:
    def test_raw_separator(self) -> None:
        assert detect_separator("a\x1fb") == "\x1f"

    def test_escaped_separator(self) -> None:
        assert detect_separator("a\\u001fb") == "\\u001f"

    def test_double_escaped_separator(self) -> None:
        assert detect_separator("a\\\\u001fb") == "\\\\u001f"

    def test_single_field_defaults_to_raw(self) -> None:
        assert detect_separator("only one field") == "\x1f"


class TestReadCollection:
    def test_joins_cards_to_notes_and_templates(self, tmp_path: Path) -> None:
        path = tmp_path / "collection.anki2"
        notes = [(1, BASIC_MODEL_ID, "hola\x1fhello"), (2, REVERSED_MODEL_ID, "gato\x1fcat")]
        cards = [(10, 1, 0), (11, 2, 0), (12, 2, 1)]
        write_collection(path, notes, cards)

        parsed = read_collection(path)

        assert parsed.note_count == 2
        assert parsed.card_rows == 3
        assert not parsed.used_fallback
        assert [c.template.name for c in parsed.cards] == ["Card 1", "Forward", "Reverse"]
        assert parsed.cards[0].fields == {"Front": "hola", "Back": "hello"}
        assert parsed.cards[2].fields == {"Front": "gato", "Back": "cat"}

    def test_skips_cards_without_note_or_template(self, tmp_path: Path) -> None:
        path = tmp_path / "collection.anki2"
        notes = [(1, BASIC_MODEL_ID, "a\x1fb")]
        cards = [(10, 1, 0), (11, 99, 0), (12, 1, 5)]
        write_collection(path, notes, cards)

        parsed = read_collection(path)

        assert len(parsed.cards) == 1
        assert parsed.cards[0].note_id == 1

    def test_escaped_separator_splits_fields(self, tmp_path: Path) -> None:
        path = tmp_path / "collection.anki2"
        write_collection(path, [(1, BASIC_MODEL_ID, "perro\\u001fdog")], [(10, 1, 0)])

        parsed = read_collection(path)

        assert parsed.cards[0].fields == {"Front": "perro", "Back": "dog"}

    def test_empty_cards_table_falls_back_per_template(self, tmp_path: Path) -> None:
        path = tmp_path / "collection.anki2"
        notes = [(1, BASIC_MODEL_ID, "a\x1fb"), (2, REVERSED_MODEL_ID, "c\x1fd")]
        write_collection(path, notes, cards=[])

        parsed = read_collection(path)

        assert parsed.used_fallback
        assert len(parsed.cards) == 3
        assert {c.template.name for c in parsed.cards} == {"Card 1", "Forward", "Reverse"}

    def test_missing_cards_table_falls_back(self, tmp_path: Path) -> None:
        path = tmp_path / "collection.anki2"
        notes, _ = basic_notes(4)
        write_collection(path, notes, cards=None)

        parsed = read_collection(path)

        assert parsed.used_fallback
        assert len(parsed.cards) == 4

    def test_model_id_matched_as_string(self, tmp_path: Path) -> None:
        path = tmp_path / "collection.anki2"
        # Note mid stored as text in the notes table
        write_collection(path, [(1, str(BASIC_MODEL_ID), "a\x1fb")], [(10, 1, 0)])

        assert len(read_collection(path).cards) == 1

    def test_missing_fields_become_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "collection.anki2"
        write_collection(path, [(1, BASIC_MODEL_ID, "only front")], [(10, 1, 0)])

        assert read_collection(path).cards[0].fields == {"Front": "only front", "Back": ""}

    def test_missing_database(self, tmp_path: Path) -> None:
        with pytest.raises(InvalidArgument):
            read_collection(tmp_path / "nope.anki2")

    def test_bad_models_json(self, tmp_path: Path) -> None:
        path = tmp_path / "collection.anki2"
        write_collection(path, [(1, BASIC_MODEL_ID, "a\x1fb")], [(10, 1, 0)], models="{broken")
        with pytest.raises(InvalidArgument):
            read_collection(path)

    def test_not_a_database(self, tmp_path: Path) -> None:
        path = tmp_path / "collection.anki2"
        path.write_bytes(b"this is not sqlite at all" * 100)
        with pytest.raises(InvalidArgument):
            read_collection(path)


class TestExtractArchive:
    def test_extracts_collection_and_media(self, make_apkg, tmp_path: Path) -> None:
        notes, cards = basic_notes(2)
        archive = make_apkg(notes, cards, media={"0": "gato.mp3", "1": "perro.mp3"})

        extracted = extract_archive(archive, tmp_path / "out", LIMIT)

        assert extracted.collection_path.name == "collection.anki2"
        assert extracted.media_count == 2
        assert extracted.media["0"] == "gato.mp3"
        assert (tmp_path / "out" / "1").is_file()

    def test_prefers_newer_collection(self, make_apkg, tmp_path: Path) -> None:
        notes, cards = basic_notes(1)
        archive = make_apkg(notes, cards, name="collection.anki21")
        with zipfile.ZipFile(archive, "a") as zf:
            zf.writestr("collection.anki2", b"legacy stub")

        extracted = extract_archive(archive, tmp_path / "out", LIMIT)

        assert extracted.collection_path.name == "collection.anki21"

    def test_not_a_zip(self, tmp_path: Path) -> None:
        bogus = tmp_path / "bogus.apkg"
        bogus.write_bytes(b"plain text")
        with pytest.raises(InvalidArgument):
            extract_archive(bogus, tmp_path / "out", LIMIT)

    def test_missing_collection(self, tmp_path: Path) -> None:
        archive = tmp_path / "empty.apkg"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("media", "{}")
        with pytest.raises(InvalidArgument):
            extract_archive(archive, tmp_path / "out", LIMIT)

    def test_rejects_path_traversal(self, tmp_path: Path) -> None:
        archive = tmp_path / "evil.apkg"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("../escape.txt", "gotcha")
        with pytest.raises(InvalidArgument):
            extract_archive(archive, tmp_path / "out", LIMIT)
        assert not (tmp_path / "escape.txt").exists()

    def test_size_limit(self, make_apkg, tmp_path: Path) -> None:
        notes, cards = basic_notes(1)
        archive = make_apkg(notes, cards)
        with pytest.raises(ResourceExhaustion):
            extract_archive(archive, tmp_path / "out", max_bytes=100)

    def test_cancellation_between_entries(self, make_apkg, tmp_path: Path) -> None:
        notes, cards = basic_notes(1)
        archive = make_apkg(notes, cards)
        token = CancellationToken()
        token.cancel()
        with pytest.raises(TaskCancelled):
            extract_archive(archive, tmp_path / "out", LIMIT, token)

    def test_non_json_media_manifest_ignored(self, make_apkg, tmp_path: Path) -> None:
        notes, cards = basic_notes(1)
        archive = make_apkg(notes, cards)
        with zipfile.ZipFile(archive, "a") as zf:
            zf.writestr("media", b"\x28\xb5\x2f\xfd binary")

        extracted = extract_archive(archive, tmp_path / "out", LIMIT)

        assert extracted.media_count == 0
