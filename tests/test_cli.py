"""Tests for CLI commands (non-interactive paths)."""

import argparse

import pytest
import pytest_asyncio
from conftest import REVERSED_MODEL_ID, basic_notes

from backend.database import engine
from flashdeck.__main__ import cmd_import, cmd_stats, cmd_templates, ensure_db, ensure_user


@pytest_asyncio.fixture(autouse=True)
async def dispose_engine():
    yield
    await engine.dispose()


@pytest.mark.asyncio
async def test_ensure_db() -> None:
    """Database tables can be created."""
    await ensure_db()


@pytest.mark.asyncio
async def test_ensure_user() -> None:
    """A local user is created on first call and reused afterwards."""
    await ensure_db()
    user_id = await ensure_user()
    assert user_id >= 1
    assert await ensure_user() == user_id


@pytest.mark.asyncio
async def test_templates_lists_package_contents(make_apkg, capsys) -> None:
    archive = make_apkg([(1, REVERSED_MODEL_ID, "gato\x1fcat")], [(101, 1, 0), (102, 1, 1)])

    await cmd_templates(argparse.Namespace(file=archive))

    out = capsys.readouterr().out
    assert "1 notes, 2 cards" in out
    assert "Forward  (1 cards)" in out
    assert "'cat' -> 'gato'" in out


@pytest.mark.asyncio
async def test_import_then_stats(make_apkg, capsys) -> None:
    notes, cards = basic_notes(3)
    archive = make_apkg(notes, cards)

    await cmd_import(argparse.Namespace(file=archive, name="CLI deck", deck_type="normal"))
    out = capsys.readouterr().out
    assert "[100%]" in out
    assert "Imported 3 cards into deck" in out

    deck_id = int(out.split("into deck ")[1].split()[0])
    await cmd_stats(argparse.Namespace(deck_id=deck_id))
    stats = capsys.readouterr().out
    assert "CLI deck (normal, fsrs)" in stats
    assert "New:           3" in stats
