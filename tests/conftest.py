"""Shared fixtures: isolated database and upload directory, APKG builder."""

import json
import os
import sqlite3
import tempfile
import zipfile
from collections.abc import AsyncIterator, Callable
from pathlib import Path

# Point settings at throwaway locations before any backend module is imported
_TMP = Path(tempfile.mkdtemp(prefix="flashdeck-tests-"))
os.environ.setdefault("FLASHDECK_DATABASE_URL", f"sqlite+aiosqlite:///{_TMP / 'test.db'}")
os.environ.setdefault("FLASHDECK_UPLOAD_DIR", str(_TMP / "uploads"))

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from backend.models import Base, User  # noqa: E402

BASIC_MODEL_ID = 1342697561419
REVERSED_MODEL_ID = 1342697561420


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'unit.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def user_id(db: AsyncSession) -> int:
    user = User(name="tester")
    db.add(user)
    await db.commit()
    return user.id


def basic_models() -> dict:
    """Two note types: Basic (one template) and Basic+Reversed (two templates)."""
    return {
        str(BASIC_MODEL_ID): {
            "name": "Basic",
            "flds": [{"name": "Front"}, {"name": "Back"}],
            "tmpls": [
                {"name": "Card 1", "qfmt": "{{Front}}", "afmt": "{{FrontSide}}<hr id=answer>{{Back}}"},
            ],
        },
        str(REVERSED_MODEL_ID): {
            "name": "Basic (and reversed card)",
            "flds": [{"name": "Front"}, {"name": "Back"}],
            "tmpls": [
                {"name": "Forward", "qfmt": "{{Front}}", "afmt": "{{Back}}"},
                {"name": "Reverse", "qfmt": "{{Back}}", "afmt": "{{Front}}"},
            ],
        },
    }


def write_collection(
    path: Path,
    notes: list[tuple[int, int, str]],
    cards: list[tuple[int, int, int]] | None,
    models: dict | str | None = None,
) -> None:
    """Write an Anki collection with ``notes`` as (id, mid, flds) and ``cards`` as (id, nid, ord).

    ``cards=None`` leaves out the cards table entirely.
    """
    if models is None:
        models = basic_models()
    conn = sqlite3.connect(path)
    try:
        conn.execute("CREATE TABLE col (id integer primary key, models text not null)")
        conn.execute(
            "INSERT INTO col (id, models) VALUES (1, ?)",
            (models if isinstance(models, str) else json.dumps(models),),
        )
        conn.execute("CREATE TABLE notes (id integer primary key, mid integer not null, flds text not null)")
        conn.executemany("INSERT INTO notes (id, mid, flds) VALUES (?, ?, ?)", notes)
        if cards is not None:
            conn.execute("CREATE TABLE cards (id integer primary key, nid integer not null, ord integer not null)")
            conn.executemany("INSERT INTO cards (id, nid, ord) VALUES (?, ?, ?)", cards)
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def make_apkg(tmp_path: Path) -> Callable[..., Path]:
    """Build an .apkg file; accepts the ``write_collection`` arguments plus ``media`` and ``name``."""
    counter = {"n": 0}

    def build(
        notes: list[tuple[int, int, str]],
        cards: list[tuple[int, int, int]] | None = None,
        models: dict | str | None = None,
        media: dict[str, str] | None = None,
        name: str = "collection.anki2",
    ) -> Path:
        counter["n"] += 1
        workdir = tmp_path / f"apkg-src-{counter['n']}"
        workdir.mkdir()
        collection = workdir / name
        write_collection(collection, notes, cards, models)
        archive = tmp_path / f"deck-{counter['n']}.apkg"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.write(collection, name)
            zf.writestr("media", json.dumps(media or {}))
            for key in media or {}:
                zf.writestr(key, b"ID3 fake audio")
        return archive

    return build


def basic_notes(count: int) -> tuple[list[tuple[int, int, str]], list[tuple[int, int, int]]]:
    """``count`` Basic notes with one card each."""
    notes = [(i, BASIC_MODEL_ID, f"front {i}\x1fback {i}") for i in range(1, count + 1)]
    cards = [(100 + i, i, 0) for i in range(1, count + 1)]
    return notes, cards
