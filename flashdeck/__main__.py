"""CLI interface for Flashdeck.

Usage:
    python -m flashdeck import deck.apkg --name "Spanish"   Import an Anki package
    python -m flashdeck templates deck.apkg                 List the templates in a package
    python -m flashdeck review 1                            Study deck 1
    python -m flashdeck stats 1                             Show deck 1 card counts
"""

import argparse
import asyncio
import logging
import shutil
import sys
from pathlib import Path

from sqlalchemy import select

from backend.config import settings
from backend.database import async_session, engine
from backend.errors import FlashdeckError
from backend.models import Base
from backend.models.user import User
from backend.notifications import ProgressHub
from backend.srs.memory import Grade
from backend.srs.orchestrator import ReviewOrchestrator
from backend.srs.repository import ReviewRepository
from backend.tasks import TaskRegistry
from ingestion.pipeline import ImportManager
from ingestion.templates import strip_tags

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


async def ensure_db() -> None:
    """Create tables if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ensure_user() -> int:
    """Ensure there's a local user and return the ID."""
    async with async_session() as db:
        user = (await db.execute(select(User).limit(1))).scalar_one_or_none()
        if user:
            return user.id

        user = User(name="local")
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user.id


def _import_manager() -> tuple[ImportManager, ProgressHub, TaskRegistry]:
    hub = ProgressHub()
    registry = TaskRegistry()
    return ImportManager(async_session, hub, registry, settings), hub, registry


async def cmd_import(args: argparse.Namespace) -> None:
    """Import every card of an Anki package into a new deck."""
    await ensure_db()
    user_id = await ensure_user()
    manager, hub, registry = _import_manager()

    session = manager.new_session(user_id)
    shutil.copyfile(args.file, session.upload_path)
    async with async_session() as db:
        deck = await ReviewRepository(db).create_deck(
            name=args.name or args.file.stem,
            creator_id=user_id,
            deck_type=args.deck_type,
            status="processing",
            task_id=session.task_id,
        )

    events = hub.subscribe(session.task_id)
    await manager.start_one_shot(session, deck.id)
    await registry.wait(session.task_id)
    while not events.empty():
        event = events.get_nowait()
        print(f"  [{event.progress:>3}%] {event.message}")

    if session.error:
        print(f"\n  Import failed: {session.error}")
        sys.exit(1)
    print(f"\n  Imported {session.imported} cards into deck {deck.id} ({deck.name})")


async def cmd_templates(args: argparse.Namespace) -> None:
    """Show the templates in a package without importing it."""
    manager, _, _ = _import_manager()
    session = manager.new_session(user_id=0)
    shutil.copyfile(args.file, session.upload_path)
    try:
        await manager.parse_upload(session)
    finally:
        manager.cleanup(session)

    print(f"\n  {session.total_notes} notes, {session.total_cards} cards, {session.media_count} media files\n")
    for template in session.templates:
        print(f"  {template.name}  ({template.card_count} cards)")
        print(f"    fields: {', '.join(template.fields)}")
        for sample in template.samples:
            print(f"    - {strip_tags(sample.front)[:60]!r} -> {strip_tags(sample.back)[:60]!r}")
        print()


async def cmd_review(args: argparse.Namespace) -> None:
    """Run an interactive review session."""
    await ensure_db()
    user_id = await ensure_user()

    async with async_session() as db:
        orchestrator = ReviewOrchestrator(db, user_id)
        print("\n  Ratings: 0=Again  1=Hard  2=Good  3=Easy")
        print("  Type 'q' to quit\n")

        reviewed = 0
        while reviewed < args.max_cards:
            user_card = await orchestrator.select_next(args.deck_id)
            if user_card is None:
                print("  This deck has no cards.")
                return
            if not user_card:
                print("  Nothing due. You're all caught up!")
                break

            print(f"  [{reviewed + 1}] {strip_tags(user_card.card.front)}")
            if input("  (enter to show answer) ").strip().lower() == "q":
                break
            print(f"      {strip_tags(user_card.card.back)}")

            raw = input("  Grade: ").strip().lower()
            if raw == "q":
                break
            try:
                outcome = await orchestrator.apply_grade(args.deck_id, user_card.id, raw)
            except FlashdeckError as e:
                print(f"  {e.message}")
                continue
            interval = outcome.result.interval
            print(f"  {Grade(outcome.result.log.rating).name.title()}: next review in {interval}\n")
            reviewed += 1

    print(f"\n  Session complete: {reviewed} cards reviewed")


async def cmd_stats(args: argparse.Namespace) -> None:
    """Show card counts for a deck."""
    await ensure_db()
    user_id = await ensure_user()

    async with async_session() as db:
        orchestrator = ReviewOrchestrator(db, user_id)
        deck = await orchestrator.repo.get_deck(args.deck_id)
        stats = await orchestrator.deck_stats(args.deck_id)

    print(f"\n  {deck.name} ({deck.deck_type}, {deck.algorithm})")
    print(f"  Total cards:   {stats.total_cards}")
    print(f"  New:           {stats.new_cards}")
    print(f"  In review:     {stats.total_review_cards}")
    print(f"  Due now:       {stats.due_cards}")
    print()


def main() -> None:
    """Entry point for the Flashdeck CLI."""
    parser = argparse.ArgumentParser(
        prog="flashdeck",
        description="Spaced repetition flashcards",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    import_parser = subparsers.add_parser("import", help="Import an Anki package")
    import_parser.add_argument("file", type=Path, help="Path to the .apkg file")
    import_parser.add_argument("-n", "--name", default="", help="Deck name (default: file name)")
    import_parser.add_argument("--deck-type", choices=["normal", "audio"], default="normal")

    templates_parser = subparsers.add_parser("templates", help="List the templates in a package")
    templates_parser.add_argument("file", type=Path, help="Path to the .apkg file")

    review_parser = subparsers.add_parser("review", help="Study a deck")
    review_parser.add_argument("deck_id", type=int)
    review_parser.add_argument("--max-cards", type=int, default=20, help="Max cards per session")

    stats_parser = subparsers.add_parser("stats", help="Show deck statistics")
    stats_parser.add_argument("deck_id", type=int)

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, format=LOG_FORMAT)

    if not args.command:
        parser.print_help()
        return

    cmd_map = {
        "import": cmd_import,
        "templates": cmd_templates,
        "review": cmd_review,
        "stats": cmd_stats,
    }

    try:
        asyncio.run(cmd_map[args.command](args))
    except FlashdeckError as e:
        print(f"  Error: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
