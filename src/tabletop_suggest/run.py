"""
Maintenance CLI for tabletop-suggest.

Usage:
    python -m tabletop_suggest.run [OPTIONS]

    # Create or upgrade the suggestion database
    python -m tabletop_suggest.run --init-db

    # Usage figures for a scope
    python -m tabletop_suggest.run --stats --manufacturer "Games Workshop" --game "Warhammer 40k"

    # Block a faction suggestion
    python -m tabletop_suggest.run --block chaos_spam --manufacturer gw --game 40k --reason "Spam"
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from .config import SuggestConfig
from .errors import AdminMutationError, MigrationError
from .migrations import get_current_version, pending_migrations, run_migrations
from .models import SuggestionType
from .service import SuggestionService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tabletop-suggest")

ADMIN_ACTIONS = ("promote", "unpromote", "block", "unblock", "report", "delete")


async def show_stats(service: SuggestionService, manufacturer: str, game: str) -> int:
    stats = await service.get_stats(manufacturer, game)
    if stats is None:
        logger.error("Could not load stats")
        return 1
    print(json.dumps(stats.to_dict(), indent=2))
    return 0


async def show_popular(service: SuggestionService, top_count: int) -> int:
    popular = await service.popular_manufacturers(top_count)
    print(json.dumps([p.to_dict() for p in popular], indent=2))
    return 0


async def show_review_queue(service: SuggestionService, args: argparse.Namespace) -> int:
    queue = await service.review_queue(args.manufacturer, args.game, args.faction, args.type)
    logger.info(f"{len(queue)} suggestion(s) need review")
    for s in queue:
        print(f"  {s.name:<40} reports={s.report_count} count={s.count}")
    return 0


async def run_admin_action(
    service: SuggestionService, action: str, suggestion_id: str, args: argparse.Namespace
) -> int:
    """Run one moderation action. Returns a process exit code."""
    common = {
        "manufacturer": args.manufacturer,
        "game": args.game,
        "faction": args.faction,
        "suggestion_id": suggestion_id,
        "suggestion_type": args.type,
        "actor_id": "cli",
    }
    try:
        if action in ("block", "delete", "report"):
            result = await getattr(service, action)(reason=args.reason or "", **common)
        else:
            result = await getattr(service, action)(**common)
    except AdminMutationError as e:
        logger.error(f"{action} failed: {e}")
        return 1

    if result is not None:
        print(json.dumps(result.to_dict(), indent=2))
    logger.info(f"{action} applied to {suggestion_id}")
    return 0


async def run_command(config: SuggestConfig, args: argparse.Namespace) -> int:
    service = SuggestionService.from_config(config)
    try:
        if args.stats:
            return await show_stats(service, args.manufacturer, args.game)
        if args.popular:
            return await show_popular(service, args.popular)
        if args.review:
            return await show_review_queue(service, args)
        for action in ADMIN_ACTIONS:
            suggestion_id = getattr(args, action)
            if suggestion_id:
                return await run_admin_action(service, action, suggestion_id, args)
        return 0
    finally:
        await service.aclose()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="tabletop-suggest: suggestion store maintenance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Create the database
    python -m tabletop_suggest.run --init-db --db suggestions.db

    # Top manufacturers
    python -m tabletop_suggest.run --popular 5

    # Promote a unit
    python -m tabletop_suggest.run --promote intercessors --type unit \\
        --manufacturer gw --game 40k --faction space_marines
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=Path("datasette.yaml"),
        help="Path to config file (default: datasette.yaml)",
    )
    parser.add_argument("--db", type=Path, help="Override database path from config")
    parser.add_argument("--init-db", action="store_true", help="Apply pending schema migrations")
    parser.add_argument("--stats", action="store_true", help="Show usage stats for a scope")
    parser.add_argument(
        "--popular", type=int, nargs="?", const=5, help="Show the N most used manufacturers"
    )
    parser.add_argument("--review", action="store_true", help="List reported suggestions")

    for action in ADMIN_ACTIONS:
        parser.add_argument(f"--{action}", metavar="ID", help=f"{action.capitalize()} a suggestion")

    parser.add_argument("--manufacturer", type=str, help="Manufacturer scope")
    parser.add_argument("--game", type=str, help="Game scope")
    parser.add_argument("--faction", type=str, help="Faction scope (unit suggestions)")
    parser.add_argument(
        "--type",
        default=SuggestionType.FACTION.value,
        choices=[t.value for t in SuggestionType],
        help="Suggestion type (default: faction)",
    )
    parser.add_argument("--reason", type=str, help="Reason for block/delete/report")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = SuggestConfig.from_yaml(args.config)
    if args.db:
        config.store.db_path = args.db

    if args.init_db:
        try:
            applied = run_migrations(config.store.db_path)
        except MigrationError as e:
            logger.error(str(e))
            return 1
        logger.info(
            f"Database {config.store.db_path} at version "
            f"{get_current_version(config.store.db_path)} ({len(applied)} migration(s) applied)"
        )
        return 0

    needs_scope = args.stats or args.review or any(getattr(args, a) for a in ADMIN_ACTIONS)
    if not needs_scope and not args.popular:
        parser.print_help()
        return 0

    if needs_scope and args.type != SuggestionType.MANUFACTURER.value and not args.manufacturer:
        parser.error("--manufacturer is required for this command")

    if not config.store.remote_url and not config.store.db_path.exists():
        logger.error(f"Database not found: {config.store.db_path}")
        logger.error("Run with --init-db first to create the database.")
        return 1

    if not config.store.remote_url:
        pending = pending_migrations(config.store.db_path)
        if pending:
            logger.error(f"Database {config.store.db_path} is missing migrations {pending}")
            logger.error("Run with --init-db to upgrade it.")
            return 1

    return asyncio.run(run_command(config, args))


if __name__ == "__main__":
    sys.exit(main())
