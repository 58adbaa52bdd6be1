"""
Operator CLI for inspecting a companion memory database.

Usage:
    companion-memory --user alice --app demo windows
    companion-memory --user alice --app demo search "birthday plans"
    companion-memory --user alice --app demo retry
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from loguru import logger

from .config_loader import load_config
from .memory_service import MemoryService
from .models import Scope


def _shorten(text: str, width: int = 80) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 3] + "..."


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="companion-memory",
        description="Inspect and maintain companion memory",
    )
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--db", help="SQLite database path (overrides config)")
    parser.add_argument("--user", required=True, help="User id of the scope")
    parser.add_argument("--app", required=True, help="Application name of the scope")
    parser.add_argument(
        "--persona", default="default", help="Persona id of the scope (default: default)"
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Show debug logging"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    windows = sub.add_parser("windows", help="List recent chat windows")
    windows.add_argument("--limit", type=int, default=20)

    memories = sub.add_parser("memories", help="List recent memories")
    memories.add_argument("--limit", type=int, default=20)

    search = sub.add_parser("search", help="Search memories by similarity")
    search.add_argument("query")
    search.add_argument("--top-k", type=int, default=None)
    search.add_argument("--threshold", type=float, default=None)

    sub.add_parser("emotion", help="Show the current emotion state and relationship level")
    sub.add_parser("retry", help="Summarize full windows left pending")

    return parser


def configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


async def run_command(args: argparse.Namespace, service: MemoryService) -> int:
    scope = Scope(user_id=args.user, app_name=args.app, persona_id=args.persona)

    if args.command == "windows":
        for window in await service.list_windows(scope, args.limit):
            status = "summarized" if window.summarized else "open"
            print(
                f"{window.id}\t{window.turn_count} turns\t{status}\t"
                f"{window.created_at.isoformat(timespec='seconds')}"
            )
        return 0

    if args.command == "memories":
        for memory in await service.list_memories(scope, args.limit):
            print(
                f"{memory.id}\tsalience={memory.salience:.2f}\t"
                f"{memory.created_at.isoformat(timespec='seconds')}\t"
                f"{_shorten(memory.summary)}"
            )
        return 0

    if args.command == "search":
        results = await service.search(
            scope, args.query, top_k=args.top_k, threshold=args.threshold
        )
        if not results:
            print("No memories found")
        for result in results:
            print(
                f"{result.memory_id}\trank={result.rank_score:.3f}\t"
                f"sim={result.similarity:.3f}\tsal={result.salience:.2f}\t"
                f"{_shorten(result.content)}"
            )
        return 0

    if args.command == "emotion":
        state = await service.get_emotion_state(scope)
        print(f"mood:      {state.mood.value}")
        print(f"affection: {state.affection}")
        print(f"streak:    {state.streak} ({state.last_label.value if state.last_label else '-'})")
        relationship = await service.get_relationship(scope)
        print(f"relation:  {relationship.level.value} (score {relationship.score})")
        instruction = await service.mood_instruction(scope)
        if instruction:
            print(f"guideline: {instruction}")
        return 0

    if args.command == "retry":
        memories = await service.retry_pending(scope)
        print(f"Formed {len(memories)} memories from pending windows")
        return 0

    return 1


async def _main_async(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    if args.db:
        config.storage.sqlite_db_path = args.db

    service = MemoryService(config)
    try:
        await service.initialize()
        return await run_command(args, service)
    finally:
        await service.close()


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        return asyncio.run(_main_async(args))
    except Exception as e:
        logger.error(f"Command {args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
