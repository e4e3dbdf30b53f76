"""
mnemo CLI - inspect and edit agent memory files.

Usage:
    mnemo lessons add TRIGGER RULE [--confidence C] [--project P] [--profile P]
    mnemo lessons list [--project P] [--profile P]... [--min-confidence C]
    mnemo lessons search QUERY [--project P] [--limit N]
    mnemo lessons delete ID
    mnemo policies [--project P] [--hard-threshold T]
    mnemo vectors stats [--db PATH]
    mnemo vectors search QUERY [--db PATH] [--limit N] [--threshold T]

All commands accept --json. Lesson commands read/write --file
(default <mnemo home>/lessons.json).
"""

import argparse
import asyncio
import json
import logging
import re
import sys

from mnemo.lessons import LessonQuery, LessonStore, SemanticMemoryStore
from mnemo.logging_config import setup_mnemo_logging
from mnemo.protocols import MnemoError
from mnemo.types import LessonProfile, LessonSource
from mnemo.utils import get_mnemo_home
from mnemo.vector.embeddings import HASH_EMBEDDING_DIM, HashEmbedder
from mnemo.vector.sqlite_store import SQLiteVectorStore

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def validate_input(value: str, field_name: str, max_length: int = 2000) -> str:
    """Validate and sanitize CLI inputs."""
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")
    if len(value) > max_length:
        raise ValueError(f"{field_name} too long (max {max_length} characters)")
    # Strip null bytes and control characters except newlines and tabs
    return re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", value)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _lesson_query(args) -> LessonQuery:
    return LessonQuery(
        project_id=getattr(args, "project", None),
        profiles=getattr(args, "profile", None) or None,
        min_confidence=getattr(args, "min_confidence", None),
        limit=getattr(args, "limit", None),
    )


def _format_lesson(lesson) -> str:
    scope = f"project:{lesson.project_id}" if lesson.project_id else "global"
    return f"[{lesson.id[:8]}] ({lesson.confidence:.2f}, {scope}, {lesson.profile}) {lesson.trigger} -> {lesson.rule}"


async def cmd_lessons(args) -> None:
    """Handle lessons subcommands."""
    store = LessonStore(file_path=args.file)

    if args.lessons_action == "add":
        lesson = await store.add(
            validate_input(args.trigger, "trigger", 500),
            validate_input(args.rule, "rule"),
            confidence=args.confidence,
            project_id=args.project,
            profile=args.profile,
            source=args.source,
        )
        if args.json:
            _print_json(lesson.to_dict())
        else:
            print(f"✓ Lesson added: {lesson.id}")

    elif args.lessons_action == "list":
        lessons = await store.list(_lesson_query(args))
        if args.json:
            _print_json([lesson.to_dict() for lesson in lessons])
        elif not lessons:
            print("No lessons found.")
        else:
            for lesson in lessons:
                print(_format_lesson(lesson))

    elif args.lessons_action == "search":
        results = await store.search(validate_input(args.query, "query", 500), _lesson_query(args))
        if args.json:
            _print_json([{"score": r.score, "lesson": r.lesson.to_dict()} for r in results])
        elif not results:
            print(f"No lessons matching '{args.query}'.")
        else:
            for result in results:
                print(f"{result.score:.3f}  {_format_lesson(result.lesson)}")

    elif args.lessons_action == "delete":
        if await store.delete(args.id):
            print(f"✓ Lesson deleted: {args.id}")
        else:
            print(f"✗ Lesson not found: {args.id}")
            sys.exit(1)


async def cmd_policies(args) -> None:
    """Show the merged hard/soft policy view."""
    store = SemanticMemoryStore(LessonStore(file_path=args.file), hard_threshold=args.hard_threshold)
    result = await store.get_policies(
        LessonQuery(project_id=args.project),
        total_limit=args.limit,
    )

    if args.json:
        _print_json(
            {
                "hard": [r.lesson.to_dict() for r in result.hard],
                "soft": [r.lesson.to_dict() for r in result.soft],
            }
        )
        return

    print(f"Hard policies ({len(result.hard)}):")
    for record in result.hard:
        print(f"  - {record.rule}  ({record.confidence:.2f})")
    print(f"Soft policies ({len(result.soft)}):")
    for record in result.soft:
        print(f"  - {record.rule}  ({record.confidence:.2f})")


async def cmd_vectors(args) -> None:
    """Handle vectors subcommands."""
    store = SQLiteVectorStore(
        path=args.db,
        table_name=args.table,
        embedding_provider=HashEmbedder(args.dimension),
        enable_vec_search=args.vec,
        ignore_extension_errors=True,
    )
    try:
        if args.vectors_action == "stats":
            stats = await store.stats()
            if args.json:
                _print_json(stats)
            else:
                for key, value in stats.items():
                    print(f"{key}: {value}")

        elif args.vectors_action == "search":
            results = await store.search(
                validate_input(args.query, "query", 500), limit=args.limit, threshold=args.threshold
            )
            if args.json:
                _print_json(
                    [
                        {"id": r.entry.id, "score": r.score, "content": r.entry.content, "metadata": r.entry.metadata}
                        for r in results
                    ]
                )
            elif not results:
                print("No matches.")
            else:
                for r in results:
                    print(f"{r.score:.3f}  [{r.entry.id}] {r.entry.content[:80]}")
    finally:
        store.close()


def build_parser() -> argparse.ArgumentParser:
    home = get_mnemo_home()
    parser = argparse.ArgumentParser(prog="mnemo", description="Agent memory engine")
    parser.add_argument("--log-level", help="Write logs under <mnemo home>/logs at this level")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # lessons
    p_lessons = subparsers.add_parser("lessons", help="Manage learned lessons")
    lessons_sub = p_lessons.add_subparsers(dest="lessons_action", required=True)

    def lesson_parser(name: str, help_text: str) -> argparse.ArgumentParser:
        p = lessons_sub.add_parser(name, help=help_text)
        p.add_argument("--file", "-f", default=str(home / "lessons.json"), help="Lesson file")
        p.add_argument("--json", "-j", action="store_true")
        return p

    l_add = lesson_parser("add", "Add a lesson")
    l_add.add_argument("trigger", help="When the lesson applies")
    l_add.add_argument("rule", help="What to do")
    l_add.add_argument("--confidence", "-c", type=float, default=None)
    l_add.add_argument("--project", "-p", help="Project id (makes the lesson project-scoped)")
    l_add.add_argument(
        "--profile", default=LessonProfile.DEFAULT.value, choices=[p.value for p in LessonProfile]
    )
    l_add.add_argument(
        "--source", default=LessonSource.MANUAL.value, choices=[s.value for s in LessonSource]
    )

    l_list = lesson_parser("list", "List lessons")
    l_list.add_argument("--project", "-p")
    l_list.add_argument("--profile", action="append", help="Profile filter (repeatable)")
    l_list.add_argument("--min-confidence", type=float, default=None)
    l_list.add_argument("--limit", "-l", type=int, default=None)

    l_search = lesson_parser("search", "Search lessons")
    l_search.add_argument("query")
    l_search.add_argument("--project", "-p")
    l_search.add_argument("--profile", action="append", help="Profile filter (repeatable)")
    l_search.add_argument("--min-confidence", type=float, default=None)
    l_search.add_argument("--limit", "-l", type=int, default=None)

    l_delete = lesson_parser("delete", "Delete a lesson")
    l_delete.add_argument("id")

    # policies
    p_policies = subparsers.add_parser("policies", help="Show hard/soft policies")
    p_policies.add_argument("--file", "-f", default=str(home / "lessons.json"), help="Lesson file")
    p_policies.add_argument("--project", "-p")
    p_policies.add_argument("--hard-threshold", type=float, default=0.85)
    p_policies.add_argument("--limit", "-l", type=int, default=None)
    p_policies.add_argument("--json", "-j", action="store_true")

    # vectors
    p_vectors = subparsers.add_parser("vectors", help="Inspect a SQLite vector store")
    vectors_sub = p_vectors.add_subparsers(dest="vectors_action", required=True)

    def vector_parser(name: str, help_text: str) -> argparse.ArgumentParser:
        p = vectors_sub.add_parser(name, help=help_text)
        p.add_argument("--db", default=str(home / "vectors.db"), help="Database file")
        p.add_argument("--table", default="vector_entries")
        p.add_argument("--dimension", type=int, default=HASH_EMBEDDING_DIM)
        p.add_argument("--vec", action="store_true", help="Use sqlite-vec if available")
        p.add_argument("--json", "-j", action="store_true")
        return p

    vector_parser("stats", "Show store statistics")
    v_search = vector_parser("search", "Search the store")
    v_search.add_argument("query")
    v_search.add_argument("--limit", "-l", type=int, default=10)
    v_search.add_argument("--threshold", "-t", type=float, default=0.0)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        setup_mnemo_logging(args.log_level)

    commands = {
        "lessons": cmd_lessons,
        "policies": cmd_policies,
        "vectors": cmd_vectors,
    }

    try:
        asyncio.run(commands[args.command](args))
    except MnemoError as e:
        logger.error(f"{e}")
        print(f"✗ {e}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        logger.error(f"Input validation error: {e}")
        print(f"✗ {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
