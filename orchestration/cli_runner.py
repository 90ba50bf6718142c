# orchestration/cli_runner.py
"""Command-line runner for the book generation orchestrator."""

from __future__ import annotations

import asyncio
import json
from argparse import Namespace
from pathlib import Path

import structlog
from core.errors import BookGenError
from rich.console import Console
from rich.table import Table
from storage.session_store import SessionStore
from ui.rich_display import RichDisplayManager

from models import BookBlueprint, GenerationOptions, GenerationSession
from orchestration.book_orchestrator import BookGenerationOrchestrator
from orchestration.collaborators import collaborators_from_settings
from orchestration.progress import ProgressChannel

logger = structlog.get_logger(__name__)
console = Console()


def load_blueprint(path: str) -> BookBlueprint:
    return BookBlueprint.model_validate_json(Path(path).read_text(encoding="utf-8"))


def build_orchestrator(store: SessionStore | None = None) -> BookGenerationOrchestrator:
    return BookGenerationOrchestrator(
        **collaborators_from_settings(), store=store or SessionStore()
    )


def _options(args: Namespace) -> GenerationOptions:
    return GenerationOptions(
        start_from_chapter=args.start,
        end_at_chapter=args.end,
        dry_run=args.command == "plan",
        require_approval=args.require_approval,
        model=args.model,
        temperature=args.temperature,
    )


async def _with_display(coro_factory, title: str) -> GenerationSession:
    channel = ProgressChannel()
    display = RichDisplayManager(title)
    watcher = asyncio.create_task(display.consume(channel))
    try:
        return await coro_factory(channel)
    finally:
        channel.close()
        await watcher


def print_session(session: GenerationSession) -> None:
    table = Table(title=f"{session.blueprint_title} [{session.status.value}]")
    table.add_column("Chapter", justify="right")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Words", justify="right")
    table.add_column("Attempts", justify="right")
    for record in session.chapters:
        table.add_row(
            str(record.chapter_number),
            record.title,
            record.status.value,
            str(record.chapter.word_count if record.chapter else 0),
            str(len(record.attempts)),
        )
    console.print(table)
    for error in session.errors[-5:]:
        console.print(f"[red]Chapter {error.chapter_number}: {error.message}[/red]")


async def _dispatch(args: Namespace, orchestrator: BookGenerationOrchestrator) -> None:
    if args.command == "list":
        for row in await orchestrator.list_sessions():
            console.print(json.dumps(row))
        return

    blueprint = load_blueprint(args.blueprint)
    if args.command in ("plan", "generate"):
        options = _options(args)
        if options.dry_run:
            session = await orchestrator.start_full_generation(blueprint, options)
            console.print(
                f"Blueprint '{blueprint.title}' is valid: "
                f"{len(session.chapters)} chapters planned"
            )
            return
        session = await _with_display(
            lambda ch: orchestrator.start_full_generation(blueprint, options, ch),
            blueprint.title,
        )
        print_session(session)
        return

    await orchestrator.load_session(args.session, blueprint)
    if args.command == "resume":
        session = await _with_display(
            lambda ch: orchestrator.resume(args.session, ch), blueprint.title
        )
        print_session(session)
    elif args.command == "status":
        print_session(orchestrator.get_session_state(args.session))
    elif args.command == "stats":
        stats = orchestrator.get_statistics(args.session)
        console.print_json(stats.model_dump_json(exclude={"chapters"}))
    elif args.command == "approve":
        record = await orchestrator.approve_chapter(args.session, args.chapter)
        console.print(f"Chapter {record.chapter_number} approved")
    elif args.command == "revise":
        chapter = await orchestrator.request_revision(
            args.session, args.chapter, args.instructions
        )
        console.print(
            f"Chapter {chapter.chapter_number} revised ({chapter.word_count} words); "
            "awaiting approval"
        )
    elif args.command == "regenerate":
        chapter = await orchestrator.regenerate_chapter(args.session, args.chapter)
        console.print(
            f"Chapter {chapter.chapter_number} regenerated as version {chapter.version}"
        )


def run(args: Namespace) -> int:
    """Build the orchestrator and run the requested command; returns an exit code."""
    try:
        orchestrator = build_orchestrator(SessionStore(args.db) if args.db else None)
        asyncio.run(_dispatch(args, orchestrator))
    except KeyboardInterrupt:
        logger.info("Book generation interrupted; session state is persisted")
        return 130
    except BookGenError as e:
        logger.error("Command failed", command=args.command, error=str(e))
        console.print(f"[red]{e}[/red]")
        return 1
    return 0
