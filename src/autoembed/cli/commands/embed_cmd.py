from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from rich.panel import Panel

from autoembed.cli.context import CLIContext
from autoembed.core.errors import ValidationError
from autoembed.domain.models.chunk import ContentType


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("embed", help="Embed content and store it in the vector backends")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--text", help="Inline text to embed")
    source.add_argument("--file", type=Path, help="Read the content from a file")
    source.add_argument(
        "--session-file",
        type=Path,
        help="Run a JSONL session log through the pipeline from its saved position",
    )
    parser.add_argument(
        "--type",
        dest="content_type",
        choices=[member.value for member in ContentType],
        default=ContentType.DOCUMENTATION.value,
    )
    parser.add_argument("--source-id")
    parser.add_argument("--session-id")
    parser.add_argument("--project-path")
    parser.set_defaults(handler=run_embed)


def run_embed(args: argparse.Namespace, ctx: CLIContext) -> int:
    if args.session_file is not None:
        return asyncio.run(_embed_session_file(args, ctx))
    return asyncio.run(_embed_content(args, ctx))


async def _embed_content(args: argparse.Namespace, ctx: CLIContext) -> int:
    if args.file is not None:
        if not args.file.is_file():
            raise ValidationError(f"File not found: {args.file}")
        content = args.file.read_text(encoding="utf-8")
        source_id = args.source_id or str(args.file.resolve())
        file_path = str(args.file.resolve())
    else:
        content = args.text
        source_id = args.source_id or "cli"
        file_path = None

    async with ctx.open_manager() as manager:
        stored = await manager.embed_and_store(
            content,
            args.content_type,
            {
                "source_id": source_id,
                "session_id": args.session_id,
                "project_path": args.project_path,
                "file_path": file_path,
            },
        )
    ctx.console.print(
        Panel.fit(
            f"Source: {source_id}\nType: {args.content_type}\nChunks stored: {stored}",
            title="Embedded",
        )
    )
    return 0 if stored else 1


async def _embed_session_file(args: argparse.Namespace, ctx: CLIContext) -> int:
    path: Path = args.session_file.resolve()
    if not path.is_file():
        raise ValidationError(f"Session file not found: {path}")
    async with ctx.open_manager() as manager:
        submitted = await manager.process_session_file(path)
        await manager.pipeline.wait_until_idle()
        metrics = manager.get_metrics()
        dead_letters = len(manager.get_dead_letter_queue())
    ctx.console.print(
        Panel.fit(
            f"File: {path}\n"
            f"Tasks submitted: {submitted}\n"
            f"Embedded: {metrics.total_processed}\n"
            f"From cache: {metrics.total_cached}\n"
            f"Dead-lettered: {dead_letters}",
            title="Session File",
        )
    )
    return 0
