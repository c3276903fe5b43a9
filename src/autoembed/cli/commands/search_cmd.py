from __future__ import annotations

import argparse
import asyncio

from rich.table import Table

from autoembed.cli.context import CLIContext
from autoembed.domain.models.chunk import ContentType
from autoembed.domain.models.embedding import SearchOptions


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("search", help="Semantic search over stored embeddings")
    parser.add_argument("query")
    parser.add_argument("--limit", type=int, default=10)
    parser.add_argument("--threshold", type=float, default=0.7)
    parser.add_argument("--type", dest="content_type", choices=[member.value for member in ContentType])
    parser.add_argument("--session-id")
    parser.add_argument("--project-path")
    parser.add_argument("--show-content", action="store_true")
    parser.set_defaults(handler=run_search)


def run_search(args: argparse.Namespace, ctx: CLIContext) -> int:
    options = SearchOptions(
        limit=args.limit,
        threshold=args.threshold,
        source_type=ContentType.parse(args.content_type) if args.content_type else None,
        session_id=args.session_id,
        project_path=args.project_path,
        include_content=args.show_content,
    )
    return asyncio.run(_search(args.query, options, ctx))


async def _search(query: str, options: SearchOptions, ctx: CLIContext) -> int:
    async with ctx.open_manager() as manager:
        hits = await manager.search(query, options)

    table = Table(title=f"Search Hits ({len(hits)})")
    table.add_column("Score")
    table.add_column("Type")
    table.add_column("Source", overflow="fold")
    table.add_column("Session")
    table.add_column("Chunk")
    if options.include_content:
        table.add_column("Content", overflow="fold")
    for hit in hits:
        row = [
            f"{hit.score:.3f}",
            hit.metadata.source_type.value,
            hit.metadata.source_id,
            hit.metadata.session_id or "",
            f"{hit.metadata.chunk_index + 1}/{hit.metadata.total_chunks}",
        ]
        if options.include_content:
            row.append((hit.content or "")[:400])
        table.add_row(*row)
    ctx.console.print(table)
    return 0
