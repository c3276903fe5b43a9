from __future__ import annotations

import argparse
import asyncio

from autoembed.cli.context import CLIContext


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("delete", help="Delete stored embeddings by source or session")
    selector = parser.add_mutually_exclusive_group(required=True)
    selector.add_argument("--source-id")
    selector.add_argument("--session-id")
    parser.set_defaults(handler=run_delete)


def run_delete(args: argparse.Namespace, ctx: CLIContext) -> int:
    return asyncio.run(_delete(args, ctx))


async def _delete(args: argparse.Namespace, ctx: CLIContext) -> int:
    async with ctx.open_manager() as manager:
        if args.source_id:
            deleted = await manager.delete_source_embeddings(args.source_id)
            target = f"source {args.source_id}"
        else:
            deleted = await manager.delete_session_embeddings(args.session_id)
            target = f"session {args.session_id}"
    ctx.console.print(f"[green]Deleted[/green] {deleted} embedding record(s) for {target}")
    return 0
