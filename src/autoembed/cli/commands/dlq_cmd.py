from __future__ import annotations

import argparse
import asyncio

from rich.table import Table

from autoembed.cli.context import CLIContext
from autoembed.core.errors import ServiceUnavailableError
from autoembed.core.time import epoch_to_iso


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("dlq", help="Inspect and replay the dead-letter queue")
    dlq_subparsers = parser.add_subparsers(dest="dlq_command", required=True)

    listing = dlq_subparsers.add_parser("list", help="List dead-lettered tasks")
    listing.add_argument("--limit", type=int, default=50)
    listing.set_defaults(handler=run_list)

    retry = dlq_subparsers.add_parser("retry", help="Resubmit every dead-lettered task")
    retry.set_defaults(handler=run_retry)

    clear = dlq_subparsers.add_parser("clear", help="Discard every dead-lettered task")
    clear.set_defaults(handler=run_clear)


def run_list(args: argparse.Namespace, ctx: CLIContext) -> int:
    return asyncio.run(_list(args.limit, ctx))


def run_retry(args: argparse.Namespace, ctx: CLIContext) -> int:
    return asyncio.run(_retry(ctx))


def run_clear(args: argparse.Namespace, ctx: CLIContext) -> int:
    return asyncio.run(_clear(ctx))


async def _list(limit: int, ctx: CLIContext) -> int:
    async with ctx.open_manager(initialize=False) as manager:
        manager.pipeline.restore_dead_letters()
        items = manager.get_dead_letter_queue()

    table = Table(title=f"Dead-Letter Queue ({len(items)})")
    table.add_column("Key", overflow="fold")
    table.add_column("Type")
    table.add_column("Attempts")
    table.add_column("Failed At")
    table.add_column("Error", overflow="fold")
    for item in items[:limit]:
        task = item.original_task
        table.add_row(
            task.idempotency_key,
            task.metadata.source_type.value,
            str(item.attempt_count + 1),
            epoch_to_iso(item.timestamp) or "",
            item.error,
        )
    ctx.console.print(table)
    return 0


async def _retry(ctx: CLIContext) -> int:
    async with ctx.open_manager() as manager:
        if not manager.pipeline.enabled:
            raise ServiceUnavailableError("Model server is unavailable; dead-lettered tasks cannot be retried.")
        resubmitted = manager.retry_dead_letter_queue()
        await manager.pipeline.wait_until_idle()
        remaining = len(manager.get_dead_letter_queue())
    ctx.console.print(f"[green]Resubmitted[/green] {resubmitted} task(s); {remaining} remain dead-lettered")
    return 0 if remaining == 0 else 1


async def _clear(ctx: CLIContext) -> int:
    async with ctx.open_manager(initialize=False) as manager:
        manager.pipeline.restore_dead_letters()
        cleared = manager.clear_dead_letter_queue()
        manager.pipeline.save_dead_letters()
    ctx.console.print(f"[green]Cleared[/green] {cleared} dead-lettered task(s)")
    return 0
