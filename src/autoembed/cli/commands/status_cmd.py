from __future__ import annotations

import argparse
import asyncio

from rich.panel import Panel
from rich.table import Table

from autoembed.cli.context import CLIContext
from autoembed.core.time import epoch_to_iso


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("status", help="Show component health, metrics and storage counts")
    parser.set_defaults(handler=run_status)


def run_status(args: argparse.Namespace, ctx: CLIContext) -> int:
    return asyncio.run(_status(ctx))


async def _status(ctx: CLIContext) -> int:
    async with ctx.open_manager(initialize=False) as manager:
        await manager.initialize()
        status = manager.get_status()
        metrics = manager.get_metrics()
        cache_stats = manager.get_cache_stats()
        store_stats = await manager.get_vector_store_stats()

    model = status.model
    ctx.console.print(
        Panel.fit(
            "\n".join(
                [
                    f"Initialized: {status.initialized}",
                    f"Model: {model.model} ({model.state}, loaded={model.model_loaded})",
                    f"Model digest: {model.model_digest or '-'}",
                    f"Last model error: {model.last_error or '-'}",
                    f"Session root: {status.worker.watch_root}",
                    f"Tracked session files: {status.worker.files_tracked}",
                ]
            ),
            title="Embedding Manager",
        )
    )

    pipeline = status.pipeline
    if pipeline is not None:
        table = Table(title="Pipeline")
        table.add_column("Metric")
        table.add_column("Value")
        table.add_row("Enabled", str(pipeline.enabled))
        table.add_row("Queue depth", str(pipeline.queue_depth))
        table.add_row("Circuit breaker open", str(pipeline.circuit_breaker_open))
        table.add_row("Dead letters", str(pipeline.dead_letter_count))
        table.add_row("Last checkpoint", epoch_to_iso(pipeline.last_checkpoint) or "-")
        latency = metrics.latency
        table.add_row(
            "Latency p50/p95/p99",
            f"{latency.p50 * 1000:.0f}ms / {latency.p95 * 1000:.0f}ms / {latency.p99 * 1000:.0f}ms",
        )
        table.add_row("Success rate", f"{metrics.success_rate:.1%}")
        ctx.console.print(table)

    storage = Table(title="Vector Backends")
    storage.add_column("Role")
    storage.add_column("Backend")
    storage.add_column("Connected")
    storage.add_column("Embeddings")
    for role, stats in store_stats.items():
        storage.add_row(
            role,
            str(stats["backend"] or "disabled"),
            str(stats["connected"]),
            "-" if stats["count"] is None else str(stats["count"]),
        )
    ctx.console.print(storage)

    ctx.console.print(
        Panel.fit(
            f"Entries: {cache_stats.total_entries}\nSize: {cache_stats.total_size} bytes",
            title="Embedding Cache",
        )
    )
    return 0 if status.initialized else 1
