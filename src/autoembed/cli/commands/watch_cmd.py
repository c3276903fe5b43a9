from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal

from autoembed.application.services.manager_service import EmbeddingManager
from autoembed.cli.context import CLIContext
from autoembed.core.errors import ConfigurationError, ServiceUnavailableError
from autoembed.domain.models.pipeline import Alert, ProgressEvent

PROGRESS_EVERY = 100


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("watch", help="Watch the session root and embed new log entries")
    parser.add_argument("--duration", type=float, default=None, help="Stop after this many seconds")
    parser.set_defaults(handler=run_watch)


def run_watch(args: argparse.Namespace, ctx: CLIContext) -> int:
    return asyncio.run(_watch(args.duration, ctx))


async def _watch(duration: float | None, ctx: CLIContext) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    async with ctx.open_manager() as manager:
        if not manager.pipeline.enabled:
            raise ServiceUnavailableError(
                f"Model server at {ctx.config.ollama.base_url} is unavailable; nothing can be embedded."
            )
        if not await manager.start_auto_embedding():
            raise ConfigurationError(
                f"Session root {ctx.paths.sessions_root} does not exist. Set AUTOEMBED_SESSIONS_ROOT."
            )
        ctx.console.print(f"[green]Watching[/green] {ctx.paths.sessions_root} (Ctrl-C to stop)")
        printer = asyncio.create_task(_print_events(manager, ctx))
        try:
            await asyncio.wait_for(stop.wait(), timeout=duration)
        except asyncio.TimeoutError:
            pass
        finally:
            printer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await printer
    return 0


async def _print_events(manager: EmbeddingManager, ctx: CLIContext) -> None:
    async for event in manager.events:
        if event.kind == "alert" and isinstance(event.payload, Alert):
            alert = event.payload
            ctx.console.print(f"[red]{alert.severity.value}[/red] {alert.type.value}: {alert.message}")
        elif event.kind == "stored":
            ctx.console.print(f"[green]Stored[/green] {event.payload['stored']} embedding(s)")
        elif event.kind == "progress" and isinstance(event.payload, ProgressEvent):
            if event.payload.processed % PROGRESS_EVERY == 0:
                ctx.console.print(f"Processed {event.payload.processed}/{event.payload.total} task(s)")
