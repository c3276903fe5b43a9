from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rich.console import Console

from autoembed.cli.commands import (
    cache_cmd,
    delete_cmd,
    dlq_cmd,
    doctor_cmd,
    embed_cmd,
    search_cmd,
    status_cmd,
    watch_cmd,
)
from autoembed.cli.context import CLIContext
from autoembed.core.config import load_manager_config, load_paths
from autoembed.core.errors import AutoEmbedError
from autoembed.core.logging import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autoembed",
        description="Local embedding pipeline for session logs and ad-hoc content",
    )
    parser.add_argument(
        "--home",
        type=Path,
        default=None,
        help="State directory for caches, vectors and checkpoints (default: $AUTOEMBED_HOME or ~/.autoembed)",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)

    subparsers = parser.add_subparsers(dest="command", required=True)
    embed_cmd.register(subparsers)
    search_cmd.register(subparsers)
    status_cmd.register(subparsers)
    watch_cmd.register(subparsers)
    dlq_cmd.register(subparsers)
    cache_cmd.register(subparsers)
    delete_cmd.register(subparsers)
    doctor_cmd.register(subparsers)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose)
    console = Console()

    paths = load_paths(args.home)
    ctx = CLIContext(paths=paths, console=console, config=load_manager_config())

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2

    try:
        return handler(args, ctx)
    except AutoEmbedError as exc:
        logger.error(str(exc))
        return 1
