from __future__ import annotations

import argparse

from rich.panel import Panel

from autoembed.cli.context import CLIContext
from autoembed.infrastructure.cache.embedding_cache import EmbeddingCache


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("cache", help="Inspect and maintain the embedding cache")
    cache_subparsers = parser.add_subparsers(dest="cache_command", required=True)

    stats = cache_subparsers.add_parser("stats", help="Show cache size")
    stats.set_defaults(handler=run_stats)

    prune = cache_subparsers.add_parser("prune", help="Evict old entries")
    prune.add_argument("--max-entries", type=int, default=100_000)
    prune.add_argument("--max-age-days", type=float, default=None)
    prune.set_defaults(handler=run_prune)

    clear = cache_subparsers.add_parser("clear", help="Remove cached embeddings")
    clear.add_argument("--model", help="Only clear entries produced by this model")
    clear.set_defaults(handler=run_clear)


def run_stats(args: argparse.Namespace, ctx: CLIContext) -> int:
    cache = EmbeddingCache(ctx.paths.cache_db_path)
    try:
        stats = cache.get_stats()
    finally:
        cache.close()
    ctx.console.print(
        Panel.fit(
            f"Path: {ctx.paths.cache_db_path}\n"
            f"Entries: {stats.total_entries}\n"
            f"Size: {stats.total_size} bytes",
            title="Embedding Cache",
        )
    )
    return 0


def run_prune(args: argparse.Namespace, ctx: CLIContext) -> int:
    max_age = args.max_age_days * 86_400 if args.max_age_days is not None else None
    cache = EmbeddingCache(ctx.paths.cache_db_path)
    try:
        removed = cache.prune(max_entries=args.max_entries, max_age_seconds=max_age)
    finally:
        cache.close()
    ctx.console.print(f"[green]Pruned[/green] {removed} cache entr{'y' if removed == 1 else 'ies'}")
    return 0


def run_clear(args: argparse.Namespace, ctx: CLIContext) -> int:
    cache = EmbeddingCache(ctx.paths.cache_db_path)
    try:
        removed = cache.clear_model(args.model) if args.model else cache.clear_all()
    finally:
        cache.close()
    ctx.console.print(f"[green]Cleared[/green] {removed} cache entr{'y' if removed == 1 else 'ies'}")
    return 0
