#!/usr/bin/env python3
"""CLI entry point for the notebook gallery batch operations.

Commands:
    rehash      Recompute code cell digests for every notebook
    recompute   Recompute every notebook's summary from the event logs
    wordclouds  Regenerate stale word clouds
    reindex     Rebuild the search index from the store
    search      Run a listing or full-text query (for debugging)
    stats       Show store and index statistics
    packages    Count the packages notebooks load, by language
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sqlite3
import sys
from pathlib import Path

import yaml

from .config import DEFAULT_CONFIG_PATH, ConfigManager, GalleryConfig
from .errors import GalleryError
from .gallery import Gallery
from .models import Principal

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------


def _format_size(size_bytes: int) -> str:
    """Format byte size as human-readable string."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes / 1024 / 1024:.1f} MB"


def _db_size(path: Path) -> int:
    return path.stat().st_size if path.exists() else 0


def _format_counts(counts: dict[str, int]) -> str:
    return ", ".join(f"{key.capitalize()}: {value}" for key, value in counts.items())


# ---------------------------------------------------------------------------
# Command Implementations
# ---------------------------------------------------------------------------


async def _rehash(config: GalleryConfig) -> int:
    """Recompute code cell digests for every notebook."""
    try:
        async with Gallery(config=config) as gallery:
            print("Rehashing notebooks...")
            counts = await gallery.rehash_all()
            print(_format_counts(counts))
            return 1 if counts["failed"] else 0
    except (GalleryError, sqlite3.Error) as e:
        print(f"Error rehashing: {e}", file=sys.stderr)
        return 1


async def _recompute(config: GalleryConfig) -> int:
    """Recompute every summary, reindexing the ones that changed."""
    try:
        async with Gallery(config=config) as gallery:
            print("Recomputing summaries...")
            counts = await gallery.recompute_all()
            print(_format_counts(counts))
            return 1 if counts["failed"] else 0
    except (GalleryError, sqlite3.Error) as e:
        print(f"Error recomputing: {e}", file=sys.stderr)
        return 1


async def _wordclouds(config: GalleryConfig) -> int:
    """Regenerate every stale word cloud."""
    try:
        async with Gallery(config=config) as gallery:
            print("Regenerating word clouds...")
            counts = await gallery.generate_all_wordclouds(timeout=None)
            print(_format_counts(counts))
            return 1 if counts["failed"] else 0
    except (GalleryError, sqlite3.Error) as e:
        print(f"Error generating word clouds: {e}", file=sys.stderr)
        return 1


async def _reindex(config: GalleryConfig) -> int:
    """Rebuild the search index from scratch."""
    try:
        async with Gallery(config=config) as gallery:
            print("Rebuilding search index...")
            count = await gallery.rebuild_index()
            print(f"Indexed {count} notebooks")
            return 0
    except (GalleryError, sqlite3.Error) as e:
        print(f"Error rebuilding index: {e}", file=sys.stderr)
        return 1


async def _search(
    config: GalleryConfig,
    query: str | None,
    user_id: int | None,
    use_admin: bool,
    page: int,
    sort: str | None,
    sort_dir: str | None,
) -> int:
    """Run a query as a user (for debugging)."""
    try:
        async with Gallery(config=config) as gallery:
            principal = await gallery.store.principal_for(user_id, use_admin=use_admin)
            if principal is None:
                print(f"Error: Unknown user {user_id}", file=sys.stderr)
                return 1

            result = await gallery.ranking.get(
                principal, q=query, page=page, sort=sort, sort_dir=sort_dir
            )
            if not result.results:
                print("No results found")
                return 0

            print(f"{result.total} matches (page {result.page} of {result.pages})")
            print()
            first = (result.page - 1) * result.per_page + 1
            for i, ranked in enumerate(result.results, first):
                notebook = ranked.notebook
                print(f"{i}. {notebook.title} [{notebook.uuid}]")
                print(f"   {notebook.owner.display_name} • {notebook.lang or 'unknown'}")
                if ranked.score is not None:
                    print(f"   Score: {ranked.score:.4f}")
                if ranked.snippet:
                    print(f"   {ranked.snippet}")
                print()
            return 0
    except (GalleryError, sqlite3.Error) as e:
        print(f"Error searching: {e}", file=sys.stderr)
        return 1


async def _stats(config: GalleryConfig) -> int:
    """Show store and index statistics."""
    try:
        async with Gallery(config=config) as gallery:
            stats = await gallery.stats()
            languages = await gallery.ranking.language_counts(
                Principal(is_admin=True, use_admin=True)
            )

        print("Notebook Gallery Statistics")
        print("=" * 50)
        print(f"Notebooks: {stats['notebooks']}")
        print(f"Indexed: {stats['indexed']}")
        print(f"Store size: {_format_size(_db_size(gallery.store.db_path))}")
        print(f"Index size: {_format_size(_db_size(gallery.index.db_path))}")
        if languages:
            print("Languages:")
            for lang, version, count in languages:
                label = f"{lang} {version}" if version else lang
                print(f"  {label}: {count}")
        return 0
    except (GalleryError, sqlite3.Error) as e:
        print(f"Error getting stats: {e}", file=sys.stderr)
        return 1


async def _packages(config: GalleryConfig) -> int:
    """Show how many notebooks load each package, by language."""
    try:
        async with Gallery(config=config) as gallery:
            summary = await gallery.package_summary()
    except (GalleryError, sqlite3.Error) as e:
        print(f"Error summarizing packages: {e}", file=sys.stderr)
        return 1

    if not summary:
        print("No packages found")
        return 0
    for lang in sorted(summary):
        print(f"{lang}:")
        counts = summary[lang]
        for name in sorted(counts, key=lambda n: (-counts[n], n)):
            print(f"  {name}: {counts[name]}")
    return 0


# ---------------------------------------------------------------------------
# CLI Argument Parsing
# ---------------------------------------------------------------------------


def _create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="notebook-gallery",
        description="Batch maintenance for the notebook gallery.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    def add_common_options(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--config",
            type=Path,
            default=DEFAULT_CONFIG_PATH,
            help=f"Path to config.yaml (default: {DEFAULT_CONFIG_PATH})",
        )
        p.add_argument(
            "--log-level",
            type=str,
            default="WARNING",
            choices=LOG_LEVELS,
            help="Log level (default: WARNING)",
        )

    for name, help_text in (
        ("rehash", "Recompute code cell digests for every notebook"),
        ("recompute", "Recompute every summary from the event logs"),
        ("wordclouds", "Regenerate stale word clouds"),
        ("reindex", "Rebuild the search index from the store"),
        ("stats", "Show store and index statistics"),
        ("packages", "Count the packages notebooks load, by language"),
    ):
        add_common_options(subparsers.add_parser(name, help=help_text))

    search_parser = subparsers.add_parser(
        "search",
        help="Run a listing or full-text query (for debugging)",
    )
    search_parser.add_argument(
        "query",
        type=str,
        nargs="?",
        default=None,
        help="Query text (omit for a listing)",
    )
    search_parser.add_argument(
        "-u",
        "--user",
        type=int,
        default=None,
        help="Query as this user id (default: anonymous)",
    )
    search_parser.add_argument(
        "--use-admin",
        action="store_true",
        help="Apply the admin override",
    )
    search_parser.add_argument(
        "--page",
        type=int,
        default=1,
        help="Result page (default: 1)",
    )
    search_parser.add_argument(
        "--sort",
        type=str,
        default=None,
        help="Sort field (default: score)",
    )
    search_parser.add_argument(
        "--sort-dir",
        type=str,
        default=None,
        choices=["asc", "desc"],
        help="Sort direction (default: desc)",
    )
    add_common_options(search_parser)

    return parser


def _run_command(args: argparse.Namespace, config: GalleryConfig) -> int:
    if args.command == "rehash":
        return asyncio.run(_rehash(config))
    elif args.command == "recompute":
        return asyncio.run(_recompute(config))
    elif args.command == "wordclouds":
        return asyncio.run(_wordclouds(config))
    elif args.command == "reindex":
        return asyncio.run(_reindex(config))
    elif args.command == "stats":
        return asyncio.run(_stats(config))
    elif args.command == "packages":
        return asyncio.run(_packages(config))
    elif args.command == "search":
        return asyncio.run(
            _search(
                config,
                args.query,
                args.user,
                args.use_admin,
                args.page,
                args.sort,
                args.sort_dir,
            )
        )
    return 1


# ---------------------------------------------------------------------------
# Main Entry Point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """Run the notebook gallery CLI.

    Usage:
        notebook-gallery <command> [--config PATH] [--log-level LEVEL]
    """
    parser = _create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = ConfigManager(args.config.expanduser()).load()
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 2

    return _run_command(args, config)


if __name__ == "__main__":
    sys.exit(main())
