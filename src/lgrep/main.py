"""Command-line entry point for lgrep, plus the MCP server factory."""

import argparse
import json
import logging
import os
import sys
import time
from datetime import datetime
from pathlib import Path

from fastmcp import FastMCP

from lgrep.config import DEFAULT_MODEL, INDEX_DIR_NAME, MODELS, Config
from lgrep.embeddings import get_provider
from lgrep.errors import LgrepError
from lgrep.history import QueryHistory
from lgrep.indexer import Indexer, IndexStore, Query, Searcher
from lgrep.indexer.graph import HNSWGraph
from lgrep.output import format_results, format_results_json, format_stats, stats_to_dict
from lgrep.sync import IndexWatcher
from lgrep.tools import register_tools

logger = logging.getLogger(__name__)

COMMANDS = ("index", "watch", "search", "stats", "models", "history", "serve")


def create_server(config: Config) -> FastMCP:
    """Create and configure the MCP server for one project.

    Args:
        config: Configuration instance with all settings.
    """
    mcp = FastMCP(
        name="lgrep",
        instructions=(
            "lgrep provides offline semantic search over a local codebase. Use the "
            "search tool to find code by describing what it does, index_stats to "
            "inspect the index and sync_index after files change."
        ),
    )

    provider = get_provider(config)
    indexer = Indexer(config, provider)
    searcher = Searcher(config, provider)

    if indexer.store.current_generation_or_none() is None:
        logger.info("No usable index at %s, performing initial index...", config.index_dir)
        stats = indexer.sync()
        logger.info("Initial index complete: %s", stats)

    logger.info("Registering tools...")
    register_tools(mcp, searcher, indexer)

    logger.info("Server configured successfully")
    return mcp


def _index_model(root: Path) -> str | None:
    """Model of the published index under ``root``, if there is one."""
    store = IndexStore(root.expanduser().resolve() / INDEX_DIR_NAME)
    generation = store.current_generation_or_none()
    if generation is None:
        return None
    try:
        return HNSWGraph.read_metadata(store.generation_path(generation))["model"]
    except LgrepError:
        return None


def _load_config(path: str, model: str | None = None, **overrides) -> Config:
    # Without an explicit model, keep using the one the index was built with
    if model is None and not os.getenv("LGREP_MODEL"):
        model = _index_model(Path(path))
    return Config.from_env(path, model=model, **overrides)


def _split(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def cmd_index(args: argparse.Namespace) -> int:
    model = args.model
    if args.force and model is None:
        model = os.getenv("LGREP_MODEL") or DEFAULT_MODEL
    config = _load_config(args.path, model=model)
    indexer = Indexer(config)

    print(f"Indexing {config.root_path} with {config.model.name}")
    started = time.monotonic()
    stats = indexer.sync(force=args.force)
    elapsed = time.monotonic() - started

    if stats.published:
        print(f"Done: {stats} ({elapsed:.1f}s)")
    else:
        print(f"Index is up to date: {stats}")
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    config = _load_config(args.path, model=args.model)
    indexer = Indexer(config)

    print(f"Watching {config.root_path} (Ctrl+C to stop)")
    stats = indexer.sync()
    print(f"Initial sync: {stats}")

    watcher = IndexWatcher(indexer, on_sync=lambda s: print(f"Updated: {s}", flush=True))
    watcher.start()
    try:
        while watcher.running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        watcher.stop()
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    config = _load_config(
        args.path,
        model=args.model,
        max_count=args.max_count,
        show_content=args.content or None,
        json_output=args.json or None,
        sync_before_search=args.sync or None,
    )
    query_text = " ".join(args.query) if isinstance(args.query, list) else args.query
    provider = get_provider(config)

    if config.sync_before_search:
        stats = Indexer(config, provider).sync()
        if stats.changed:
            print(f"Synced: {stats}", file=sys.stderr)

    extensions = _split(getattr(args, "ext", None))
    languages = _split(getattr(args, "lang", None))
    path_pattern = getattr(args, "path_pattern", None)
    query = Query(
        text=query_text,
        k=config.max_count,
        extensions=extensions,
        languages=languages,
        path_pattern=path_pattern,
        exclude_pattern=getattr(args, "exclude", None),
        min_score=getattr(args, "min_score", None),
        keyword=getattr(args, "keyword", None),
        files_only=getattr(args, "files", False),
    )

    searcher = Searcher(config, provider)
    try:
        results = searcher.search(query)
    finally:
        searcher.close()

    filters = None
    if extensions or languages or path_pattern or query.exclude_pattern or query.min_score is not None:
        filters = f"ext:{extensions} lang:{languages} path:{path_pattern}"
    try:
        QueryHistory(config.index_dir).add_query(query_text, len(results), filters)
    except OSError as e:
        logger.warning("Could not record query history: %s", e)

    if config.json_output:
        print(format_results_json(results))
    elif not results:
        print(f"No results found for: {query_text}")
    else:
        print(f'\n{len(results)} results for "{query_text}":')
        print(format_results(results, config.show_content), end="")
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    config = _load_config(args.path)
    stats = IndexStore(config.index_dir).stats()
    if args.json:
        print(json.dumps(stats_to_dict(stats), indent=2))
    else:
        print(format_stats(stats))
    return 0


def cmd_models(args: argparse.Namespace) -> int:
    print("Available Embedding Models")
    for name, model in MODELS.items():
        print()
        print(f"  {name}{' (default)' if name == DEFAULT_MODEL else ''}")
        print(f"    {model.model_name}")
        print(f"    {model.description}")
    print()
    print("Usage: lgrep index --model nomic")
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    index_dir = Path(args.path).expanduser().resolve() / INDEX_DIR_NAME
    if not index_dir.is_dir():
        print(f"No index found at {index_dir}. Run `lgrep index` first.", file=sys.stderr)
        return 1
    history = QueryHistory(index_dir)

    if args.clear:
        history.clear()
        print("History cleared")
        return 0
    if not len(history):
        print("No search history yet.")
        return 0

    print("Search History")
    print()
    if args.top:
        print(f"Top {args.limit} most frequent queries:\n")
        for i, (query, count) in enumerate(history.top_queries(args.limit), start=1):
            print(f"  {i:2}. {query} ({count} times)")
    else:
        print(f"Last {args.limit} searches:\n")
        for i, entry in enumerate(history.recent(args.limit), start=1):
            when = datetime.fromtimestamp(entry.timestamp).strftime("%Y-%m-%d %H:%M")
            print(f"  {i:2}. {entry.query} ({entry.result_count} results, {when})")
            if entry.filters:
                print(f"      filters: {entry.filters}")
    print()
    print(f"Total queries in history: {len(history)}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    config = _load_config(args.path, model=args.model)

    logger.info("=" * 50)
    logger.info("lgrep MCP server starting...")
    logger.info("  ROOT:     %s", config.root_path)
    logger.info("  MODEL:    %s", config.model.name)
    logger.info("  EMBEDDER: %s", config.embedder)
    logger.info("=" * 50)

    mcp = create_server(config)
    mcp.run(transport="stdio")
    return 0


def _add_search_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-m", "--max-count", type=int, help="Maximum number of results")
    parser.add_argument("-c", "--content", action="store_true", help="Show content of results")
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    parser.add_argument("-s", "--sync", action="store_true", help="Sync index before searching")
    parser.add_argument("--model", help="Embedding model to use")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lgrep",
        description="Local semantic grep - offline semantic code search",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    index = subparsers.add_parser("index", help="Build or update the search index")
    index.add_argument("path", nargs="?", default=".", help="Path to index")
    index.add_argument("--model", help="Embedding model to use")
    index.add_argument("-f", "--force", action="store_true", help="Rebuild from scratch")
    index.set_defaults(func=cmd_index)

    watch = subparsers.add_parser("watch", help="Update the index as files change")
    watch.add_argument("path", nargs="?", default=".", help="Path to watch")
    watch.add_argument("--model", help="Embedding model to use")
    watch.set_defaults(func=cmd_watch)

    search = subparsers.add_parser("search", help="Search the index")
    search.add_argument("query", help="Search query")
    search.add_argument("path", nargs="?", default=".", help="Path to search in")
    _add_search_options(search)
    search.add_argument("--ext", help='Filter by file extensions (comma-separated, e.g. "rs,py")')
    search.add_argument("--lang", help='Filter by languages (comma-separated, e.g. "rust,python")')
    search.add_argument("--path-pattern", help="Only paths matching this regex")
    search.add_argument("--exclude", help="Exclude paths matching this regex")
    search.add_argument("--min-score", type=float, help="Minimum similarity (0.0 to 1.0)")
    search.add_argument("-k", "--keyword", help="Keyword regex for hybrid search")
    search.add_argument("--files", action="store_true", help="Only the best match per file")
    search.set_defaults(func=cmd_search)

    stats = subparsers.add_parser("stats", help="Show index statistics")
    stats.add_argument("path", nargs="?", default=".", help="Path to index")
    stats.add_argument("--json", action="store_true", help="Output as JSON")
    stats.set_defaults(func=cmd_stats)

    models = subparsers.add_parser("models", help="List available embedding models")
    models.set_defaults(func=cmd_models)

    history = subparsers.add_parser("history", help="Show query history")
    history.add_argument("path", nargs="?", default=".", help="Path to index")
    history.add_argument("-n", "--limit", type=int, default=10, help="Number of queries to show")
    history.add_argument("--top", action="store_true", help="Most frequent instead of recent")
    history.add_argument("--clear", action="store_true", help="Clear history")
    history.set_defaults(func=cmd_history)

    serve = subparsers.add_parser("serve", help="Run the MCP server (stdio)")
    serve.add_argument("path", nargs="?", default=".", help="Project root")
    serve.add_argument("--model", help="Embedding model to use")
    serve.set_defaults(func=cmd_serve)

    return parser


def build_bare_parser() -> argparse.ArgumentParser:
    """Parser for the ``lgrep QUERY...`` shorthand."""
    parser = argparse.ArgumentParser(
        prog="lgrep",
        description="Local semantic grep - offline semantic code search",
        epilog=f"Commands: {', '.join(COMMANDS)} (see lgrep <command> --help)",
    )
    parser.add_argument("query", nargs="+", help="Search query")
    parser.add_argument("-p", "--path", default=".", help="Path to search in")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    _add_search_options(parser)
    parser.set_defaults(func=cmd_search, command="search")
    return parser


def parse_args(argv: list[str]) -> argparse.Namespace:
    first = next((arg for arg in argv if not arg.startswith("-")), None)
    if first is None or first in COMMANDS:
        return build_parser().parse_args(argv)
    return build_bare_parser().parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main function - runs one CLI command and returns its exit status."""
    args = parse_args(sys.argv[1:] if argv is None else argv)

    # Configure logging here to avoid side effects on import
    if args.verbose:
        level = logging.DEBUG
    elif args.command in ("serve", "watch"):
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        return args.func(args)
    except LgrepError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
