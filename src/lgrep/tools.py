"""MCP tools for the lgrep server.

This module defines the tools exposed by the MCP server:
- search: Semantic search over the project's code fragments
- index_stats: Statistics of the published index
- sync_index: Incremental re-index of changed files
"""

from collections.abc import Callable

from fastmcp import FastMCP

from lgrep.indexer import Indexer, Query, Searcher
from lgrep.output import result_to_dict, stats_to_dict


def build_tools(searcher: Searcher, indexer: Indexer) -> dict[str, Callable]:
    """Create the tool functions bound to a searcher and an indexer.

    Args:
        searcher: Searcher answering queries
        indexer: Indexer used by sync_index

    Returns:
        Mapping of tool name to function.
    """

    def search(
        query: str,
        limit: int = 10,
        extensions: list[str] | None = None,
        languages: list[str] | None = None,
        path_pattern: str | None = None,
        exclude_pattern: str | None = None,
        min_score: float | None = None,
        keyword: str | None = None,
        files_only: bool = False,
    ) -> list[dict]:
        """Search the codebase by meaning rather than exact text.

        Results are ranked by cosine similarity between the query and each
        code fragment. A keyword (regex) adds a small boost to fragments that
        contain it.

        Args:
            query: Natural-language description of the code to find
            limit: Maximum number of results to return (default: 10)
            extensions: Only return files with these extensions (e.g. ["py", "rs"])
            languages: Only return these languages (e.g. ["python"])
            path_pattern: Regex the file path must match
            exclude_pattern: Regex the file path must not match
            min_score: Minimum similarity (0.0 to 1.0)
            keyword: Regex for hybrid keyword boosting
            files_only: Return only the best fragment per file

        Returns:
            List of results with:
            - rank: 1-based position
            - file: Path relative to the project root
            - start_line / end_line: Line range of the fragment
            - score: Cosine similarity
            - final_score: Similarity plus keyword boost
            - language: Detected language (or null)
            - content: Fragment text
        """
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        if searcher.config.sync_before_search:
            indexer.sync()

        results = searcher.search(
            Query(
                text=query,
                k=limit,
                extensions=extensions,
                languages=languages,
                path_pattern=path_pattern,
                exclude_pattern=exclude_pattern,
                min_score=min_score,
                keyword=keyword,
                files_only=files_only,
            )
        )
        return [result_to_dict(result) for result in results]

    def index_stats() -> dict:
        """Get statistics about the search index.

        Returns:
            Dictionary with file and fragment counts, embedding model and
            dimension, tombstones, size on disk and generation name.
        """
        return stats_to_dict(searcher.stats())

    def sync_index() -> dict:
        """Re-index files that changed since the last sync.

        Returns:
            Counts of added, updated, removed, unchanged and skipped files,
            and the generation that was published (null if nothing changed).
        """
        stats = indexer.sync()
        return {
            "added": stats.added,
            "updated": stats.updated,
            "removed": stats.removed,
            "unchanged": stats.unchanged,
            "skipped": stats.skipped,
            "published": stats.published,
            "generation": stats.generation,
        }

    return {
        "search": search,
        "index_stats": index_stats,
        "sync_index": sync_index,
    }


def register_tools(mcp: FastMCP, searcher: Searcher, indexer: Indexer) -> None:
    """Register all tools with the FastMCP server.

    Args:
        mcp: FastMCP server instance
        searcher: Searcher answering queries
        indexer: Indexer used for syncing
    """
    for fn in build_tools(searcher, indexer).values():
        mcp.tool()(fn)
