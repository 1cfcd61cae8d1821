"""Rendering of search results for the terminal and as JSON."""

import json

from lgrep.indexer.models import IndexStats, SearchResult

MAX_CONTENT_LINES = 15
SEPARATOR = "-" * 60


def _line_range(result: SearchResult) -> str:
    fragment = result.fragment
    if fragment.start_line == fragment.end_line:
        return str(fragment.start_line)
    return f"{fragment.start_line}-{fragment.end_line}"


def format_results(results: list[SearchResult], show_content: bool = False) -> str:
    """Human-readable listing: ``[rank] path:start-end (score%)``."""
    lines: list[str] = []
    for result in results:
        fragment = result.fragment
        score_pct = int(result.score * 100)
        lines.append("")
        lines.append(f"[{result.rank}] {fragment.path}:{_line_range(result)} ({score_pct}%)")

        if show_content:
            lines.append(SEPARATOR)
            text_lines = fragment.text.splitlines()
            for offset, text in enumerate(text_lines[:MAX_CONTENT_LINES]):
                lines.append(f"{fragment.start_line + offset:4} {text}")
            if len(text_lines) > MAX_CONTENT_LINES:
                lines.append(f"     ... ({len(text_lines) - MAX_CONTENT_LINES} more lines)")

    return "\n".join(lines) + "\n" if lines else ""


def result_to_dict(result: SearchResult) -> dict:
    fragment = result.fragment
    return {
        "rank": result.rank,
        "file": fragment.path,
        "start_line": fragment.start_line,
        "end_line": fragment.end_line,
        "score": round(result.score, 6),
        "final_score": round(result.final_score, 6),
        "language": fragment.language,
        "content": fragment.text,
    }


def format_results_json(results: list[SearchResult]) -> str:
    return json.dumps([result_to_dict(result) for result in results], indent=2)


def stats_to_dict(stats: IndexStats) -> dict:
    return {
        "files": stats.files,
        "fragments": stats.fragments,
        "model": stats.model,
        "model_name": stats.model_name,
        "dimension": stats.dimension,
        "tombstones": stats.tombstones,
        "tombstone_ratio": round(stats.tombstone_ratio, 4),
        "disk_bytes": stats.disk_bytes,
        "generation": stats.generation,
    }


def format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def format_stats(stats: IndexStats) -> str:
    return "\n".join(
        [
            "Index Statistics",
            f"  Files:      {stats.files}",
            f"  Fragments:  {stats.fragments}",
            f"  Model:      {stats.model} ({stats.model_name}, {stats.dimension} dims)",
            f"  Tombstones: {stats.tombstones} ({stats.tombstone_ratio:.1%})",
            f"  Disk size:  {format_size(stats.disk_bytes)}",
            f"  Generation: {stats.generation}",
        ]
    )
