"""Query history stored next to the index as ``history.json``."""

import json
import logging
import time
from collections import Counter, deque
from dataclasses import asdict, dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

HISTORY_FILE = "history.json"
MAX_HISTORY_SIZE = 100


@dataclass
class QueryEntry:
    """A single search recorded in history."""

    query: str
    timestamp: int  # Unix time, seconds
    result_count: int
    filters: str | None = None


class QueryHistory:
    """Most recent searches for one project, oldest first on disk."""

    def __init__(self, index_dir: Path):
        self.path = index_dir / HISTORY_FILE
        self._entries: deque[QueryEntry] = deque(maxlen=MAX_HISTORY_SIZE)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            entries = [QueryEntry(**item) for item in data.get("queries", [])]
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Ignoring unreadable history file %s: %s", self.path, e)
            return
        self._entries.extend(entries)

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"queries": [asdict(entry) for entry in self._entries]}
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def __len__(self) -> int:
        return len(self._entries)

    def add_query(self, query: str, result_count: int, filters: str | None = None) -> bool:
        """Record a query. Returns False if it repeats the previous one."""
        if self._entries and self._entries[-1].query == query:
            return False
        self._entries.append(
            QueryEntry(
                query=query,
                timestamp=int(time.time()),
                result_count=result_count,
                filters=filters,
            )
        )
        self.save()
        return True

    def recent(self, limit: int) -> list[QueryEntry]:
        """Most recent queries first."""
        return list(reversed(self._entries))[:limit]

    def all(self) -> list[QueryEntry]:
        return list(reversed(self._entries))

    def suggest(self, partial: str, limit: int) -> list[str]:
        """Past queries containing ``partial`` (case-insensitive), most recent first."""
        needle = partial.lower()
        suggestions: list[str] = []
        for entry in reversed(self._entries):
            if needle in entry.query.lower() and entry.query not in suggestions:
                suggestions.append(entry.query)
                if len(suggestions) >= limit:
                    break
        return suggestions

    def top_queries(self, limit: int) -> list[tuple[str, int]]:
        """Most frequent queries with their counts."""
        counts = Counter(entry.query for entry in self._entries)
        return sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:limit]

    def clear(self) -> None:
        self._entries.clear()
        self.save()
