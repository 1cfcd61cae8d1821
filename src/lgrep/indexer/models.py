"""Data models for the indexer."""

from dataclasses import dataclass, field
from pathlib import PurePosixPath


@dataclass
class Fragment:
    """A contiguous slice of a source file, the unit of embedding and retrieval."""

    id: str
    path: str  # Relative to the indexed root, "/"-separated
    text: str
    start_byte: int
    end_byte: int  # Exclusive
    start_line: int  # 1-indexed
    end_line: int  # 1-indexed, inclusive
    content_hash: str
    language: str | None = None
    fragment_order: int = 0

    @property
    def extension(self) -> str:
        """Lower-cased file extension without the dot ("" if none)."""
        return PurePosixPath(self.path).suffix.lstrip(".").lower()


@dataclass
class ManifestEntry:
    """Per-file record used for incremental re-indexing."""

    path: str
    content_hash: str
    mtime: float = 0.0
    size: int = 0
    language: str | None = None
    fragment_ids: list[str] = field(default_factory=list)


@dataclass
class Query:
    """A search request with its metadata filters."""

    text: str
    k: int = 10
    extensions: list[str] | None = None
    languages: list[str] | None = None
    path_pattern: str | None = None
    exclude_pattern: str | None = None
    min_score: float | None = None
    keyword: str | None = None
    files_only: bool = False


@dataclass
class SearchResult:
    """Represents a search result with ranking information."""

    fragment: Fragment
    score: float  # Cosine similarity
    final_score: float  # Similarity plus hybrid keyword boost
    keyword_signal: float = 0.0
    rank: int = 0


@dataclass
class SyncStats:
    """Outcome of one sync run."""

    added: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0
    skipped: int = 0
    fragments_embedded: int = 0
    fragments_removed: int = 0
    rebuilt: bool = False
    compacted: bool = False
    published: bool = False
    generation: str | None = None

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.removed)

    def __str__(self) -> str:
        text = (
            f"Added: {self.added}, Updated: {self.updated}, "
            f"Removed: {self.removed}, Unchanged: {self.unchanged}"
        )
        if self.skipped:
            text += f", Skipped: {self.skipped}"
        return text


@dataclass
class IndexStats:
    """Summary of a published index generation."""

    files: int
    fragments: int
    model: str
    model_name: str
    dimension: int
    tombstones: int
    disk_bytes: int
    generation: str

    @property
    def tombstone_ratio(self) -> float:
        total = self.fragments + self.tombstones
        return self.tombstones / total if total else 0.0
