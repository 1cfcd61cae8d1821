"""
Indexer package for lgrep.

This package turns a project tree into a searchable vector index: files are
chunked into fragments, embedded, inserted into an HNSW graph and recorded in
a SQLite manifest, all published together as one immutable generation.
"""

from lgrep.indexer.chunker import chunk_file, chunk_text, detect_language
from lgrep.indexer.graph import HNSWGraph
from lgrep.indexer.indexer import Indexer
from lgrep.indexer.manifest import Manifest
from lgrep.indexer.models import (
    Fragment,
    IndexStats,
    ManifestEntry,
    Query,
    SearchResult,
    SyncStats,
)
from lgrep.indexer.searcher import Searcher
from lgrep.indexer.store import IndexStore, Snapshot
from lgrep.indexer.walker import FileInfo, walk_files

__all__ = [
    "FileInfo",
    "Fragment",
    "HNSWGraph",
    "IndexStats",
    "IndexStore",
    "Indexer",
    "Manifest",
    "ManifestEntry",
    "Query",
    "SearchResult",
    "Searcher",
    "Snapshot",
    "SyncStats",
    "chunk_file",
    "chunk_text",
    "detect_language",
    "walk_files",
]
