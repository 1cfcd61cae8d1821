"""Sync engine that brings the index in line with the project files."""

import logging
import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from lgrep.config import Config
from lgrep.embeddings import EmbeddingProvider, check_vectors, get_provider
from lgrep.errors import (
    IndexCorruptedError,
    IndexNotFoundError,
    ModelMismatchError,
    UnsupportedFileError,
)
from lgrep.indexer.chunker import chunk_file, detect_language
from lgrep.indexer.graph import HNSWGraph
from lgrep.indexer.manifest import MANIFEST_FILE, Manifest
from lgrep.indexer.models import Fragment, IndexStats, ManifestEntry, SyncStats
from lgrep.indexer.store import IndexStore, Snapshot
from lgrep.indexer.walker import (
    FileInfo,
    compute_hash,
    resolve_paths,
    touches_ignore_rules,
    walk_files,
)

logger = logging.getLogger(__name__)


@dataclass
class _FileChange:
    entry: ManifestEntry
    fragments: list[Fragment]
    previous: ManifestEntry | None


class Indexer:
    """
    Indexer that syncs the project files with the on-disk vector index.

    The project files are always the source of truth. The index is derived
    and can be regenerated at any time with a forced sync.

    Thread Safety:
        Syncs are serialized by an in-process lock and, across processes, by
        the index store's advisory file lock. Readers never observe a partial
        sync: every sync writes a new generation and publishes it atomically.
    """

    def __init__(self, config: Config, provider: EmbeddingProvider | None = None):
        """
        Initialize the indexer.

        Args:
            config: Application configuration (root, model, chunking, workers)
            provider: Embedding provider; defaults to the one selected by config
        """
        self.config = config
        self.root = config.root_path
        self.store = IndexStore(config.index_dir)
        self.provider = provider or get_provider(config)
        self._write_lock = threading.Lock()

    def build(self) -> SyncStats:
        """Rebuild the index from scratch."""
        return self.sync(force=True)

    def sync(
        self, paths: Iterable[Path | str] | None = None, force: bool = False
    ) -> SyncStats:
        """
        Sync the index with filesystem changes.

        Args:
            paths: Restrict the sync to these files or directories (watch mode).
                ``None`` walks the whole project.
            force: Discard the existing index and rebuild, even if it was built
                with a different model.

        Returns:
            SyncStats describing what changed.

        Raises:
            IndexLockedError: another sync holds the index lock.
            ModelMismatchError: the index was built with another model.
            EmbeddingError: the provider failed; the previous index is kept.
        """
        if paths is not None:
            paths = list(paths)
        with self._write_lock, self.store.lock():
            return self._sync(paths, force)

    def stats(self) -> IndexStats:
        return self.store.stats()

    def _open_previous(self, force: bool) -> Snapshot | None:
        if force:
            return None
        try:
            snapshot = self.store.open_snapshot()
        except IndexNotFoundError:
            logger.info("No index at %s, building from scratch", self.store.index_dir)
            return None
        except IndexCorruptedError as e:
            logger.warning("Index is unusable (%s), rebuilding from scratch", e)
            return None

        model = self.config.model
        if snapshot.graph.model != model.name:
            snapshot.close()
            raise ModelMismatchError(
                snapshot.graph.model, snapshot.graph.dimension, model.name, model.dimension
            )
        return snapshot

    def _sync(self, paths: Iterable[Path | str] | None, force: bool) -> SyncStats:
        model = self.config.model
        previous = self._open_previous(force)
        stats = SyncStats(rebuilt=previous is None)

        try:
            if previous is None:
                graph = HNSWGraph(model.name, model.dimension)
                old_entries: dict[str, ManifestEntry] = {}
            else:
                graph = previous.graph
                old_entries = previous.manifest.list_files()

            # A rebuild or an ignore-rule change covers the whole project
            touched: set[str] | None = None
            if paths is None or previous is None or touches_ignore_rules(self.root, paths):
                files = list(walk_files(self.root, self.config.max_file_size))
            else:
                files, touched = resolve_paths(self.root, paths, self.config.max_file_size)

            changes, removed = self._diff(files, old_entries, touched, stats)

            if not (changes or removed or stats.rebuilt):
                logger.debug("Index is up to date: %s", stats)
                return stats

            fragments = [fragment for change in changes for fragment in change.fragments]
            vectors = self._embed(fragments)
            stats.fragments_embedded = len(fragments)

            for path in removed:
                for fid in old_entries[path].fragment_ids:
                    stats.fragments_removed += graph.tombstone(fid)
            for change in changes:
                if change.previous is not None:
                    for fid in change.previous.fragment_ids:
                        stats.fragments_removed += graph.tombstone(fid)
            for fragment, vector in zip(fragments, vectors):
                graph.insert(fragment.id, vector)

            if graph.needs_compaction():
                graph = graph.compacted()
                stats.compacted = True
            graph.ensure_connected()

            stats.generation = self._publish(previous, graph, changes, removed)
            stats.published = True
        finally:
            if previous is not None:
                previous.close()

        logger.info("Sync complete (%s): %s", stats.generation, stats)
        return stats

    def _diff(
        self,
        files: list[FileInfo],
        old_entries: dict[str, ManifestEntry],
        touched: set[str] | None,
        stats: SyncStats,
    ) -> tuple[list[_FileChange], list[str]]:
        """Classify files as added, modified, unchanged or removed."""
        changes: list[_FileChange] = []
        removed: list[str] = []
        seen: set[str] = set()

        for info in files:
            path = info.relative_path
            seen.add(path)
            old = old_entries.get(path)

            try:
                content = info.path.read_bytes()
            except OSError as e:
                logger.warning("Skipping unreadable file %s: %s", path, e)
                stats.skipped += 1
                if old is not None:
                    removed.append(path)
                continue

            content_hash = compute_hash(content)
            if old is not None and old.content_hash == content_hash:
                stats.unchanged += 1
                continue

            try:
                fragments = chunk_file(
                    content, path, self.config.chunk_size, self.config.chunk_overlap
                )
            except UnsupportedFileError as e:
                logger.info("Skipping %s", e)
                stats.skipped += 1
                if old is not None:
                    removed.append(path)
                continue

            entry = ManifestEntry(
                path=path,
                content_hash=content_hash,
                mtime=info.mtime,
                size=info.size,
                language=detect_language(path),
            )
            changes.append(_FileChange(entry, fragments, old))
            if old is None:
                stats.added += 1
            else:
                stats.updated += 1

        for path in old_entries:
            if path in seen or path in removed:
                continue
            if touched is None or _is_touched(path, touched):
                removed.append(path)

        stats.removed = len(removed)
        return changes, removed

    def _embed(self, fragments: list[Fragment]) -> list[np.ndarray]:
        """Embed fragment texts in batches on a bounded worker pool."""
        if not fragments:
            return []
        model = self.config.model
        size = self.config.batch_size
        batches = [
            [fragment.text for fragment in fragments[start : start + size]]
            for start in range(0, len(fragments), size)
        ]

        def embed_batch(texts: list[str]) -> list[np.ndarray]:
            vectors = self.provider.embed(texts, model.name)
            return check_vectors(vectors, len(texts), model.dimension, "embedding provider")

        logger.debug(
            "Embedding %d fragments in %d batches (%d workers)",
            len(fragments),
            len(batches),
            self.config.workers,
        )
        with ThreadPoolExecutor(max_workers=self.config.workers) as executor:
            results = list(executor.map(embed_batch, batches))
        return [vector for batch in results for vector in batch]

    def _publish(
        self,
        previous: Snapshot | None,
        graph: HNSWGraph,
        changes: list[_FileChange],
        removed: list[str],
    ) -> str:
        """Write a new generation next to the current one and switch to it."""
        staging = self.store.begin()
        try:
            manifest_path = staging / MANIFEST_FILE
            if previous is not None:
                manifest = previous.manifest.copy_to(manifest_path)
            else:
                manifest = Manifest(manifest_path)
                manifest.initialize()
            try:
                manifest.apply(
                    [(change.entry, change.fragments) for change in changes], removed
                )
                manifest.set_meta("model", graph.model)
                manifest.set_meta("dimension", str(graph.dimension))
            finally:
                manifest.close()
            graph.save(staging)
            return self.store.publish(staging)
        except BaseException:
            self.store.abort(staging)
            raise


def _is_touched(path: str, touched: set[str]) -> bool:
    """True if ``path`` or one of its parent directories was reported changed."""
    if path in touched:
        return True
    return any(path.startswith(prefix + "/") for prefix in touched)
