"""Tests for generation management in the index directory."""

from pathlib import Path

import numpy as np
import pytest

from lgrep.errors import (
    IndexCorruptedError,
    IndexInconsistentError,
    IndexLockedError,
    IndexNotFoundError,
)
from lgrep.indexer.chunker import chunk_text
from lgrep.indexer.graph import HNSWGraph
from lgrep.indexer.manifest import MANIFEST_FILE, Manifest
from lgrep.indexer.models import ManifestEntry
from lgrep.indexer.store import CURRENT_FILE, IndexStore, generation_name


@pytest.fixture
def store(tmp_path: Path) -> IndexStore:
    return IndexStore(tmp_path / ".lgrep")


def publish_generation(store: IndexStore, texts: dict[str, str], extra_keys=()) -> str:
    """Stage and publish a generation holding ``texts`` (path -> content)."""
    staging = store.begin()
    manifest = Manifest(staging / MANIFEST_FILE)
    manifest.initialize()
    graph = HNSWGraph("minilm", 4)
    rng = np.random.default_rng(len(texts))
    for path, text in texts.items():
        fragments = chunk_text(text, path)
        manifest.apply([(ManifestEntry(path=path, content_hash="h"), fragments)], removed=[])
        for fragment in fragments:
            graph.insert(fragment.id, rng.standard_normal(4))
    for key in extra_keys:
        graph.insert(key, rng.standard_normal(4))
    manifest.close()
    graph.save(staging)
    return store.publish(staging)


class TestCurrentGeneration:
    def test_missing_dir(self, store: IndexStore):
        with pytest.raises(IndexNotFoundError):
            store.current_generation()
        assert store.current_generation_or_none() is None

    def test_lock_only_dir_is_not_indexed(self, store: IndexStore):
        with store.lock():
            pass
        assert store.lock_path.exists()
        with pytest.raises(IndexNotFoundError):
            store.current_generation()

    def test_generations_without_current(self, store: IndexStore):
        publish_generation(store, {"a.py": "x = 1\n"})
        (store.index_dir / CURRENT_FILE).unlink()
        with pytest.raises(IndexCorruptedError, match="no CURRENT"):
            store.current_generation()

    def test_invalid_current(self, store: IndexStore):
        publish_generation(store, {"a.py": "x = 1\n"})
        (store.index_dir / CURRENT_FILE).write_text("../../etc\n")
        with pytest.raises(IndexCorruptedError, match="Invalid generation name"):
            store.current_generation()

    def test_current_points_to_missing_generation(self, store: IndexStore):
        publish_generation(store, {"a.py": "x = 1\n"})
        (store.index_dir / CURRENT_FILE).write_text(generation_name(42) + "\n")
        with pytest.raises(IndexCorruptedError, match="missing"):
            store.current_generation()


class TestPublish:
    def test_first_publish(self, store: IndexStore):
        generation = publish_generation(store, {"a.py": "x = 1\n"})
        assert generation == "gen-000001"
        assert store.current_generation() == generation
        assert store.generations() == [generation]
        assert not list(store.index_dir.glob("*.tmp"))

    def test_generations_increase(self, store: IndexStore):
        first = publish_generation(store, {"a.py": "x = 1\n"})
        second = publish_generation(store, {"a.py": "x = 2\n"})
        assert second > first
        assert store.current_generation() == second

    def test_prunes_to_two_generations(self, store: IndexStore):
        for i in range(4):
            publish_generation(store, {"a.py": f"x = {i}\n"})
        assert store.generations() == ["gen-000003", "gen-000004"]
        assert store.current_generation() == "gen-000004"

    def test_begin_removes_stale_staging(self, store: IndexStore):
        publish_generation(store, {"a.py": "x = 1\n"})
        stale = store.begin()
        (stale / "partial").write_text("interrupted")

        staging = store.begin()
        assert not stale.exists() or stale == staging
        assert not (staging / "partial").exists()
        assert store.current_generation() == "gen-000001"

    def test_abort(self, store: IndexStore):
        staging = store.begin()
        store.abort(staging)
        assert not staging.exists()
        assert store.current_generation_or_none() is None


class TestLock:
    def test_second_writer_fails_fast(self, store: IndexStore):
        with store.lock():
            with pytest.raises(IndexLockedError):
                with store.lock():
                    pass

    def test_released_after_exit(self, store: IndexStore):
        with store.lock():
            pass
        with store.lock():
            pass


class TestSnapshot:
    def test_open_published(self, store: IndexStore):
        publish_generation(store, {"a.py": "x = 1\n", "b.md": "# Title\n"})
        snapshot = store.open_snapshot()
        try:
            assert snapshot.generation == "gen-000001"
            assert len(snapshot.graph) == 2
            assert snapshot.manifest.count_files() == 2
        finally:
            snapshot.close()

    def test_inconsistent_generation(self, store: IndexStore):
        publish_generation(store, {"a.py": "x = 1\n"}, extra_keys=["orphan"])
        with pytest.raises(IndexInconsistentError, match="1 extra"):
            store.open_snapshot()

    def test_snapshot_survives_pruning(self, store: IndexStore):
        publish_generation(store, {"a.py": "x = 1\n"})
        snapshot = store.open_snapshot()
        try:
            for i in range(3):
                publish_generation(store, {"a.py": f"x = {i + 2}\n"})
            assert not store.generation_path(snapshot.generation).exists()
            assert snapshot.manifest.count_files() == 1
        finally:
            snapshot.close()

    def test_stats(self, store: IndexStore):
        publish_generation(store, {"a.py": "x = 1\n", "b.md": "# Title\n"})
        stats = store.stats()
        assert stats.files == 2
        assert stats.fragments == 2
        assert stats.model == "minilm"
        assert stats.dimension == 4
        assert stats.tombstones == 0
        assert stats.disk_bytes > 0
        assert stats.generation == "gen-000001"
