"""On-disk layout of the index directory.

::

    .lgrep/
        CURRENT          name of the published generation
        lock             advisory lock held by the single writer
        history.json     query history
        gen-000007/      previous generation (kept for in-flight readers)
        gen-000008/      published generation
            manifest.db
            graph.npz
            index.yaml

A sync builds the next generation in ``gen-NNNNNN.tmp``, renames it into
place and then atomically replaces ``CURRENT``. Readers only ever see a
complete generation.
"""

import fcntl
import logging
import os
import re
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from lgrep.config import MODELS
from lgrep.errors import (
    IndexCorruptedError,
    IndexInconsistentError,
    IndexLockedError,
    IndexNotFoundError,
)
from lgrep.indexer.graph import HNSWGraph
from lgrep.indexer.manifest import MANIFEST_FILE, Manifest
from lgrep.indexer.models import IndexStats

logger = logging.getLogger(__name__)

CURRENT_FILE = "CURRENT"
LOCK_FILE = "lock"
GENERATION_PREFIX = "gen-"
TMP_SUFFIX = ".tmp"

_GENERATION_RE = re.compile(r"^gen-(\d{6,})$")


def generation_name(number: int) -> str:
    return f"{GENERATION_PREFIX}{number:06d}"


def _fsync_dir(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


@dataclass
class Snapshot:
    """A loaded, immutable index generation."""

    generation: str
    graph: HNSWGraph
    manifest: Manifest

    def close(self) -> None:
        self.manifest.close()


class IndexStore:
    """Generation management for one ``.lgrep`` directory."""

    def __init__(self, index_dir: Path):
        self.index_dir = index_dir

    @property
    def lock_path(self) -> Path:
        return self.index_dir / LOCK_FILE

    def exists(self) -> bool:
        return self.index_dir.is_dir()

    def generation_path(self, generation: str) -> Path:
        return self.index_dir / generation

    def current_generation(self) -> str:
        """Name of the published generation.

        Raises:
            IndexNotFoundError: if nothing was ever published here.
            IndexCorruptedError: if generations exist without a valid ``CURRENT``.
        """
        if not self.exists():
            raise IndexNotFoundError(str(self.index_dir))
        current = self.index_dir / CURRENT_FILE
        try:
            generation = current.read_text(encoding="utf-8").strip()
        except FileNotFoundError as e:
            # Only a lock file or history: a first sync never completed
            if not self.generations():
                raise IndexNotFoundError(str(self.index_dir)) from e
            raise IndexCorruptedError(
                f"{self.index_dir} has no {CURRENT_FILE} file; rebuild with `lgrep index --force`"
            ) from e
        except (OSError, UnicodeDecodeError) as e:
            raise IndexCorruptedError(f"Cannot read {current}: {e}") from e
        if not _GENERATION_RE.match(generation):
            raise IndexCorruptedError(f"Invalid generation name {generation!r} in {current}")
        if not self.generation_path(generation).is_dir():
            raise IndexCorruptedError(f"Published generation {generation} is missing")
        return generation

    def current_generation_or_none(self) -> str | None:
        """Like ``current_generation`` but returns None on any failure."""
        try:
            return self.current_generation()
        except (IndexNotFoundError, IndexCorruptedError):
            return None

    def generations(self) -> list[str]:
        """Names of all complete generation directories, oldest first."""
        if not self.exists():
            return []
        names = [p.name for p in self.index_dir.iterdir() if p.is_dir()]
        return sorted(name for name in names if _GENERATION_RE.match(name))

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the exclusive writer lock, failing fast if it is taken."""
        self.index_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as e:
                raise IndexLockedError(str(self.lock_path)) from e
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def begin(self) -> Path:
        """Create a fresh staging directory for the next generation.

        Must be called with the writer lock held. Leftover staging
        directories from interrupted syncs are removed.
        """
        self.index_dir.mkdir(parents=True, exist_ok=True)
        for stale in self.index_dir.glob(f"{GENERATION_PREFIX}*{TMP_SUFFIX}"):
            logger.info("Removing stale staging directory %s", stale.name)
            shutil.rmtree(stale, ignore_errors=True)

        numbers = [int(_GENERATION_RE.match(name).group(1)) for name in self.generations()]
        staging = self.index_dir / (generation_name(max(numbers, default=0) + 1) + TMP_SUFFIX)
        staging.mkdir()
        return staging

    def abort(self, staging: Path) -> None:
        shutil.rmtree(staging, ignore_errors=True)

    def publish(self, staging: Path) -> str:
        """Atomically make ``staging`` the published generation."""
        generation = staging.name[: -len(TMP_SUFFIX)]
        final = self.generation_path(generation)
        _fsync_dir(staging)
        os.rename(staging, final)

        current_tmp = self.index_dir / (CURRENT_FILE + TMP_SUFFIX)
        with open(current_tmp, "w", encoding="utf-8") as f:
            f.write(generation + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(current_tmp, self.index_dir / CURRENT_FILE)
        _fsync_dir(self.index_dir)

        logger.info("Published generation %s", generation)
        self.prune(keep=2)
        return generation

    def prune(self, keep: int = 2) -> list[str]:
        """Delete all but the newest ``keep`` generations (never the current one)."""
        current = self.current_generation_or_none()
        generations = self.generations()
        removed = []
        for name in generations[:-keep] if keep else generations:
            if name == current:
                continue
            shutil.rmtree(self.generation_path(name), ignore_errors=True)
            removed.append(name)
        if removed:
            logger.debug("Pruned generations: %s", ", ".join(removed))
        return removed

    def open_snapshot(self, generation: str | None = None) -> Snapshot:
        """Load a generation (the published one by default).

        Raises:
            IndexNotFoundError: the project was never indexed.
            IndexCorruptedError: files are missing or unreadable.
            IndexInconsistentError: manifest and graph disagree.
        """
        generation = generation or self.current_generation()
        path = self.generation_path(generation)
        graph = HNSWGraph.load(path)
        manifest = Manifest(path / MANIFEST_FILE, read_only=True)
        try:
            fragment_ids = manifest.fragment_ids()
            live = graph.keys()
            if fragment_ids != live:
                raise IndexInconsistentError(
                    f"Generation {generation}: manifest has {len(fragment_ids)} fragments, "
                    f"vector index has {len(live)} live entries "
                    f"({len(fragment_ids - live)} missing, {len(live - fragment_ids)} extra)"
                )
        except Exception:
            manifest.close()
            raise
        return Snapshot(generation=generation, graph=graph, manifest=manifest)

    def disk_bytes(self) -> int:
        """Total size of the index directory."""
        total = 0
        for dirpath, _dirnames, filenames in os.walk(self.index_dir):
            for name in filenames:
                try:
                    total += os.path.getsize(os.path.join(dirpath, name))
                except OSError:
                    continue
        return total

    def stats(self, snapshot: Snapshot | None = None) -> IndexStats:
        """Summarize a generation (the published one by default)."""
        owned = snapshot is None
        snapshot = snapshot or self.open_snapshot()
        try:
            graph = snapshot.graph
            model = MODELS.get(graph.model)
            return IndexStats(
                files=snapshot.manifest.count_files(),
                fragments=graph.live_count,
                model=graph.model,
                model_name=model.model_name if model else graph.model,
                dimension=graph.dimension,
                tombstones=graph.tombstone_count,
                disk_bytes=self.disk_bytes(),
                generation=snapshot.generation,
            )
        finally:
            if owned:
                snapshot.close()
