"""Hierarchical proximity graph (HNSW) for approximate nearest-neighbor search.

Nodes live in an arena addressed by dense integer ids. Each node has a key
(fragment id), an L2-normalized float32 vector stored as a row of one matrix,
a maximum layer, and one neighbor list per layer. Similarity is the dot
product of normalized vectors (cosine similarity).

Deletion is logical: a tombstoned node is never returned by ``search`` but
stays in other nodes' neighbor lists as a traversal waypoint until
``compacted`` rebuilds the graph from live nodes only.
"""

import hashlib
import heapq
import logging
import math
import os
import zipfile
from collections import deque
from collections.abc import Iterable, Sequence
from pathlib import Path

import numpy as np
import yaml

from lgrep.errors import IndexCorruptedError, IndexNotFoundError, ModelMismatchError

logger = logging.getLogger(__name__)

GRAPH_FILE = "graph.npz"
META_FILE = "index.yaml"
FORMAT_VERSION = 1

# Construction parameters
DEFAULT_M = 16
DEFAULT_EF_CONSTRUCTION = 128
DEFAULT_EF_SEARCH = 64
MAX_LEVEL = 16

# Compact once tombstones exceed this fraction of live nodes
DEFAULT_COMPACTION_RATIO = 0.25


def normalize(vector: Sequence[float] | np.ndarray) -> np.ndarray:
    """Return ``vector`` as a unit-length float32 array (zero stays zero)."""
    v = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(v))
    if norm > 0.0:
        v = v / norm
    return v.astype(np.float32, copy=False)


class HNSWGraph:
    """Approximate k-NN index over fragment vectors.

    Thread Safety:
        Not synchronized. The sync engine is the only writer; readers work on
        their own instance loaded from a published generation.
    """

    def __init__(
        self,
        model: str,
        dimension: int,
        m: int = DEFAULT_M,
        ef_construction: int = DEFAULT_EF_CONSTRUCTION,
        ef_search: int = DEFAULT_EF_SEARCH,
    ):
        if dimension <= 0:
            raise ValueError(f"Dimension must be positive, got {dimension}")
        if m < 2:
            raise ValueError(f"m must be >= 2, got {m}")

        self.model = model
        self.dimension = dimension
        self.m = m
        self.ef_construction = max(ef_construction, m)
        self.ef_search = ef_search
        self._level_mult = 1.0 / math.log(m)

        self._data = np.zeros((0, dimension), dtype=np.float32)
        self._count = 0
        self._keys: list[str] = []
        self._levels: list[int] = []
        self._links: list[list[list[int]]] = []
        self._indegree0: list[int] = []
        self._tombstones: set[int] = set()
        self._key_to_node: dict[str, int] = {}
        self._entry: int | None = None
        self._max_level = -1

    # Introspection

    def __len__(self) -> int:
        return len(self._key_to_node)

    def __contains__(self, key: object) -> bool:
        return key in self._key_to_node

    @property
    def live_count(self) -> int:
        return len(self._key_to_node)

    @property
    def tombstone_count(self) -> int:
        return len(self._tombstones)

    @property
    def node_count(self) -> int:
        return self._count

    @property
    def entry_point(self) -> int | None:
        return self._entry

    @property
    def max_level(self) -> int:
        return self._max_level

    def keys(self) -> set[str]:
        """Keys of all live (non-tombstoned) nodes."""
        return set(self._key_to_node)

    def get_vector(self, key: str) -> np.ndarray | None:
        node = self._key_to_node.get(key)
        if node is None:
            return None
        return self._data[node].copy()

    def neighbors(self, key: str, layer: int = 0) -> list[str]:
        """Keys listed as neighbors of ``key`` at ``layer`` (tombstones included)."""
        node = self._key_to_node[key]
        if layer > self._levels[node]:
            return []
        return [self._keys[n] for n in self._links[node][layer]]

    # Internals

    def _check_vector(self, vector: Sequence[float] | np.ndarray) -> np.ndarray:
        v = normalize(vector)
        if v.shape[0] != self.dimension:
            raise ModelMismatchError(self.model, self.dimension, None, v.shape[0])
        return v

    def _assign_level(self, key: str) -> int:
        # Derived from the key so the graph shape is reproducible
        digest = hashlib.sha256(key.encode("utf-8")).digest()
        u = int.from_bytes(digest[:8], "big") / 2**64
        return min(int(-math.log(1.0 - u) * self._level_mult), MAX_LEVEL)

    def _cap(self, layer: int) -> int:
        return self.m * 2 if layer == 0 else self.m

    def _similarities(self, query: np.ndarray, nodes: Sequence[int]) -> np.ndarray:
        return self._data[list(nodes)] @ query

    def _append(self, key: str, vector: np.ndarray, level: int) -> int:
        if self._count == self._data.shape[0]:
            grown = np.zeros((max(16, self._count * 2), self.dimension), dtype=np.float32)
            grown[: self._count] = self._data[: self._count]
            self._data = grown
        node = self._count
        self._data[node] = vector
        self._count += 1
        self._keys.append(key)
        self._levels.append(level)
        self._links.append([[] for _ in range(level + 1)])
        self._indegree0.append(0)
        return node

    def _search_layer(
        self,
        query: np.ndarray,
        entry_points: Sequence[int],
        ef: int,
        layer: int,
    ) -> list[tuple[float, int]]:
        """Beam search on one layer; returns (similarity, node), best first."""
        visited = set(entry_points)
        sims = self._similarities(query, entry_points).tolist()
        candidates = [(-s, n) for s, n in zip(sims, entry_points)]
        heapq.heapify(candidates)
        results = [(s, n) for s, n in zip(sims, entry_points)]
        heapq.heapify(results)
        while len(results) > ef:
            heapq.heappop(results)

        while candidates:
            neg_sim, current = heapq.heappop(candidates)
            if len(results) >= ef and -neg_sim < results[0][0]:
                break
            fresh = [n for n in self._links[current][layer] if n not in visited]
            if not fresh:
                continue
            visited.update(fresh)
            for sim, node in zip(self._similarities(query, fresh).tolist(), fresh):
                if len(results) < ef or sim > results[0][0]:
                    heapq.heappush(candidates, (-sim, node))
                    heapq.heappush(results, (sim, node))
                    if len(results) > ef:
                        heapq.heappop(results)

        return sorted(results, key=lambda item: (-item[0], item[1]))

    def _descend(self, query: np.ndarray, target_layer: int) -> list[int]:
        """Greedy walk from the entry point down to ``target_layer``."""
        assert self._entry is not None
        entry = [self._entry]
        for layer in range(self._max_level, target_layer, -1):
            entry = [self._search_layer(query, entry, 1, layer)[0][1]]
        return entry

    def _add_edge(self, source: int, target: int, layer: int) -> None:
        self._links[source][layer].append(target)
        if layer == 0:
            self._indegree0[target] += 1

    def _prune(self, node: int, layer: int) -> None:
        """Shrink an over-full neighbor list back to its nearest neighbors.

        At layer 0 a live neighbor whose only incoming edge is this one is
        kept, swapping out the farthest kept neighbor that has other incoming
        edges, or overflowing the cap when there is none.
        """
        links = self._links[node][layer]
        cap = self._cap(layer)
        if len(links) <= cap:
            return

        sims = self._similarities(self._data[node], links).tolist()
        order = sorted(range(len(links)), key=lambda i: (-sims[i], links[i]))
        keep = [links[i] for i in order[:cap]]
        drop = [links[i] for i in order[cap:]]

        if layer == 0:
            orphans = [
                n for n in drop if self._indegree0[n] <= 1 and n not in self._tombstones
            ]
            if orphans:
                orphan_set = set(orphans)
                drop = [n for n in drop if n not in orphan_set]
                for orphan in orphans:
                    for j in range(len(keep) - 1, -1, -1):
                        candidate = keep[j]
                        if candidate not in orphan_set and self._indegree0[candidate] > 1:
                            keep[j] = orphan
                            drop.append(candidate)
                            break
                    else:
                        keep.append(orphan)
            for n in drop:
                self._indegree0[n] -= 1

        self._links[node][layer] = keep

    # Mutation

    def insert(self, key: str, vector: Sequence[float] | np.ndarray) -> int:
        """Insert a vector under ``key``. A live node with the same key is tombstoned."""
        v = self._check_vector(vector)
        if key in self._key_to_node:
            self.tombstone(key)

        level = self._assign_level(key)
        node = self._append(key, v, level)
        self._key_to_node[key] = node

        if self._entry is None:
            self._entry = node
            self._max_level = level
            return node

        entry = self._descend(v, level) if level < self._max_level else [self._entry]
        for layer in range(min(level, self._max_level), -1, -1):
            found = self._search_layer(v, entry, self.ef_construction, layer)
            for _, neighbor in found[: self._cap(layer)]:
                self._add_edge(node, neighbor, layer)
                self._add_edge(neighbor, node, layer)
                self._prune(neighbor, layer)
            entry = [n for _, n in found]

        if level > self._max_level:
            self._entry = node
            self._max_level = level
        return node

    def insert_many(self, items: Iterable[tuple[str, Sequence[float] | np.ndarray]]) -> int:
        count = 0
        for key, vector in items:
            self.insert(key, vector)
            count += 1
        return count

    def tombstone(self, key: str) -> bool:
        """Logically delete ``key``. Returns False if it was not live."""
        node = self._key_to_node.pop(key, None)
        if node is None:
            return False
        self._tombstones.add(node)
        return True

    def needs_compaction(self, ratio: float = DEFAULT_COMPACTION_RATIO) -> bool:
        return bool(self._tombstones) and len(self._tombstones) > ratio * self.live_count

    def compacted(self) -> "HNSWGraph":
        """Return a new graph holding only live nodes, inserted in arena order."""
        graph = HNSWGraph(
            self.model,
            self.dimension,
            m=self.m,
            ef_construction=self.ef_construction,
            ef_search=self.ef_search,
        )
        for node in range(self._count):
            if node not in self._tombstones:
                graph.insert(self._keys[node], self._data[node])
        logger.info(
            "Compacted graph: %d nodes -> %d (%d tombstones dropped)",
            self._count,
            graph.node_count,
            len(self._tombstones),
        )
        return graph

    def _reachable(self, start: Iterable[int], seen: set[int]) -> None:
        queue = deque(n for n in start if n not in seen)
        seen.update(queue)
        while queue:
            current = queue.popleft()
            for neighbor in self._links[current][0]:
                if neighbor not in seen:
                    seen.add(neighbor)
                    queue.append(neighbor)

    def unreachable(self) -> list[int]:
        """Live nodes that cannot be reached from the entry point at layer 0."""
        if self._entry is None:
            return []
        seen: set[int] = set()
        self._reachable([self._entry], seen)
        return [
            n for n in range(self._count) if n not in seen and n not in self._tombstones
        ]

    def ensure_connected(self) -> int:
        """Link every unreachable live node from its nearest reachable node.

        Returns the number of nodes that had to be re-attached.
        """
        if self._entry is None:
            return 0
        seen: set[int] = set()
        self._reachable([self._entry], seen)
        repaired = 0
        for node in range(self._count):
            if node in seen or node in self._tombstones:
                continue
            found = self._search_layer(
                self._data[node], [self._entry], self.ef_construction, 0
            )
            anchor = next(n for _, n in found if n != node)
            self._add_edge(anchor, node, 0)
            self._reachable([node], seen)
            repaired += 1
        if repaired:
            logger.debug("Re-attached %d unreachable nodes", repaired)
        return repaired

    # Query

    def search(
        self,
        vector: Sequence[float] | np.ndarray,
        k: int,
        ef: int | None = None,
    ) -> list[tuple[str, float]]:
        """Return up to ``k`` live (key, similarity) pairs, most similar first."""
        query = self._check_vector(vector)
        if self._entry is None or k <= 0 or not self._key_to_node:
            return []

        if k >= self.live_count:
            return self._scan(query, k)

        beam = max(ef or self.ef_search, k)
        # Tombstones occupy beam slots without being returned
        beam += min(len(self._tombstones), beam)

        entry = self._descend(query, 0)
        # Every live node is reachable from the entry point at layer 0
        if self._entry not in entry:
            entry.append(self._entry)
        found = self._search_layer(query, entry, beam, 0)
        hits = [
            (self._keys[node], sim) for sim, node in found if node not in self._tombstones
        ]
        hits.sort(key=lambda hit: (-hit[1], hit[0]))
        return hits[:k]

    def _scan(self, query: np.ndarray, k: int) -> list[tuple[str, float]]:
        """Exact similarity against every live node."""
        nodes = sorted(self._key_to_node.values())
        sims = self._similarities(query, nodes).tolist()
        hits = [(self._keys[node], sim) for node, sim in zip(nodes, sims)]
        hits.sort(key=lambda hit: (-hit[1], hit[0]))
        return hits[:k]

    # Persistence

    def metadata(self) -> dict:
        return {
            "format_version": FORMAT_VERSION,
            "model": self.model,
            "dimension": self.dimension,
            "m": self.m,
            "ef_construction": self.ef_construction,
            "ef_search": self.ef_search,
            "entry_point": self._entry,
            "max_level": self._max_level,
            "nodes": self._count,
            "live": self.live_count,
            "tombstones": self.tombstone_count,
        }

    def save(self, directory: Path) -> None:
        """Write ``graph.npz`` and ``index.yaml`` into ``directory``."""
        directory.mkdir(parents=True, exist_ok=True)
        arrays: dict[str, np.ndarray] = {
            "vectors": self._data[: self._count],
            "levels": np.asarray(self._levels, dtype=np.int32),
            "keys": np.asarray(self._keys, dtype=np.str_),
            "tombstones": np.asarray(sorted(self._tombstones), dtype=np.int64),
        }
        for layer in range(self._max_level + 1):
            offsets = np.zeros(self._count + 1, dtype=np.int64)
            targets: list[int] = []
            for node in range(self._count):
                if layer <= self._levels[node]:
                    targets.extend(self._links[node][layer])
                offsets[node + 1] = len(targets)
            arrays[f"offsets_{layer}"] = offsets
            arrays[f"targets_{layer}"] = np.asarray(targets, dtype=np.int64)

        with open(directory / GRAPH_FILE, "wb") as f:
            np.savez(f, **arrays)
            f.flush()
            os.fsync(f.fileno())
        with open(directory / META_FILE, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.metadata(), f, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())

    @staticmethod
    def read_metadata(directory: Path) -> dict:
        """Read and validate ``index.yaml`` without loading vectors."""
        meta_path = directory / META_FILE
        if not meta_path.exists():
            raise IndexNotFoundError(str(directory))
        try:
            meta = yaml.safe_load(meta_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
            raise IndexCorruptedError(f"Cannot read {meta_path}: {e}") from e
        required = ("model", "dimension", "m", "ef_construction", "ef_search", "max_level")
        if not isinstance(meta, dict) or any(key not in meta for key in required):
            raise IndexCorruptedError(f"Incomplete index metadata in {meta_path}")
        if meta.get("format_version") != FORMAT_VERSION:
            raise IndexCorruptedError(
                f"Unsupported index format {meta.get('format_version')!r} in {meta_path}"
            )
        return meta

    @classmethod
    def load(cls, directory: Path) -> "HNSWGraph":
        """Load a graph saved with ``save``.

        Raises:
            IndexNotFoundError: if the files do not exist.
            IndexCorruptedError: if they exist but are truncated or malformed.
        """
        meta = cls.read_metadata(directory)
        graph_path = directory / GRAPH_FILE
        if not graph_path.exists():
            raise IndexCorruptedError(f"Missing {graph_path}")

        graph = cls(
            meta["model"],
            int(meta["dimension"]),
            m=int(meta["m"]),
            ef_construction=int(meta["ef_construction"]),
            ef_search=int(meta["ef_search"]),
        )
        max_level = int(meta["max_level"])

        try:
            with np.load(graph_path, allow_pickle=False) as data:
                vectors = np.asarray(data["vectors"], dtype=np.float32)
                levels = data["levels"].astype(int).tolist()
                keys = [str(key) for key in data["keys"].tolist()]
                tombstones = set(data["tombstones"].astype(int).tolist())
                layers = [
                    (data[f"offsets_{layer}"], data[f"targets_{layer}"])
                    for layer in range(max_level + 1)
                ]
        except (OSError, ValueError, KeyError, EOFError, zipfile.BadZipFile) as e:
            raise IndexCorruptedError(f"Cannot read {graph_path}: {e}") from e

        count = len(keys)
        if vectors.shape != (count, graph.dimension) or len(levels) != count:
            raise IndexCorruptedError(f"Inconsistent array shapes in {graph_path}")
        if any(n < 0 or n >= count for n in tombstones):
            raise IndexCorruptedError(f"Tombstone ids out of range in {graph_path}")

        graph._data = vectors.copy()
        graph._count = count
        graph._keys = keys
        graph._levels = levels
        graph._links = [[[] for _ in range(level + 1)] for level in levels]
        graph._indegree0 = [0] * count
        graph._tombstones = tombstones
        graph._max_level = max_level

        for layer, (offsets, targets) in enumerate(layers):
            if len(offsets) != count + 1:
                raise IndexCorruptedError(f"Bad neighbor offsets for layer {layer}")
            targets_list = targets.astype(int).tolist()
            for node in range(count):
                start, end = int(offsets[node]), int(offsets[node + 1])
                if start == end:
                    continue
                if layer > levels[node]:
                    raise IndexCorruptedError(f"Node {node} has links above its level")
                neighbors = targets_list[start:end]
                if any(n < 0 or n >= count for n in neighbors):
                    raise IndexCorruptedError(f"Dangling neighbor ids at node {node}")
                graph._links[node][layer] = neighbors
                if layer == 0:
                    for n in neighbors:
                        graph._indegree0[n] += 1

        for node, key in enumerate(keys):
            if node in tombstones:
                continue
            if key in graph._key_to_node:
                raise IndexCorruptedError(f"Duplicate live key {key} in {graph_path}")
            graph._key_to_node[key] = node

        entry = meta.get("entry_point")
        if count and (entry is None or not 0 <= int(entry) < count):
            raise IndexCorruptedError(f"Invalid entry point {entry!r} in index metadata")
        graph._entry = int(entry) if count else None
        return graph
