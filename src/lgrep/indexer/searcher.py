"""Query engine: semantic k-NN search with metadata filters and keyword boost."""

import logging
import re
import threading

from lgrep.config import Config
from lgrep.embeddings import EmbeddingProvider, check_vectors, get_provider
from lgrep.errors import IndexInconsistentError, ModelMismatchError
from lgrep.indexer.filters import Filter, build_filters, matches_all
from lgrep.indexer.graph import HNSWGraph
from lgrep.indexer.models import IndexStats, Query, SearchResult
from lgrep.indexer.store import IndexStore, Snapshot

logger = logging.getLogger(__name__)

# Candidates requested from the graph: max(k * factor, k + extra)
OVERSAMPLE_FACTOR = 4
OVERSAMPLE_EXTRA = 16

# Hybrid ranking: final = similarity + weight * signal
KEYWORD_BOOST_WEIGHT = 0.1
KEYWORD_MATCH_CAP = 5


def compile_keyword(keyword: str) -> re.Pattern:
    """Case-insensitive keyword pattern; invalid regexes match literally."""
    try:
        return re.compile(keyword, re.IGNORECASE)
    except re.error:
        return re.compile(re.escape(keyword), re.IGNORECASE)


def keyword_signal(text: str, pattern: re.Pattern) -> float:
    """
    Keyword signal in [0, 1].

    0 without a match; otherwise 0.5 plus up to 0.5 more as the number of
    matches grows to KEYWORD_MATCH_CAP.
    """
    count = 0
    for _ in pattern.finditer(text):
        count += 1
        if count >= KEYWORD_MATCH_CAP:
            break
    if count == 0:
        return 0.0
    return 0.5 + 0.5 * min(count, KEYWORD_MATCH_CAP) / KEYWORD_MATCH_CAP


def _sort_key(result: SearchResult) -> tuple[float, float, str]:
    return (-result.final_score, -result.score, result.fragment.id)


class Searcher:
    """
    Read side of the index.

    Holds the most recently loaded generation and reloads it whenever a sync
    publishes a new one. A query works on a single generation from start to
    finish, so it never sees a half-applied sync.
    """

    def __init__(self, config: Config, provider: EmbeddingProvider | None = None):
        self.config = config
        self.store = IndexStore(config.index_dir)
        self.provider = provider or get_provider(config)
        self._snapshot: Snapshot | None = None
        self._lock = threading.Lock()

    def snapshot(self) -> Snapshot:
        """The published generation, loading it if it changed since last use."""
        generation = self.store.current_generation()
        with self._lock:
            if self._snapshot is None or self._snapshot.generation != generation:
                logger.debug("Loading index generation %s", generation)
                # The old snapshot may still serve in-flight queries; it is
                # released when the last reference goes away
                self._snapshot = self.store.open_snapshot(generation)
            return self._snapshot

    def close(self) -> None:
        with self._lock:
            if self._snapshot is not None:
                self._snapshot.close()
                self._snapshot = None

    def stats(self) -> IndexStats:
        return self.store.stats(self.snapshot())

    def _check_model(self, graph: HNSWGraph) -> None:
        model = self.config.model
        if graph.model != model.name or graph.dimension != model.dimension:
            raise ModelMismatchError(
                graph.model, graph.dimension, model.name, model.dimension
            )

    def search(self, query: Query) -> list[SearchResult]:
        """
        Find the fragments most similar to ``query.text``.

        Raises:
            IndexNotFoundError: the project has not been indexed.
            IndexCorruptedError: the published generation cannot be read.
            ModelMismatchError: the configured model differs from the index model.
            ConfigError: a path filter is not a valid regular expression.
        """
        filters = build_filters(query)
        if query.k <= 0:
            return []

        snapshot = self.snapshot()
        graph = snapshot.graph
        self._check_model(graph)

        model = self.config.model
        [vector] = check_vectors(
            self.provider.embed([query.text], model.name),
            1,
            model.dimension,
            "embedding provider",
        )

        live = graph.live_count
        if live == 0:
            return []

        keyword = compile_keyword(query.keyword) if query.keyword else None
        candidates = min(max(query.k * OVERSAMPLE_FACTOR, query.k + OVERSAMPLE_EXTRA), live)
        while True:
            hits = graph.search(vector, candidates, ef=candidates)
            results = self._rank(snapshot, hits, filters, keyword, query.files_only)
            if len(results) >= query.k or candidates >= live:
                break
            candidates = min(candidates * 2, live)
            logger.debug("Only %d results after filtering, widening to %d", len(results), candidates)

        results = results[: query.k]
        for rank, result in enumerate(results, start=1):
            result.rank = rank
        return results

    def _rank(
        self,
        snapshot: Snapshot,
        hits: list[tuple[str, float]],
        filters: list[Filter],
        keyword: re.Pattern | None,
        files_only: bool,
    ) -> list[SearchResult]:
        fragments = snapshot.manifest.get_fragments(key for key, _ in hits)
        results: list[SearchResult] = []
        for key, similarity in hits:
            fragment = fragments.get(key)
            if fragment is None:
                raise IndexInconsistentError(
                    f"Fragment {key} is in the vector index but not in the manifest"
                )
            signal = keyword_signal(fragment.text, keyword) if keyword else 0.0
            result = SearchResult(
                fragment=fragment,
                score=similarity,
                final_score=similarity + KEYWORD_BOOST_WEIGHT * signal,
                keyword_signal=signal,
            )
            if matches_all(filters, result):
                results.append(result)

        results.sort(key=_sort_key)
        if files_only:
            best: dict[str, SearchResult] = {}
            for result in results:
                best.setdefault(result.fragment.path, result)
            results = sorted(best.values(), key=_sort_key)
        return results
