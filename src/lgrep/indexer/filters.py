"""Metadata filters applied to search candidates.

Each filter answers one yes/no question about a candidate. A query's filters
are combined by conjunction: a candidate survives only if every filter
accepts it.
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass

from lgrep.errors import ConfigError
from lgrep.indexer.models import Query, SearchResult


def _compile(pattern: str, what: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ConfigError(f"Invalid {what} pattern '{pattern}': {e}") from e


def normalize_extensions(extensions: Iterable[str]) -> frozenset[str]:
    """Lower-case and strip leading dots: ``[".RS", "py"]`` -> ``{"rs", "py"}``."""
    return frozenset(ext.strip().lstrip(".").lower() for ext in extensions if ext.strip())


@dataclass(frozen=True)
class ExtensionFilter:
    extensions: frozenset[str]

    def matches(self, result: SearchResult) -> bool:
        return result.fragment.extension in self.extensions


@dataclass(frozen=True)
class LanguageFilter:
    languages: frozenset[str]

    def matches(self, result: SearchResult) -> bool:
        language = result.fragment.language
        return language is not None and language.lower() in self.languages


@dataclass(frozen=True)
class PathIncludeFilter:
    pattern: re.Pattern

    def matches(self, result: SearchResult) -> bool:
        return self.pattern.search(result.fragment.path) is not None


@dataclass(frozen=True)
class PathExcludeFilter:
    pattern: re.Pattern

    def matches(self, result: SearchResult) -> bool:
        return self.pattern.search(result.fragment.path) is None


@dataclass(frozen=True)
class MinScoreFilter:
    """Similarity floor; applies to the raw similarity, not the boosted score."""

    min_score: float

    def matches(self, result: SearchResult) -> bool:
        return result.score >= self.min_score


Filter = ExtensionFilter | LanguageFilter | PathIncludeFilter | PathExcludeFilter | MinScoreFilter


def build_filters(query: Query) -> list[Filter]:
    """Translate the filter fields of a query into filter objects.

    Raises:
        ConfigError: if a path pattern is not a valid regular expression.
    """
    filters: list[Filter] = []
    if query.extensions:
        filters.append(ExtensionFilter(normalize_extensions(query.extensions)))
    if query.languages:
        filters.append(
            LanguageFilter(frozenset(lang.strip().lower() for lang in query.languages))
        )
    if query.path_pattern:
        filters.append(PathIncludeFilter(_compile(query.path_pattern, "path")))
    if query.exclude_pattern:
        filters.append(PathExcludeFilter(_compile(query.exclude_pattern, "exclude")))
    if query.min_score is not None:
        filters.append(MinScoreFilter(query.min_score))
    return filters


def matches_all(filters: Iterable[Filter], result: SearchResult) -> bool:
    return all(f.matches(result) for f in filters)
