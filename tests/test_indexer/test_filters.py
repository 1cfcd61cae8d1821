"""Tests for search result filters."""

import pytest

from lgrep.errors import ConfigError
from lgrep.indexer.filters import (
    ExtensionFilter,
    LanguageFilter,
    MinScoreFilter,
    PathExcludeFilter,
    PathIncludeFilter,
    build_filters,
    matches_all,
    normalize_extensions,
)
from lgrep.indexer.models import Fragment, Query, SearchResult


def make_result(path: str, language: str | None = "python", score: float = 0.5) -> SearchResult:
    fragment = Fragment(
        id=f"id-{path}",
        path=path,
        text="pass\n",
        start_byte=0,
        end_byte=5,
        start_line=1,
        end_line=1,
        content_hash="h",
        language=language,
    )
    return SearchResult(fragment=fragment, score=score, final_score=score + 0.05)


class TestNormalizeExtensions:
    def test_strips_dots_and_case(self):
        assert normalize_extensions([".RS", "py", " .Md ", ""]) == {"rs", "py", "md"}


class TestFilters:
    def test_extension(self):
        f = ExtensionFilter(frozenset({"rs"}))
        assert f.matches(make_result("src/main.rs"))
        assert not f.matches(make_result("src/main.py"))
        assert not f.matches(make_result("Makefile"))

    def test_language(self):
        f = LanguageFilter(frozenset({"rust"}))
        assert f.matches(make_result("a.rs", language="rust"))
        assert not f.matches(make_result("a.py", language="python"))
        assert not f.matches(make_result("a.unknown", language=None))

    def test_path_include_is_unanchored(self):
        query = Query(text="q", path_pattern="auth/")
        [f] = build_filters(query)
        assert isinstance(f, PathIncludeFilter)
        assert f.matches(make_result("src/auth/token.py"))
        assert not f.matches(make_result("src/db/pool.py"))

    def test_path_exclude(self):
        query = Query(text="q", exclude_pattern=r"^tests/")
        [f] = build_filters(query)
        assert isinstance(f, PathExcludeFilter)
        assert f.matches(make_result("src/a.py"))
        assert not f.matches(make_result("tests/test_a.py"))

    def test_min_score_uses_raw_similarity(self):
        f = MinScoreFilter(0.52)
        # final_score is 0.55 but similarity is only 0.5
        assert not f.matches(make_result("a.py", score=0.5))
        assert f.matches(make_result("a.py", score=0.52))


class TestBuildFilters:
    def test_empty_query(self):
        assert build_filters(Query(text="q")) == []

    def test_all_fields(self):
        query = Query(
            text="q",
            extensions=[".py"],
            languages=["Python"],
            path_pattern="src",
            exclude_pattern="vendor",
            min_score=0.1,
        )
        filters = build_filters(query)
        assert [type(f) for f in filters] == [
            ExtensionFilter,
            LanguageFilter,
            PathIncludeFilter,
            PathExcludeFilter,
            MinScoreFilter,
        ]
        assert matches_all(filters, make_result("src/a.py", score=0.2))
        assert not matches_all(filters, make_result("src/vendor/a.py", score=0.2))
        assert not matches_all(filters, make_result("src/a.py", score=0.05))

    def test_min_score_zero_is_kept(self):
        [f] = build_filters(Query(text="q", min_score=0.0))
        assert isinstance(f, MinScoreFilter)

    @pytest.mark.parametrize("field", ["path_pattern", "exclude_pattern"])
    def test_invalid_regex(self, field: str):
        query = Query(text="q", **{field: "([unclosed"})
        with pytest.raises(ConfigError, match="Invalid"):
            build_filters(query)

    def test_matches_all_with_no_filters(self):
        assert matches_all([], make_result("anything.txt"))
