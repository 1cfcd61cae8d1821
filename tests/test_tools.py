"""Tests for MCP tools."""

from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from lgrep.config import Config
from lgrep.embeddings import HashEmbedder
from lgrep.errors import IndexNotFoundError
from lgrep.indexer import Indexer, Searcher
from lgrep.tools import build_tools, register_tools


@pytest.fixture
def project(tmp_path):
    """Create a small project to search."""
    (tmp_path / "auth.py").write_text(
        "def validate_token(jwt):\n    # jwt token validation\n    return check_signature(jwt)\n"
    )
    (tmp_path / "db.py").write_text("def connect_pool():\n    return Pool()\n")
    (tmp_path / "README.md").write_text("# Service\n\nDeploy with docker.\n")
    return tmp_path


@pytest.fixture
def config(project, monkeypatch) -> Config:
    monkeypatch.delenv("LGREP_SYNC", raising=False)
    return Config.from_env(project, model="minilm", embedder="hash", workers=1)


@pytest.fixture
def tools(config):
    provider = HashEmbedder()
    indexer = Indexer(config, provider)
    indexer.build()
    searcher = Searcher(config, provider)
    yield build_tools(searcher, indexer)
    searcher.close()


def test_build_tools_names(tools):
    """Test all tools are created."""
    assert set(tools) == {"search", "index_stats", "sync_index"}


def test_search_returns_dicts(tools):
    """Test search returns ranked result dictionaries."""
    results = tools["search"]("token validation logic", limit=2)

    assert len(results) == 2
    assert results[0]["file"] == "auth.py"
    assert results[0]["rank"] == 1
    assert results[0]["start_line"] == 1
    assert results[0]["end_line"] == 3
    assert results[0]["language"] == "python"
    assert "validate_token" in results[0]["content"]


def test_search_with_filters(tools):
    """Test filter arguments are applied."""
    results = tools["search"]("anything", extensions=["md"])
    assert [r["file"] for r in results] == ["README.md"]

    results = tools["search"]("anything", exclude_pattern=r"\.md$", files_only=True)
    assert {r["file"] for r in results} == {"auth.py", "db.py"}


def test_search_with_keyword(tools):
    """Test keyword boost is reflected in final_score."""
    [result] = [
        r for r in tools["search"]("code", keyword="Pool") if r["file"] == "db.py"
    ]
    assert result["final_score"] > result["score"]


def test_search_invalid_limit(tools):
    """Test search rejects a non-positive limit."""
    with pytest.raises(ValueError, match="limit must be >= 1"):
        tools["search"]("anything", limit=0)


def test_index_stats(tools):
    """Test index_stats reports the published index."""
    stats = tools["index_stats"]()
    assert stats["files"] == 3
    assert stats["fragments"] == 3
    assert stats["model"] == "minilm"
    assert stats["dimension"] == 384
    assert stats["generation"] == "gen-000001"


def test_sync_index(tools, project):
    """Test sync_index picks up new files."""
    result = tools["sync_index"]()
    assert result["published"] is False
    assert result["unchanged"] == 3

    (project / "cache.py").write_text("def refresh_cache():\n    pass\n")
    result = tools["sync_index"]()
    assert result["added"] == 1
    assert result["published"] is True
    assert result["generation"] == "gen-000002"

    results = tools["search"]("refresh the cache", limit=1)
    assert results[0]["file"] == "cache.py"


def test_search_syncs_first_when_configured(config, project):
    """Test sync_before_search re-indexes before answering."""
    config = replace(config, sync_before_search=True)
    provider = HashEmbedder()
    indexer = Indexer(config, provider)
    indexer.build()
    searcher = Searcher(config, provider)
    tools = build_tools(searcher, indexer)

    (project / "cache.py").write_text("def refresh_cache():\n    pass\n")
    try:
        results = tools["search"]("refresh the cache", limit=1)
    finally:
        searcher.close()
    assert results[0]["file"] == "cache.py"


def test_search_without_index(config):
    """Test search reports a missing index."""
    searcher = Searcher(config, HashEmbedder())
    tools = build_tools(searcher, Indexer(config, HashEmbedder()))
    with pytest.raises(IndexNotFoundError):
        tools["search"]("anything")


def test_register_tools():
    """Test every tool is registered with the server."""
    mcp = MagicMock()
    register_tools(mcp, MagicMock(), MagicMock())
    registered = [call.args[0].__name__ for call in mcp.tool.return_value.call_args_list]
    assert registered == ["search", "index_stats", "sync_index"]
