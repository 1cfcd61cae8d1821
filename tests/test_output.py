"""Tests for result rendering."""

import json

from lgrep.indexer.models import Fragment, IndexStats, SearchResult
from lgrep.output import (
    format_results,
    format_results_json,
    format_size,
    format_stats,
    result_to_dict,
    stats_to_dict,
)


def make_result(text: str = "def foo():\n    return 1\n", start_line: int = 10, rank: int = 1):
    end_line = start_line + max(text.count("\n"), 1) - 1
    fragment = Fragment(
        id="abc",
        path="src/foo.py",
        text=text,
        start_byte=0,
        end_byte=len(text),
        start_line=start_line,
        end_line=end_line,
        content_hash="h",
        language="python",
    )
    return SearchResult(fragment=fragment, score=0.8734, final_score=0.9334, rank=rank)


STATS = IndexStats(
    files=3,
    fragments=12,
    model="minilm",
    model_name="sentence-transformers/all-MiniLM-L6-v2",
    dimension=384,
    tombstones=4,
    disk_bytes=2048,
    generation="gen-000002",
)


class TestFormatResults:
    def test_header_line(self):
        output = format_results([make_result()])
        assert "[1] src/foo.py:10-11 (87%)" in output

    def test_single_line_range(self):
        output = format_results([make_result(text="x = 1\n", start_line=5)])
        assert "src/foo.py:5 (87%)" in output

    def test_content_is_numbered(self):
        output = format_results([make_result()], show_content=True)
        assert "  10 def foo():" in output
        assert "  11     return 1" in output

    def test_content_is_truncated(self):
        text = "".join(f"line {i}\n" for i in range(20))
        output = format_results([make_result(text=text, start_line=1)], show_content=True)
        assert "line 14" in output
        assert "line 15" not in output
        assert "... (5 more lines)" in output

    def test_empty(self):
        assert format_results([]) == ""


class TestJson:
    def test_result_to_dict(self):
        data = result_to_dict(make_result())
        assert data == {
            "rank": 1,
            "file": "src/foo.py",
            "start_line": 10,
            "end_line": 11,
            "score": 0.8734,
            "final_score": 0.9334,
            "language": "python",
            "content": "def foo():\n    return 1\n",
        }

    def test_format_results_json(self):
        data = json.loads(format_results_json([make_result(rank=1), make_result(rank=2)]))
        assert [item["rank"] for item in data] == [1, 2]

    def test_empty_json(self):
        assert json.loads(format_results_json([])) == []


class TestStats:
    def test_stats_to_dict(self):
        data = stats_to_dict(STATS)
        assert data["files"] == 3
        assert data["fragments"] == 12
        assert data["tombstone_ratio"] == 0.25
        assert data["generation"] == "gen-000002"

    def test_format_stats(self):
        text = format_stats(STATS)
        assert text.startswith("Index Statistics")
        assert "Fragments:  12" in text
        assert "minilm (sentence-transformers/all-MiniLM-L6-v2, 384 dims)" in text
        assert "Tombstones: 4 (25.0%)" in text
        assert "Disk size:  2.0 KB" in text

    def test_format_size(self):
        assert format_size(512) == "512 B"
        assert format_size(1536) == "1.5 KB"
        assert format_size(5 * 1024 * 1024) == "5.0 MB"
        assert format_size(3 * 1024**4) == "3072.0 GB"
