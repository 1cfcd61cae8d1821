"""Tests for the file walker."""

import warnings
from pathlib import Path

import pytest

from lgrep.indexer.walker import (
    compute_hash,
    load_ignore_spec,
    resolve_paths,
    should_index_file,
    touches_ignore_rules,
    walk_files,
)


def write(root: Path, relative: str, content: str = "x = 1\n") -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def project(tmp_path: Path) -> Path:
    write(tmp_path, "main.py")
    write(tmp_path, "src/lib.rs", "fn lib() {}\n")
    write(tmp_path, "src/nested/util.ts", "export const x = 1;\n")
    write(tmp_path, "docs/guide.md", "# Guide\n")
    write(tmp_path, "image.png", "not really a png")
    write(tmp_path, ".hidden/secret.py")
    write(tmp_path, ".env.py")
    write(tmp_path, ".lgrep/history.json", "{}")
    write(tmp_path, "build/generated.py")
    write(tmp_path, "src/ignored.py")
    write(tmp_path, ".gitignore", "build/\nsrc/ignored.py\n")
    return tmp_path


class TestComputeHash:
    def test_computes_sha256(self):
        content = b"hello world"
        result = compute_hash(content)
        assert result == "b94d27b9934d3e08a52e52d7da7dabfac484efe37a5380ee9088f7ace2efcde9"

    def test_different_content_different_hash(self):
        assert compute_hash(b"foo") != compute_hash(b"bar")


class TestShouldIndexFile:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("a.py", True),
            ("a.RS", True),
            ("Cargo.toml", True),
            ("notes.txt", True),
            ("photo.png", False),
            ("archive.tar.gz", False),
            ("Makefile", False),
        ],
    )
    def test_extensions(self, name: str, expected: bool):
        assert should_index_file(name) == expected


class TestWalkFiles:
    def test_discovers_indexable_files(self, project: Path):
        paths = [f.relative_path for f in walk_files(project)]
        assert paths == [
            "docs/guide.md",
            "main.py",
            "src/lib.rs",
            "src/nested/util.ts",
        ]

    def test_skips_hidden_and_index_dir(self, project: Path):
        paths = {f.relative_path for f in walk_files(project)}
        assert not any(p.startswith(".") for p in paths)

    def test_honors_gitignore(self, project: Path):
        paths = {f.relative_path for f in walk_files(project)}
        assert "build/generated.py" not in paths
        assert "src/ignored.py" not in paths

    def test_honors_lgrepignore(self, project: Path):
        write(project, ".lgrepignore", "docs/\n")
        paths = {f.relative_path for f in walk_files(project)}
        assert "docs/guide.md" not in paths
        assert "main.py" in paths

    def test_skips_large_files(self, project: Path):
        write(project, "big.py", "x" * 2000)
        paths = {f.relative_path for f in walk_files(project, max_file_size=1000)}
        assert "big.py" not in paths
        assert "main.py" in paths

    def test_file_info_fields(self, project: Path):
        info = next(f for f in walk_files(project) if f.relative_path == "main.py")
        assert info.path == project / "main.py"
        assert info.size == len("x = 1\n")
        assert info.mtime > 0

    def test_missing_root(self, tmp_path: Path):
        assert list(walk_files(tmp_path / "missing")) == []


class TestResolvePaths:
    def test_existing_file(self, project: Path):
        files, touched = resolve_paths(project, [project / "main.py"])
        assert [f.relative_path for f in files] == ["main.py"]
        assert touched == {"main.py"}

    def test_relative_paths(self, project: Path):
        files, touched = resolve_paths(project, ["src/lib.rs"])
        assert [f.relative_path for f in files] == ["src/lib.rs"]
        assert touched == {"src/lib.rs"}

    def test_deleted_file_is_touched_only(self, project: Path):
        (project / "main.py").unlink()
        files, touched = resolve_paths(project, [project / "main.py"])
        assert files == []
        assert touched == {"main.py"}

    def test_directory_is_walked(self, project: Path):
        files, touched = resolve_paths(project, [project / "src"])
        assert [f.relative_path for f in files] == ["src/lib.rs", "src/nested/util.ts"]
        assert touched == {"src"}

    def test_filters_still_apply(self, project: Path):
        files, touched = resolve_paths(
            project, [project / "build/generated.py", project / "image.png"]
        )
        assert files == []
        assert touched == {"build/generated.py", "image.png"}

    def test_ignores_index_dir_and_outside_paths(self, project: Path, tmp_path_factory):
        outside = tmp_path_factory.mktemp("outside") / "x.py"
        outside.write_text("x = 1\n")
        files, touched = resolve_paths(
            project, [project / ".lgrep" / "history.json", outside]
        )
        assert files == []
        assert touched == set()


class TestTouchesIgnoreRules:
    @pytest.mark.parametrize("name", [".gitignore", ".ignore", ".lgrepignore"])
    def test_root_ignore_files(self, project: Path, name: str):
        assert touches_ignore_rules(project, [project / "main.py", project / name])
        assert touches_ignore_rules(project, [name])

    def test_other_paths(self, project: Path):
        assert not touches_ignore_rules(project, [project / "main.py", project / "src"])
        assert not touches_ignore_rules(project, [project / "src" / ".gitignore"])
        assert not touches_ignore_rules(project, [])


class TestLoadIgnoreSpec:
    def test_gitignore_semantics_without_warnings(self, project: Path):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            spec = load_ignore_spec(project)
        assert spec.match_file("build/generated.py")
        assert spec.match_file("src/ignored.py")
        assert not spec.match_file("src/lib.rs")
