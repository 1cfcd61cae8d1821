"""File walker for discovering indexable files under a project root."""

import hashlib
import logging
import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

import pathspec

from lgrep.config import DEFAULT_MAX_FILE_SIZE, INDEX_DIR_NAME

logger = logging.getLogger(__name__)

IGNORE_FILES = (".gitignore", ".ignore", ".lgrepignore")

# File extensions that should be indexed
CODE_EXTENSIONS = frozenset(
    {
        # Rust
        "rs",
        # Python
        "py", "pyi", "pyw",
        # JavaScript/TypeScript
        "js", "jsx", "ts", "tsx", "mjs", "cjs",
        # Go
        "go",
        # Java/Kotlin
        "java", "kt", "kts",
        # C/C++
        "c", "h", "cpp", "hpp", "cc", "cxx", "hxx",
        # C#
        "cs",
        # Ruby
        "rb", "rake",
        # PHP
        "php",
        # Swift
        "swift",
        # Scala
        "scala", "sc",
        # Shell
        "sh", "bash", "zsh", "fish",
        # SQL
        "sql",
        # Web
        "html", "htm", "css", "scss", "sass", "less", "vue", "svelte",
        # Config
        "json", "yaml", "yml", "toml", "ini", "cfg", "conf",
        # Documentation
        "md", "mdx", "rst", "txt",
        # Infrastructure
        "tf", "hcl",
        # Data
        "xml", "csv",
    }
)


@dataclass
class FileInfo:
    """Information about a discovered file."""

    path: Path  # Absolute path
    relative_path: str  # Relative to the project root, "/"-separated
    mtime: float
    size: int


def compute_hash(content: bytes) -> str:
    """Compute SHA-256 hash of content."""
    return hashlib.sha256(content).hexdigest()


def should_index_file(path: Path | str) -> bool:
    """Check if a file should be indexed based on its extension."""
    return Path(path).suffix.lstrip(".").lower() in CODE_EXTENSIONS


def load_ignore_spec(root: Path) -> pathspec.PathSpec:
    """Build a gitignore-style matcher from the ignore files at ``root``."""
    patterns: list[str] = []
    for name in IGNORE_FILES:
        ignore_file = root / name
        if not ignore_file.is_file():
            continue
        try:
            patterns.extend(ignore_file.read_text(encoding="utf-8").splitlines())
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Cannot read ignore file %s: %s", ignore_file, e)
    return pathspec.GitIgnoreSpec.from_lines(patterns)


def _is_hidden(relative_parts: Iterable[str]) -> bool:
    return any(part.startswith(".") for part in relative_parts)


def _file_info(
    root: Path,
    file_path: Path,
    spec: pathspec.PathSpec,
    max_file_size: int,
) -> FileInfo | None:
    """Return FileInfo if ``file_path`` passes every filter, else None."""
    try:
        relative = file_path.relative_to(root)
    except ValueError:
        return None

    if _is_hidden(relative.parts):
        return None
    relative_path = relative.as_posix()
    if not should_index_file(file_path) or spec.match_file(relative_path):
        return None

    try:
        stat = file_path.stat()
    except OSError:
        return None
    if not file_path.is_file() or stat.st_size > max_file_size:
        return None

    return FileInfo(
        path=file_path,
        relative_path=relative_path,
        mtime=stat.st_mtime,
        size=stat.st_size,
    )


def _walk(
    root: Path,
    start: Path,
    spec: pathspec.PathSpec,
    max_file_size: int,
) -> Iterator[FileInfo]:
    for dirpath, dirnames, filenames in os.walk(start):
        current = Path(dirpath)
        relative_dir = current.relative_to(root)

        # Prune in place so os.walk does not descend into ignored directories
        kept = []
        for name in sorted(dirnames):
            if name.startswith(".") or name == INDEX_DIR_NAME:
                continue
            dir_rel = (relative_dir / name).as_posix()
            if spec.match_file(dir_rel + "/"):
                continue
            kept.append(name)
        dirnames[:] = kept

        for name in sorted(filenames):
            info = _file_info(root, current / name, spec, max_file_size)
            if info is not None:
                yield info


def walk_files(
    root: Path,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
) -> Iterator[FileInfo]:
    """
    Walk the project root and yield FileInfo for each indexable file.

    Skipped:
    - hidden files and directories (including the .lgrep index directory)
    - paths matched by .gitignore / .ignore / .lgrepignore at the root
    - files with a non-indexable extension or larger than max_file_size

    Files are yielded sorted by relative path.
    """
    if not root.is_dir():
        return
    files = _walk(root, root, load_ignore_spec(root), max_file_size)
    yield from sorted(files, key=lambda info: info.relative_path)


def touches_ignore_rules(root: Path, paths: Iterable[Path | str]) -> bool:
    """Whether any of ``paths`` is one of the ignore files at ``root``."""
    for raw in paths:
        path = Path(raw)
        if not path.is_absolute():
            path = root / path
        if path.parent == root and path.name in IGNORE_FILES:
            return True
    return False


def resolve_paths(
    root: Path,
    paths: Iterable[Path | str],
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
) -> tuple[list[FileInfo], set[str]]:
    """
    Resolve a set of changed paths (e.g. from the file watcher).

    Returns:
        Tuple of (indexable files that currently exist, relative paths of
        every changed path inside the root). The second set lets callers
        detect removals, including removed directories.
    """
    spec = load_ignore_spec(root)
    existing: dict[str, FileInfo] = {}
    touched: set[str] = set()

    for raw in paths:
        path = Path(raw)
        if not path.is_absolute():
            path = root / path
        try:
            relative = path.relative_to(root)
        except ValueError:
            continue
        if not relative.parts or relative.parts[0] == INDEX_DIR_NAME:
            continue
        touched.add(relative.as_posix())

        if path.is_dir():
            for info in _walk(root, path, spec, max_file_size):
                existing[info.relative_path] = info
        else:
            info = _file_info(root, path, spec, max_file_size)
            if info is not None:
                existing[info.relative_path] = info

    return [existing[key] for key in sorted(existing)], touched
