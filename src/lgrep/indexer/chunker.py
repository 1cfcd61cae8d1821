"""Chunking logic for splitting source files into overlapping fragments."""

import hashlib
from pathlib import PurePosixPath

from lgrep.config import DEFAULT_CHUNK_OVERLAP, DEFAULT_CHUNK_SIZE
from lgrep.errors import UnsupportedFileError
from lgrep.indexer.models import Fragment

# Bytes inspected when sniffing for binary content
BINARY_SNIFF_BYTES = 8192

LANGUAGES = {
    "rs": "rust",
    "py": "python",
    "pyi": "python",
    "pyw": "python",
    "js": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "ts": "typescript",
    "mts": "typescript",
    "cts": "typescript",
    "jsx": "javascriptreact",
    "tsx": "typescriptreact",
    "go": "go",
    "java": "java",
    "kt": "kotlin",
    "kts": "kotlin",
    "c": "c",
    "h": "c",
    "cpp": "cpp",
    "hpp": "cpp",
    "cc": "cpp",
    "cxx": "cpp",
    "hxx": "cpp",
    "cs": "csharp",
    "rb": "ruby",
    "rake": "ruby",
    "php": "php",
    "swift": "swift",
    "scala": "scala",
    "sc": "scala",
    "sh": "shell",
    "bash": "shell",
    "zsh": "shell",
    "sql": "sql",
    "html": "html",
    "htm": "html",
    "css": "css",
    "scss": "scss",
    "sass": "scss",
    "vue": "vue",
    "svelte": "svelte",
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
    "toml": "toml",
    "md": "markdown",
    "mdx": "markdown",
    "tf": "terraform",
    "hcl": "terraform",
    "xml": "xml",
}


def detect_language(path: str) -> str | None:
    """Detect the programming language from a file extension."""
    ext = PurePosixPath(path).suffix.lstrip(".").lower()
    return LANGUAGES.get(ext)


def fragment_id(path: str, start_byte: int) -> str:
    """Stable fragment identifier derived from the owning path and offset."""
    digest = hashlib.sha256(f"{path}:{start_byte}".encode("utf-8")).hexdigest()
    return digest[:16]


def decode_text(content: bytes, path: str) -> str:
    """Decode file bytes as UTF-8 text, rejecting binary content."""
    if b"\x00" in content[:BINARY_SNIFF_BYTES]:
        raise UnsupportedFileError(path, "binary content")
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError as e:
        raise UnsupportedFileError(path, f"invalid UTF-8 ({e.reason})") from e


def _line_length(line: str) -> int:
    # Newline counts as one character regardless of line ending style
    return len(line.rstrip("\r\n")) + 1


def _overlap_line_count(window: list[str], overlap: int) -> int:
    """Number of trailing lines of ``window`` carried into the next fragment.

    At least one line is kept for context, but never the whole window, so the
    next fragment always starts later than the previous one.
    """
    size = 0
    count = 0
    for line in reversed(window):
        size += _line_length(line)
        if size > overlap:
            break
        count += 1
    return min(max(count, 1), len(window) - 1)


def chunk_text(
    text: str,
    path: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> list[Fragment]:
    """
    Split file text into overlapping fragments.

    Rules:
    1. Fragments end on line boundaries once the next line would exceed chunk_size
    2. Each fragment restarts with trailing lines of the previous one (overlap)
    3. A single line longer than chunk_size becomes its own fragment, uncut
    4. Whitespace-only fragments are dropped
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if "\x00" in text:
        raise UnsupportedFileError(path, "binary content")

    lines = split_lines(text)
    if not lines:
        return []

    # Byte offset of the start of each line, plus the end of the file
    offsets = [0]
    for line in lines:
        offsets.append(offsets[-1] + len(line.encode("utf-8")))

    language = detect_language(path)
    windows: list[tuple[int, int]] = []
    start = 0
    size = 0

    for i, line in enumerate(lines):
        line_len = _line_length(line)
        if size + line_len > chunk_size and i > start:
            windows.append((start, i))
            start = i - _overlap_line_count(lines[start:i], overlap)
            size = sum(_line_length(kept) for kept in lines[start:i])
        size += line_len

    windows.append((start, len(lines)))

    fragments: list[Fragment] = []
    for first, last in windows:
        body = "".join(lines[first:last])
        if not body.strip():
            continue
        fragments.append(
            Fragment(
                id=fragment_id(path, offsets[first]),
                path=path,
                text=body,
                start_byte=offsets[first],
                end_byte=offsets[last],
                start_line=first + 1,
                end_line=last,
                content_hash=hashlib.sha256(body.encode("utf-8")).hexdigest(),
                language=language,
                fragment_order=len(fragments),
            )
        )

    return fragments


def split_lines(text: str) -> list[str]:
    """Split on line feeds only, keeping them; form feeds stay inside a line."""
    lines = [line + "\n" for line in text.split("\n")]
    lines[-1] = lines[-1][:-1]
    if not lines[-1]:
        lines.pop()
    return lines


def chunk_file(
    content: bytes,
    path: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> list[Fragment]:
    """Decode raw file bytes and chunk them. Raises UnsupportedFileError."""
    return chunk_text(decode_text(content, path), path, chunk_size, overlap)
