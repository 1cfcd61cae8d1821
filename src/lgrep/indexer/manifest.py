"""SQLite manifest of indexed files and their fragments."""

import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

from lgrep.errors import IndexCorruptedError
from lgrep.indexer.models import Fragment, ManifestEntry

MANIFEST_FILE = "manifest.db"
SCHEMA_VERSION = "1"

SCHEMA_SQL = """
-- lgrep manifest schema v1
-- Disposable: regenerates from the project files

PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS files (
    path         TEXT PRIMARY KEY,
    content_hash TEXT NOT NULL,
    mtime        REAL NOT NULL,
    size         INTEGER NOT NULL,
    language     TEXT,
    indexed_at   TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS fragments (
    id             TEXT PRIMARY KEY,
    path           TEXT NOT NULL,
    fragment_order INTEGER NOT NULL,
    start_byte     INTEGER NOT NULL,
    end_byte       INTEGER NOT NULL,
    start_line     INTEGER NOT NULL,
    end_line       INTEGER NOT NULL,
    language       TEXT,
    extension      TEXT NOT NULL,
    content_hash   TEXT NOT NULL,
    text           TEXT NOT NULL,
    FOREIGN KEY (path) REFERENCES files(path) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_fragments_path ON fragments(path, fragment_order);

CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);

INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', '1');
INSERT OR IGNORE INTO meta (key, value) VALUES ('created_at', datetime('now'));
"""


class Manifest:
    """SQLite manifest for one index generation.

    A manifest opened with ``read_only=True`` belongs to a published
    generation and is never modified. It holds a single connection, opened
    immediately and shared by all threads, so it stays readable even after
    the generation directory is pruned.
    """

    def __init__(self, db_path: Path, read_only: bool = False):
        self.db_path = db_path
        self.read_only = read_only
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._read_lock = threading.Lock()
        self._shared: sqlite3.Connection | None = None
        if read_only:
            if not db_path.exists():
                raise IndexCorruptedError(f"Missing manifest {db_path}")
            self._shared = sqlite3.connect(
                f"{db_path.as_uri()}?mode=ro", uri=True, check_same_thread=False
            )
            self._shared.row_factory = sqlite3.Row

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if self.read_only:
            if self._shared is None:
                raise sqlite3.ProgrammingError(f"Manifest {self.db_path} is closed")
            return self._shared
        if not hasattr(self._local, "conn") or self._local.conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path))
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            self._local.conn = conn
        return self._local.conn

    @contextmanager
    def _read_cursor(self) -> Iterator[sqlite3.Cursor]:
        """Get a cursor for read operations."""
        with self._read_lock:
            conn = self._get_connection()
            cursor = conn.cursor()
            try:
                yield cursor
            except sqlite3.DatabaseError as e:
                raise IndexCorruptedError(
                    f"Cannot read manifest {self.db_path}: {e}"
                ) from e
            finally:
                cursor.close()

    @contextmanager
    def _write_cursor(self) -> Iterator[sqlite3.Cursor]:
        """Get a cursor for write operations with locking."""
        if self.read_only:
            raise PermissionError(f"Manifest {self.db_path} is read-only")
        with self._write_lock:
            conn = self._get_connection()
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def initialize(self) -> None:
        """Initialize the database schema."""
        with self._write_cursor() as cursor:
            cursor.executescript(SCHEMA_SQL)

    def close(self) -> None:
        """Close the database connection."""
        if self._shared is not None:
            self._shared.close()
            self._shared = None
            return
        if hasattr(self._local, "conn") and self._local.conn:
            self._local.conn.close()
            self._local.conn = None

    def copy_to(self, dest_path: Path) -> "Manifest":
        """Copy this manifest to ``dest_path`` and return a writable handle."""
        dest = Manifest(dest_path)
        try:
            with self._read_lock:
                self._get_connection().backup(dest._get_connection())
        except sqlite3.DatabaseError as e:
            dest.close()
            raise IndexCorruptedError(f"Cannot copy manifest {self.db_path}: {e}") from e
        dest.initialize()
        return dest

    # Meta operations

    def get_meta(self, key: str) -> str | None:
        with self._read_cursor() as cursor:
            cursor.execute("SELECT value FROM meta WHERE key = ?", (key,))
            row = cursor.fetchone()
            return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self._write_cursor() as cursor:
            cursor.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                (key, value),
            )

    # File operations

    def list_files(self) -> dict[str, ManifestEntry]:
        """All entries keyed by path, with their fragment ids in order."""
        with self._read_cursor() as cursor:
            cursor.execute("SELECT * FROM files ORDER BY path")
            entries = {row["path"]: self._row_to_entry(row, []) for row in cursor.fetchall()}
            cursor.execute("SELECT id, path FROM fragments ORDER BY path, fragment_order")
            for row in cursor.fetchall():
                entries[row["path"]].fragment_ids.append(row["id"])
            return entries

    def _write_entry(
        self, cursor: sqlite3.Cursor, entry: ManifestEntry, fragments: list[Fragment]
    ) -> None:
        cursor.execute("DELETE FROM files WHERE path = ?", (entry.path,))
        cursor.execute(
            """INSERT INTO files (path, content_hash, mtime, size, language)
            VALUES (?, ?, ?, ?, ?)""",
            (entry.path, entry.content_hash, entry.mtime, entry.size, entry.language),
        )
        cursor.executemany(
            """INSERT INTO fragments
            (id, path, fragment_order, start_byte, end_byte, start_line, end_line,
             language, extension, content_hash, text)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    fragment.id,
                    entry.path,
                    fragment.fragment_order,
                    fragment.start_byte,
                    fragment.end_byte,
                    fragment.start_line,
                    fragment.end_line,
                    fragment.language,
                    fragment.extension,
                    fragment.content_hash,
                    fragment.text,
                )
                for fragment in fragments
            ],
        )
        entry.fragment_ids = [fragment.id for fragment in fragments]

    def apply(
        self,
        upserts: Iterable[tuple[ManifestEntry, list[Fragment]]],
        removed: Iterable[str],
    ) -> None:
        """Apply a batch of upserts and removals in a single transaction."""
        with self._write_cursor() as cursor:
            cursor.executemany(
                "DELETE FROM files WHERE path = ?", [(path,) for path in removed]
            )
            for entry, fragments in upserts:
                self._write_entry(cursor, entry, fragments)

    # Fragment operations

    def fragment_ids(self) -> set[str]:
        with self._read_cursor() as cursor:
            cursor.execute("SELECT id FROM fragments")
            return {row["id"] for row in cursor.fetchall()}

    def get_fragments(self, ids: Iterable[str]) -> dict[str, Fragment]:
        """Fetch fragments by id; unknown ids are absent from the result."""
        ids = list(ids)
        found: dict[str, Fragment] = {}
        with self._read_cursor() as cursor:
            # Stay well below SQLite's bound-parameter limit
            for start in range(0, len(ids), 500):
                batch = ids[start : start + 500]
                placeholders = ",".join("?" * len(batch))
                cursor.execute(
                    f"SELECT * FROM fragments WHERE id IN ({placeholders})", batch
                )
                for row in cursor.fetchall():
                    found[row["id"]] = self._row_to_fragment(row)
        return found

    def count_files(self) -> int:
        with self._read_cursor() as cursor:
            cursor.execute("SELECT COUNT(*) FROM files")
            return cursor.fetchone()[0]

    def _row_to_entry(self, row: sqlite3.Row, fragment_ids: list[str]) -> ManifestEntry:
        return ManifestEntry(
            path=row["path"],
            content_hash=row["content_hash"],
            mtime=row["mtime"],
            size=row["size"],
            language=row["language"],
            fragment_ids=fragment_ids,
        )

    def _row_to_fragment(self, row: sqlite3.Row) -> Fragment:
        return Fragment(
            id=row["id"],
            path=row["path"],
            text=row["text"],
            start_byte=row["start_byte"],
            end_byte=row["end_byte"],
            start_line=row["start_line"],
            end_line=row["end_line"],
            content_hash=row["content_hash"],
            language=row["language"],
            fragment_order=row["fragment_order"],
        )
