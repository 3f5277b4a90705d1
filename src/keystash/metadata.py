"""SQLite metadata layer for keystash.

One row per stored key. The content file and the row are written by
different stores, so nothing here knows whether the bytes actually exist;
FileEntryService keeps the two in step.

A single connection is shared by all request workers. Statements are
serialized with an internal lock, which also makes increment_access an
atomic read-modify-write.
"""

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from keystash.config import DEFAULT_LIST_LIMIT, FORMAT_VERSION
from keystash.errors import (
    DuplicateKeyError,
    InvalidQueryError,
    MetadataStoreError,
    NotFoundError,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS format_version (
    version INTEGER NOT NULL DEFAULT 1,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT UNIQUE NOT NULL,
    original_name TEXT NOT NULL,
    size INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    last_access_at TEXT NOT NULL,
    download_count INTEGER NOT NULL DEFAULT 0
);

-- Activity feed: PUT / DELETE / REBUILD
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action TEXT NOT NULL,
    key TEXT NOT NULL,
    size INTEGER,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_files_created_at ON files(created_at, id);
CREATE INDEX IF NOT EXISTS idx_events_created_at ON events(created_at, id);
"""

FORMAT_VERSION_SQL = """
INSERT INTO format_version (version) SELECT ?
    WHERE NOT EXISTS (SELECT 1 FROM format_version);
"""

_ENTRY_COLUMNS = "key, original_name, size, created_at, last_access_at, download_count"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime) -> str:
    # Fixed-width so that text ordering in SQLite matches time ordering.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class FileEntry:
    key: str
    original_name: str
    size: int
    created_at: datetime
    last_access_at: datetime
    download_count: int = 0

    @classmethod
    def new(cls, key: str, size: int, now: datetime | None = None) -> "FileEntry":
        now = now or utcnow()
        return cls(
            key=key,
            original_name=key,
            size=size,
            created_at=now,
            last_access_at=now,
            download_count=0,
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "FileEntry":
        return cls(
            key=row["key"],
            original_name=row["original_name"],
            size=row["size"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_access_at=datetime.fromisoformat(row["last_access_at"]),
            download_count=row["download_count"],
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["last_access_at"] = self.last_access_at.isoformat()
        return data


class MetadataDB:
    """Synchronous SQLite wrapper for keystash file records."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        try:
            self.db = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self.db.row_factory = sqlite3.Row
            self.db.execute("PRAGMA journal_mode=WAL")
            self.db.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error as e:
            raise MetadataStoreError(f"cannot open {self.db_path}: {e}") from e

    def initialize(self) -> None:
        with self._write() as db:
            db.executescript(SCHEMA_SQL)
            db.execute(FORMAT_VERSION_SQL, (FORMAT_VERSION,))

    def close(self) -> None:
        with self._lock:
            if self.db:
                self.db.close()
                self.db = None

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Run statements in one transaction, translating sqlite errors."""
        with self._lock:
            assert self.db is not None, "Call connect() first"
            try:
                yield self.db
                self.db.commit()
            except sqlite3.IntegrityError as e:
                self.db.rollback()
                if "UNIQUE" in str(e):
                    raise DuplicateKeyError(str(e)) from e
                raise MetadataStoreError(str(e)) from e
            except sqlite3.Error as e:
                self.db.rollback()
                raise MetadataStoreError(str(e)) from e
            except BaseException:
                self.db.rollback()
                raise

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            assert self.db is not None, "Call connect() first"
            try:
                return self.db.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise MetadataStoreError(str(e)) from e

    # ──────────────────────────── File operations ────────────────────────────

    def exists(self, key: str) -> bool:
        return bool(self._query("SELECT 1 FROM files WHERE key = ?", (key,)))

    def get(self, key: str) -> FileEntry:
        rows = self._query(f"SELECT {_ENTRY_COLUMNS} FROM files WHERE key = ?", (key,))
        if not rows:
            raise NotFoundError(f"no such file: {key}")
        return FileEntry.from_row(rows[0])

    def create(self, entry: FileEntry) -> None:
        with self._write() as db:
            db.execute(
                f"INSERT INTO files ({_ENTRY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                self._entry_params(entry),
            )
            self._record_event(db, "PUT", entry.key, entry.size)

    def upsert(self, entry: FileEntry, *, action: str = "PUT") -> None:
        with self._write() as db:
            db.execute(
                f"""INSERT INTO files ({_ENTRY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        original_name = excluded.original_name,
                        size = excluded.size,
                        created_at = excluded.created_at,
                        last_access_at = excluded.last_access_at,
                        download_count = excluded.download_count""",
                self._entry_params(entry),
            )
            self._record_event(db, action, entry.key, entry.size)

    def delete(self, key: str) -> None:
        with self._write() as db:
            cursor = db.execute("DELETE FROM files WHERE key = ?", (key,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"no such file: {key}")
            self._record_event(db, "DELETE", key, None)

    def increment_access(self, key: str, when: datetime | None = None) -> None:
        """Bump download_count by one and move last_access_at forward to `when`."""
        with self._write() as db:
            cursor = db.execute(
                """UPDATE files SET download_count = download_count + 1,
                       last_access_at = MAX(last_access_at, ?)
                   WHERE key = ?""",
                (_ts(when or utcnow()), key),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"no such file: {key}")

    def list_entries(
        self,
        offset: int = 0,
        limit: int = DEFAULT_LIST_LIMIT,
        query: str | None = None,
    ) -> list[FileEntry]:
        if offset < 0 or limit < 0:
            raise InvalidQueryError("offset and limit must be non-negative")
        if query:
            rows = self._query(
                f"""SELECT {_ENTRY_COLUMNS} FROM files
                    WHERE instr(key, ?) > 0
                    ORDER BY created_at DESC, id DESC
                    LIMIT ? OFFSET ?""",
                (query, limit, offset),
            )
        else:
            rows = self._query(
                f"""SELECT {_ENTRY_COLUMNS} FROM files
                    ORDER BY created_at DESC, id DESC
                    LIMIT ? OFFSET ?""",
                (limit, offset),
            )
        return [FileEntry.from_row(r) for r in rows]

    def count(self, query: str | None = None) -> int:
        if query:
            rows = self._query("SELECT COUNT(*) AS c FROM files WHERE instr(key, ?) > 0", (query,))
        else:
            rows = self._query("SELECT COUNT(*) AS c FROM files")
        return rows[0]["c"]

    def keys(self) -> list[str]:
        return [r["key"] for r in self._query("SELECT key FROM files ORDER BY key")]

    @staticmethod
    def _entry_params(entry: FileEntry) -> tuple:
        return (
            entry.key,
            entry.original_name,
            entry.size,
            _ts(entry.created_at),
            _ts(entry.last_access_at),
            entry.download_count,
        )

    # ──────────────────────────── Event operations ──────────────────────────

    @staticmethod
    def _record_event(db: sqlite3.Connection, action: str, key: str, size: int | None) -> None:
        db.execute(
            "INSERT INTO events (action, key, size, created_at) VALUES (?, ?, ?, ?)",
            (action, key, size, _ts(utcnow())),
        )

    def list_events(self, limit: int = 50) -> list[sqlite3.Row]:
        rows = self._query(
            """SELECT created_at, action, key, size
               FROM events
               ORDER BY created_at DESC, id DESC
               LIMIT ?""",
            (limit,),
        )
        rows.reverse()
        return rows

    # ──────────────────────────── Stats ───────────────────────────────────────

    def get_stats(self) -> dict:
        row = self._query(
            """SELECT COUNT(*) AS files,
                      COALESCE(SUM(size), 0) AS bytes,
                      COALESCE(SUM(download_count), 0) AS downloads
               FROM files"""
        )[0]
        return {
            "total_files": row["files"],
            "total_bytes": row["bytes"],
            "total_downloads": row["downloads"],
        }
