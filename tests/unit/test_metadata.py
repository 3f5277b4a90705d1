"""Unit tests for the keystash metadata layer (SQLite)."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from keystash.errors import (
    DuplicateKeyError,
    InvalidQueryError,
    MetadataStoreError,
    NotFoundError,
)
from keystash.metadata import FileEntry, MetadataDB

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def db(tmp_path: Path) -> MetadataDB:
    """Create a MetadataDB in a temp directory, initialized with schema."""
    mdb = MetadataDB(tmp_path / ".keystash.db")
    mdb.connect()
    mdb.initialize()
    yield mdb
    mdb.close()


def _entry(key: str, size: int = 10, offset_s: int = 0) -> FileEntry:
    return FileEntry.new(key, size, now=T0 + timedelta(seconds=offset_s))


class TestMetadataDB:
    """Tests for MetadataDB."""

    def test_create_and_get(self, db: MetadataDB) -> None:
        """A created entry reads back with every field intact."""
        db.create(_entry("abc", size=42))
        entry = db.get("abc")
        assert entry.key == "abc"
        assert entry.original_name == "abc"
        assert entry.size == 42
        assert entry.created_at == T0
        assert entry.last_access_at == T0
        assert entry.download_count == 0

    def test_get_missing(self, db: MetadataDB) -> None:
        with pytest.raises(NotFoundError):
            db.get("nope")

    def test_exists(self, db: MetadataDB) -> None:
        assert not db.exists("abc")
        db.create(_entry("abc"))
        assert db.exists("abc")

    def test_create_duplicate_key(self, db: MetadataDB) -> None:
        """A second create on the same key violates the unique constraint."""
        db.create(_entry("dup"))
        with pytest.raises(DuplicateKeyError):
            db.create(_entry("dup", size=99))
        assert db.get("dup").size == 10

    def test_duplicate_key_is_a_store_error(self) -> None:
        assert issubclass(DuplicateKeyError, MetadataStoreError)

    def test_upsert_inserts_when_absent(self, db: MetadataDB) -> None:
        db.upsert(_entry("new", size=7))
        assert db.get("new").size == 7

    def test_upsert_replaces_all_fields(self, db: MetadataDB) -> None:
        """upsert overwrites size, timestamps and counters from the given entry."""
        db.create(_entry("k", size=1))
        db.increment_access("k", T0 + timedelta(seconds=5))

        db.upsert(_entry("k", size=2, offset_s=60))
        entry = db.get("k")
        assert entry.size == 2
        assert entry.created_at == T0 + timedelta(seconds=60)
        assert entry.download_count == 0

    def test_delete(self, db: MetadataDB) -> None:
        """Deleted keys disappear and can be created again."""
        db.create(_entry("gone"))
        db.delete("gone")
        assert not db.exists("gone")
        db.create(_entry("gone", size=3))
        assert db.get("gone").size == 3

    def test_delete_missing(self, db: MetadataDB) -> None:
        with pytest.raises(NotFoundError):
            db.delete("never")

    def test_increment_access(self, db: MetadataDB) -> None:
        """Each increment bumps the counter by one and moves last access forward."""
        db.create(_entry("hits"))
        db.increment_access("hits", T0 + timedelta(seconds=1))
        db.increment_access("hits", T0 + timedelta(seconds=2))
        entry = db.get("hits")
        assert entry.download_count == 2
        assert entry.last_access_at == T0 + timedelta(seconds=2)

    def test_increment_access_never_moves_backwards(self, db: MetadataDB) -> None:
        db.create(_entry("late"))
        db.increment_access("late", T0 + timedelta(seconds=10))
        db.increment_access("late", T0 + timedelta(seconds=3))
        entry = db.get("late")
        assert entry.download_count == 2
        assert entry.last_access_at == T0 + timedelta(seconds=10)

    def test_increment_access_missing(self, db: MetadataDB) -> None:
        with pytest.raises(NotFoundError):
            db.increment_access("nope")

    def test_list_orders_newest_first(self, db: MetadataDB) -> None:
        db.create(_entry("old", offset_s=0))
        db.create(_entry("new", offset_s=20))
        db.create(_entry("mid", offset_s=10))
        assert [e.key for e in db.list_entries()] == ["new", "mid", "old"]

    def test_list_same_timestamp_newest_insert_first(self, db: MetadataDB) -> None:
        for key in ["a", "b", "c"]:
            db.create(_entry(key))
        assert [e.key for e in db.list_entries()] == ["c", "b", "a"]

    def test_list_pagination(self, db: MetadataDB) -> None:
        """Pages do not overlap and default to 50 entries."""
        for i in range(60):
            db.create(_entry(f"k{i:02d}", offset_s=i))

        first = db.list_entries()
        second = db.list_entries(offset=50, limit=50)
        assert len(first) == 50
        assert len(second) == 10
        assert first[0].key == "k59"
        assert second[0].key == "k09"
        assert not {e.key for e in first} & {e.key for e in second}

    def test_list_query_filter(self, db: MetadataDB) -> None:
        """The query is a literal, case-sensitive substring match on key."""
        for key in ["report.pdf", "old_report.txt", "photo.jpg", "50%_off", "Report.doc"]:
            db.create(_entry(key))
        assert {e.key for e in db.list_entries(query="report")} == {
            "report.pdf",
            "old_report.txt",
        }
        assert [e.key for e in db.list_entries(query="%")] == ["50%_off"]
        assert db.count(query="report") == 2
        assert db.count() == 5

    def test_list_negative_paging(self, db: MetadataDB) -> None:
        with pytest.raises(InvalidQueryError):
            db.list_entries(offset=-1)
        with pytest.raises(InvalidQueryError):
            db.list_entries(limit=-5)

    def test_keys(self, db: MetadataDB) -> None:
        db.create(_entry("b"))
        db.create(_entry("a"))
        assert db.keys() == ["a", "b"]

    def test_get_stats(self, db: MetadataDB) -> None:
        stats = db.get_stats()
        assert stats == {"total_files": 0, "total_bytes": 0, "total_downloads": 0}

        db.create(_entry("x", size=100))
        db.create(_entry("y", size=50))
        db.increment_access("x")

        stats = db.get_stats()
        assert stats["total_files"] == 2
        assert stats["total_bytes"] == 150
        assert stats["total_downloads"] == 1

    def test_events_feed(self, db: MetadataDB) -> None:
        """create, upsert and delete are recorded in order."""
        db.create(_entry("log.txt", size=10))
        db.upsert(_entry("log.txt", size=20), action="REBUILD")
        db.delete("log.txt")

        events = db.list_events(limit=10)
        assert [e["action"] for e in events] == ["PUT", "REBUILD", "DELETE"]
        assert all(e["key"] == "log.txt" for e in events)
        assert events[1]["size"] == 20
        assert events[2]["size"] is None

    def test_failed_create_records_no_event(self, db: MetadataDB) -> None:
        db.create(_entry("once"))
        with pytest.raises(DuplicateKeyError):
            db.create(_entry("once"))
        assert len(db.list_events()) == 1

    def test_reopen_keeps_data(self, tmp_path: Path) -> None:
        path = tmp_path / ".keystash.db"
        first = MetadataDB(path)
        first.connect()
        first.initialize()
        first.create(_entry("persisted", size=5))
        first.close()

        second = MetadataDB(path)
        second.connect()
        second.initialize()
        assert second.get("persisted").size == 5
        second.close()

    def test_file_entry_to_dict(self) -> None:
        data = _entry("k", size=3).to_dict()
        assert data["key"] == "k"
        assert data["size"] == 3
        assert data["created_at"] == T0.isoformat()
