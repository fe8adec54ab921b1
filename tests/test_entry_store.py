"""Tests for the local entry store."""

import pytest
from unittest.mock import MagicMock

from cloudtodo.store import DEFAULT_TITLE, Entry, EntryState, EntryStore
from cloudtodo.sync.remote_client import RemoteEntry

FAR_FUTURE_MS = 4102444800000  # 2100-01-01


@pytest.fixture
def store():
    """Create an in-memory EntryStore for testing."""
    store = EntryStore(":memory:")
    store.connect()
    yield store
    store.close()


def _remote(remote_id=7, title="Remote", modified=1500.0, **kwargs):
    return RemoteEntry(
        id=remote_id,
        title=title,
        notes=kwargs.get("notes", ""),
        complete=kwargs.get("complete", False),
        created=kwargs.get("created", 1000.0),
        modified=modified,
        deleted=kwargs.get("deleted", False),
    )


def _raw_rows(store):
    """All rows, including soft-deleted ones."""
    return store._conn.execute("SELECT * FROM entries ORDER BY local_id").fetchall()


class TestEntryStoreSchema:
    """Tests for database schema initialization."""

    def test_connect_creates_tables(self):
        """Test that connect() creates the entries and meta tables."""
        store = EntryStore(":memory:")
        store.connect()

        tables = store._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        table_names = [t[0] for t in tables]

        assert "entries" in table_names
        assert "sync_meta" in table_names
        store.close()

    def test_connect_is_idempotent(self, store):
        """Test calling connect() twice keeps the same connection."""
        conn = store._conn
        store.connect()
        assert store._conn is conn

    def test_recovers_interrupted_push(self, tmp_path):
        """Test rows left in flight by a crash are released on connect."""
        db_path = tmp_path / "entries.db"
        store = EntryStore(db_path)
        store.connect()
        local_id = store.insert({"title": "Interrupted"})
        store.stage_dirty_entries()
        store.close()

        reopened = EntryStore(db_path)
        reopened.connect()
        entry = reopened.get(local_id)

        assert entry.pending_tx is False
        assert entry.pending_update == EntryState.STAGED
        assert entry.dirty
        reopened.close()


class TestInsert:
    """Tests for local inserts."""

    def test_insert_defaults(self, store):
        """Test omitted fields get defaults and the row is dirty."""
        local_id = store.insert()
        entry = store.get(local_id)

        assert entry.title == DEFAULT_TITLE
        assert entry.notes == ""
        assert entry.complete is False
        assert entry.remote_id is None
        assert entry.created == entry.modified
        assert entry.pending_update == EntryState.DIRTY
        assert entry.state is EntryState.DIRTY
        assert entry.pending_delete is False

    def test_insert_with_fields(self, store):
        """Test supplied fields are stored."""
        local_id = store.insert(
            {"title": "Buy milk", "notes": "2 litres", "complete": True, "created": 1000}
        )
        entry = store.get(local_id)

        assert entry.title == "Buy milk"
        assert entry.notes == "2 litres"
        assert entry.complete is True
        assert entry.created == 1000

    def test_insert_rejects_sync_columns(self, store):
        """Test callers cannot write bookkeeping columns."""
        with pytest.raises(ValueError, match="pending_update"):
            store.insert({"title": "x", "pending_update": 0})

    def test_insert_requests_lazy_sync(self):
        """Test every insert asks the scheduler for a lazy sync."""
        scheduler = MagicMock()
        store = EntryStore(":memory:", scheduler=scheduler)
        store.connect()

        store.insert({"title": "a"})

        scheduler.request_lazy_sync.assert_called_once()
        store.close()


class TestQuery:
    """Tests for querying visible entries."""

    def test_default_order_is_creation_ascending(self, store):
        """Test rows come back oldest first."""
        store.insert({"title": "second", "created": 2000})
        store.insert({"title": "first", "created": 1000})

        titles = [e.title for e in store.query()]
        assert titles == ["first", "second"]

    def test_where_clause(self, store):
        """Test filtering with a parameterized selection."""
        store.insert({"title": "open"})
        store.insert({"title": "done", "complete": True})

        entries = store.query("complete = ?", (1,))
        assert [e.title for e in entries] == ["done"]

    def test_custom_order(self, store):
        """Test an explicit sort order."""
        store.insert({"title": "b", "created": 1000})
        store.insert({"title": "a", "created": 2000})

        titles = [e.title for e in store.query(order_by="title ASC")]
        assert titles == ["a", "b"]

    def test_invalid_order_rejected(self, store):
        """Test sort orders are limited to known columns."""
        with pytest.raises(ValueError):
            store.query(order_by="created; DROP TABLE entries")

    def test_soft_deleted_rows_hidden(self, store):
        """Test soft-deleted rows never appear in queries."""
        keep = store.insert({"title": "keep"})
        gone = store.insert({"title": "gone"})
        store.soft_delete(local_id=gone)

        assert [e.local_id for e in store.query()] == [keep]
        assert store.get(gone) is None

    def test_get_missing(self, store):
        """Test get() returns None for unknown ids."""
        assert store.get(999) is None


class TestUpdate:
    """Tests for local edits."""

    def test_update_marks_dirty(self, store):
        """Test an edit on a clean row marks it dirty."""
        local_id = store.insert_from_remote(_remote())
        assert store.get(local_id).pending_update == EntryState.CLEAN

        count = store.update({"title": "Edited"}, local_id=local_id)
        entry = store.get(local_id)

        assert count == 1
        assert entry.title == "Edited"
        assert entry.pending_update == EntryState.DIRTY

    def test_update_never_moves_modified_backwards(self, store):
        """Test modified is monotonic even with a future timestamp."""
        local_id = store.insert({"title": "a", "modified": FAR_FUTURE_MS})

        store.update({"notes": "n"}, local_id=local_id)

        assert store.get(local_id).modified == FAR_FUTURE_MS

    def test_update_missing_returns_zero(self):
        """Test no lazy sync is requested when nothing matched."""
        scheduler = MagicMock()
        store = EntryStore(":memory:", scheduler=scheduler)
        store.connect()

        assert store.update({"title": "x"}, local_id=123) == 0
        scheduler.request_lazy_sync.assert_not_called()
        store.close()

    def test_update_skips_soft_deleted(self, store):
        """Test soft-deleted rows cannot be edited."""
        local_id = store.insert({"title": "a"})
        store.soft_delete(local_id=local_id)

        assert store.update({"title": "b"}, local_id=local_id) == 0

    def test_update_rejects_unknown_fields(self, store):
        """Test editing non-editable columns fails."""
        local_id = store.insert({"title": "a"})
        with pytest.raises(ValueError):
            store.update({"remote_id": 5}, local_id=local_id)

    def test_soft_delete_marks_row(self, store):
        """Test soft delete keeps the row with pending_delete set."""
        local_id = store.insert({"title": "a"})

        assert store.soft_delete(local_id=local_id) == 1

        rows = _raw_rows(store)
        assert len(rows) == 1
        assert rows[0]["pending_delete"] == 1


class TestTransactions:
    """Tests for transactions and change notifications."""

    def test_rollback_on_error(self, store):
        """Test an exception undoes all writes in the transaction."""
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.insert({"title": "a"})
                store.insert({"title": "b"})
                raise RuntimeError("boom")

        assert store.query() == []
        assert not store.in_transaction

    def test_listener_called_after_commit(self, store):
        """Test listeners see each changed id once, after commit."""
        seen = []
        store.add_listener(seen.append)

        with store.transaction():
            local_id = store.insert({"title": "a"})
            store.update({"title": "b"}, local_id=local_id)
            assert seen == []

        assert seen == [local_id]

    def test_listener_not_called_on_rollback(self, store):
        """Test notifications are discarded when the transaction fails."""
        seen = []
        store.add_listener(seen.append)

        with pytest.raises(RuntimeError):
            with store.transaction():
                store.insert({"title": "a"})
                raise RuntimeError("boom")

        assert seen == []

    def test_failing_listener_does_not_break_writes(self, store):
        """Test a raising listener is logged, not propagated."""
        store.add_listener(MagicMock(side_effect=RuntimeError("listener")))

        local_id = store.insert({"title": "a"})

        assert store.get(local_id) is not None

    def test_remove_listener(self, store):
        """Test removed listeners are no longer called."""
        listener = MagicMock()
        store.add_listener(listener)
        store.remove_listener(listener)

        store.insert({"title": "a"})

        listener.assert_not_called()


class TestStaging:
    """Tests for the push staging primitives."""

    def test_stage_marks_dirty_rows(self, store):
        """Test staging selects dirty and deleted rows in creation order."""
        clean = store.insert_from_remote(_remote(remote_id=1))
        second = store.insert({"title": "second", "created": 3000})
        first = store.insert({"title": "first", "created": 2000})
        deleted = store.insert_from_remote(_remote(remote_id=2, created=4.0))
        store.soft_delete(local_id=deleted)

        staged = store.stage_dirty_entries()

        assert [e.local_id for e in staged] == [first, second, deleted]
        for row in _raw_rows(store):
            if row["local_id"] == clean:
                assert row["pending_tx"] == 0
                assert row["pending_update"] == EntryState.CLEAN
            else:
                assert row["pending_tx"] == 1
                assert row["pending_update"] == EntryState.STAGED

    def test_finish_staging_clears_in_flight(self, store):
        """Test finish_staging resets pending_tx everywhere."""
        store.insert({"title": "a"})
        store.insert({"title": "b"})
        store.stage_dirty_entries()

        assert store.finish_staging() == 2
        assert all(row["pending_tx"] == 0 for row in _raw_rows(store))

    def test_apply_push_result_clears_staged_row(self, store):
        """Test a confirmed push records server fields and cleans the row."""
        local_id = store.insert({"title": "Buy milk"})
        store.stage_dirty_entries()

        store.apply_push_result(
            local_id, _remote(remote_id=42, title="ignored", created=2000.0, modified=2000.5)
        )
        entry = store.get(local_id)

        assert entry.remote_id == 42
        assert entry.title == "Buy milk"
        assert entry.created == 2000000
        assert entry.modified == 2000500
        assert entry.pending_update == EntryState.CLEAN

    def test_apply_push_result_keeps_mid_flight_edit(self, store):
        """Test an edit made during the push leaves the row dirty."""
        local_id = store.insert({"title": "Draft"})
        store.stage_dirty_entries()
        store.update({"title": "Final"}, local_id=local_id)

        store.apply_push_result(local_id, _remote(remote_id=42))
        entry = store.get(local_id)

        assert entry.title == "Final"
        assert entry.pending_update == 1
        assert entry.dirty

    def test_hard_delete(self, store):
        """Test hard delete physically removes the row."""
        local_id = store.insert({"title": "a"})
        store.soft_delete(local_id=local_id)

        assert store.hard_delete(local_id) is True
        assert _raw_rows(store) == []
        assert store.hard_delete(local_id) is False


class TestPullSupport:
    """Tests for the pull merge primitives."""

    def test_insert_from_remote_is_clean(self, store):
        """Test pulled rows are clean with converted timestamps."""
        local_id = store.insert_from_remote(_remote(remote_id=7, complete=True))
        entry = store.get(local_id)

        assert entry.remote_id == 7
        assert entry.complete is True
        assert entry.created == 1000000
        assert entry.modified == 1500000
        assert not entry.dirty

    def test_update_clean_from_remote(self, store):
        """Test a clean row takes remote values when modified differs."""
        local_id = store.insert_from_remote(_remote(remote_id=7, title="Old"))

        count = store.update_clean_from_remote(
            _remote(remote_id=7, title="New", modified=1600.0)
        )

        assert count == 1
        assert store.get(local_id).title == "New"

    def test_update_clean_from_remote_same_modified(self, store):
        """Test an unchanged modified time is a no-op."""
        store.insert_from_remote(_remote(remote_id=7, title="Old"))

        assert store.update_clean_from_remote(_remote(remote_id=7, title="New")) == 0

    def test_update_clean_from_remote_skips_dirty(self, store):
        """Test a dirty row is never overwritten by a pull."""
        local_id = store.insert_from_remote(_remote(remote_id=7, title="Old"))
        store.update({"title": "Mine"}, local_id=local_id)

        count = store.update_clean_from_remote(
            _remote(remote_id=7, title="Theirs", modified=1600.0)
        )

        assert count == 0
        assert store.get(local_id).title == "Mine"

    def test_delete_by_remote_id_ignores_dirtiness(self, store):
        """Test tombstones remove dirty rows too."""
        local_id = store.insert_from_remote(_remote(remote_id=7))
        store.update({"title": "Mine"}, local_id=local_id)

        assert store.delete_by_remote_id(7) == 1
        assert _raw_rows(store) == []

    def test_restore_and_overlay(self, store):
        """Test held rows are re-applied after a clear."""
        synced = store.insert_from_remote(_remote(remote_id=7, title="Old"))
        store.update({"title": "Mine"}, local_id=synced)
        local_only = store.insert({"title": "New"})
        held = store.dirty_entries()
        known = store.remote_id_map()

        store.clear()
        store.insert_from_remote(_remote(remote_id=7, title="Theirs"), local_id=known[7])
        for entry in held:
            if store.overlay_entry(entry) == 0:
                store.restore_entry(entry)

        assert store.get(synced).title == "Mine"
        assert store.get(synced).pending_update == EntryState.DIRTY
        assert store.get(local_only).title == "New"
        assert store.get(local_only).remote_id is None

    def test_remote_id_map(self, store):
        """Test the map covers only rows with a remote id."""
        a = store.insert_from_remote(_remote(remote_id=7))
        store.insert({"title": "local"})

        assert store.remote_id_map() == {7: a}


class TestMetaAndStats:
    """Tests for sync metadata and statistics."""

    def test_meta_roundtrip(self, store):
        """Test meta values are stored and replaced."""
        assert store.get_meta("k") is None
        store.set_meta("k", "1")
        store.set_meta("k", "2")
        assert store.get_meta("k") == "2"

    def test_get_stats(self, store):
        """Test statistics count entries by sync state."""
        store.insert_from_remote(_remote(remote_id=1))
        store.insert({"title": "new"})
        gone = store.insert_from_remote(_remote(remote_id=2))
        store.soft_delete(local_id=gone)

        stats = store.get_stats()

        assert stats["entries_count"] == 2
        assert stats["dirty_count"] == 2
        assert stats["pending_delete_count"] == 1
        assert stats["in_flight_count"] == 0
        assert stats["unsynced_new_count"] == 1


class TestEntry:
    """Tests for the Entry dataclass."""

    def test_to_dict(self):
        """Test serializing an entry for display."""
        entry = Entry(
            local_id=1,
            remote_id=None,
            title="a",
            notes="",
            complete=False,
            created=1,
            modified=2,
            pending_update=2,
        )

        d = entry.to_dict()

        assert d["state"] == "dirty"
        assert d["remote_id"] is None
        assert d["pending_delete"] is False
