"""Local SQLite storage for task entries with sync-state tracking.

Every row carries three bookkeeping flags next to the user data:

- ``pending_update``: 0 = clean, 1 = staged for push, 2 = dirty.
- ``pending_delete``: locally deleted, hidden from queries until the
  remote delete is confirmed.
- ``pending_tx``: the row is part of an in-flight push.
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterator

if TYPE_CHECKING:
    from ..sync.remote_client import RemoteEntry
    from ..sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    local_id INTEGER PRIMARY KEY AUTOINCREMENT,
    remote_id INTEGER UNIQUE DEFAULT NULL,
    title TEXT,
    notes TEXT,
    complete INTEGER NOT NULL DEFAULT 0,
    created INTEGER NOT NULL,
    modified INTEGER NOT NULL,
    pending_tx INTEGER NOT NULL DEFAULT 0,
    pending_update INTEGER NOT NULL DEFAULT 0 CHECK (pending_update >= 0),
    pending_delete INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_entries_created ON entries(created);
CREATE INDEX IF NOT EXISTS idx_entries_pending ON entries(pending_update, pending_delete);

-- Small key/value table for sync bookkeeping (cursor)
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

COLUMNS = (
    "local_id",
    "remote_id",
    "title",
    "notes",
    "complete",
    "created",
    "modified",
    "pending_tx",
    "pending_update",
    "pending_delete",
)

INSERTABLE_FIELDS = frozenset({"title", "notes", "complete", "created", "modified"})
EDITABLE_FIELDS = frozenset({"title", "notes", "complete"})

DEFAULT_TITLE = "Untitled"
DEFAULT_SORT_ORDER = "created ASC"

WHERE_DIRTY = "(pending_delete > 0 OR pending_update > 0)"
WHERE_CLEAN = "(pending_delete = 0 AND pending_update = 0)"
WHERE_VISIBLE = "pending_delete = 0"

ChangeListener = Callable[[int | None], None]


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class EntryState(IntEnum):
    """Named values of the ``pending_update`` flag."""

    CLEAN = 0
    STAGED = 1
    DIRTY = 2


@dataclass
class Entry:
    """A single task entry as stored locally."""

    local_id: int
    remote_id: int | None
    title: str | None
    notes: str | None
    complete: bool
    created: int  # ms since epoch
    modified: int  # ms since epoch
    pending_update: int = 0
    pending_delete: bool = False
    pending_tx: bool = False

    @property
    def state(self) -> EntryState:
        return EntryState(min(self.pending_update, EntryState.DIRTY))

    @property
    def dirty(self) -> bool:
        return self.pending_update > 0 or self.pending_delete

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Entry":
        return cls(
            local_id=row["local_id"],
            remote_id=row["remote_id"],
            title=row["title"],
            notes=row["notes"],
            complete=bool(row["complete"]),
            created=row["created"],
            modified=row["modified"],
            pending_update=row["pending_update"],
            pending_delete=bool(row["pending_delete"]),
            pending_tx=bool(row["pending_tx"]),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display or JSON output."""
        return {
            "local_id": self.local_id,
            "remote_id": self.remote_id,
            "title": self.title,
            "notes": self.notes,
            "complete": self.complete,
            "created": self.created,
            "modified": self.modified,
            "state": self.state.name.lower(),
            "pending_delete": self.pending_delete,
        }


def _validate_fields(fields: dict[str, Any], allowed: frozenset[str]) -> dict[str, Any]:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unsupported entry fields: {', '.join(sorted(unknown))}")
    values = dict(fields)
    if "complete" in values:
        values["complete"] = 1 if values["complete"] else 0
    return values


def _validate_order_by(order_by: str) -> str:
    """Allow only '<column> [ASC|DESC]' terms over known columns."""
    terms = []
    for term in order_by.split(","):
        parts = term.split()
        if not parts or len(parts) > 2 or parts[0] not in COLUMNS:
            raise ValueError(f"Invalid sort order: {order_by!r}")
        if len(parts) == 2 and parts[1].upper() not in ("ASC", "DESC"):
            raise ValueError(f"Invalid sort order: {order_by!r}")
        terms.append(" ".join(parts))
    return ", ".join(terms)


class EntryStore:
    """SQLite-backed entry table with synchronization-aware CRUD.

    Ordinary callers use insert/query/update/soft_delete. The remaining
    mutators exist for the sync engine to finalize push and pull outcomes.
    """

    def __init__(
        self,
        db_path: str | Path,
        scheduler: "SyncScheduler | None" = None,
    ):
        """Initialize the entry store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            scheduler: Collaborator notified when local writes need syncing.
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._scheduler = scheduler
        self._conn: sqlite3.Connection | None = None
        self._listeners: list[ChangeListener] = []
        self._tx_depth = 0
        self._pending_notifications: list[int | None] = []

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode, transactions are managed by transaction()
        self._conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)

        self._recover_interrupted_push()
        logger.info(f"EntryStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("EntryStore connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def _recover_interrupted_push(self) -> None:
        """Clear pending_tx left behind by a push that never finished.

        Such rows still have pending_update >= 1 and are restaged next cycle.
        """
        cursor = self._conn.execute(
            "UPDATE entries SET pending_tx = 0 WHERE pending_tx = 1"
        )
        if cursor.rowcount > 0:
            logger.warning(
                f"Recovered {cursor.rowcount} entries from an interrupted push"
            )

    # ==================== Collaborators ====================

    def set_scheduler(self, scheduler: "SyncScheduler | None") -> None:
        """Attach the scheduler used to request syncs after local writes."""
        self._scheduler = scheduler

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a change observer, called with a local id or None."""
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify_change(self, local_id: int | None = None) -> None:
        if self._tx_depth > 0:
            self._pending_notifications.append(local_id)
            return
        for listener in list(self._listeners):
            try:
                listener(local_id)
            except Exception as e:
                logger.error(f"Change listener failed: {e}")

    def _flush_notifications(self) -> None:
        pending, self._pending_notifications = self._pending_notifications, []
        for local_id in dict.fromkeys(pending):
            self._notify_change(local_id)

    def _request_lazy_sync(self) -> None:
        if self._scheduler is not None:
            self._scheduler.request_lazy_sync()

    # ==================== Transactions ====================

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements atomically.

        Nested use joins the outermost transaction. Change notifications are
        delivered after commit and discarded on rollback.
        """
        conn = self._ensure_connected()
        outermost = self._tx_depth == 0
        if outermost:
            conn.execute("BEGIN IMMEDIATE")
        self._tx_depth += 1
        try:
            yield conn
        except BaseException:
            self._tx_depth -= 1
            if outermost:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                self._pending_notifications.clear()
            raise
        else:
            self._tx_depth -= 1
            if outermost:
                conn.execute("COMMIT")
                self._flush_notifications()

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    # ==================== Local Operations ====================

    def insert(self, fields: dict[str, Any] | None = None) -> int:
        """Insert a new locally created entry.

        Args:
            fields: Any of title, notes, complete, created, modified.
                Omitted values get defaults.

        Returns:
            The new entry's local id.
        """
        values = _validate_fields(fields or {}, INSERTABLE_FIELDS)
        now = now_ms()
        values.setdefault("title", DEFAULT_TITLE)
        values.setdefault("notes", "")
        values.setdefault("complete", 0)
        values.setdefault("created", now)
        values.setdefault("modified", now)
        values["pending_update"] = int(EntryState.DIRTY)
        values["pending_delete"] = 0

        with self.transaction() as conn:
            columns = ", ".join(values)
            placeholders = ", ".join("?" * len(values))
            cursor = conn.execute(
                f"INSERT INTO entries ({columns}) VALUES ({placeholders})",
                tuple(values.values()),
            )
            local_id = cursor.lastrowid
            self._notify_change(local_id)

        logger.debug(f"Inserted entry {local_id}")
        self._request_lazy_sync()
        return local_id

    def query(
        self,
        where: str | None = None,
        params: tuple | list = (),
        order_by: str | None = None,
        local_id: int | None = None,
    ) -> list[Entry]:
        """Get visible entries (soft-deleted rows are never returned).

        Args:
            where: Optional SQL filter using '?' placeholders.
            params: Values for the placeholders in ``where``.
            order_by: Sort order, defaults to creation order ascending.
            local_id: Restrict the query to a single entry.

        Returns:
            List of matching Entry objects.
        """
        conn = self._ensure_connected()

        clauses = [WHERE_VISIBLE]
        args: list[Any] = []
        if local_id is not None:
            clauses.append("local_id = ?")
            args.append(local_id)
        if where:
            clauses.append(f"({where})")
            args.extend(params)

        order = _validate_order_by(order_by or DEFAULT_SORT_ORDER)
        cursor = conn.execute(
            f"SELECT * FROM entries WHERE {' AND '.join(clauses)} ORDER BY {order}",
            args,
        )
        return [Entry.from_row(row) for row in cursor]

    def get(self, local_id: int) -> Entry | None:
        """Get a single visible entry by local id."""
        entries = self.query(local_id=local_id)
        return entries[0] if entries else None

    def update(
        self,
        fields: dict[str, Any],
        where: str | None = None,
        params: tuple | list = (),
        local_id: int | None = None,
    ) -> int:
        """Edit visible entries and mark them dirty.

        Args:
            fields: Any of title, notes, complete.
            where: Optional SQL filter using '?' placeholders.
            params: Values for the placeholders in ``where``.
            local_id: Restrict the update to a single entry.

        Returns:
            Number of entries updated.
        """
        values = _validate_fields(fields, EDITABLE_FIELDS)
        clauses, args = self._visible_filter(where, params, local_id)

        assignments = [f"{column} = ?" for column in values]
        assignments.append("modified = MAX(modified, ?)")
        assignments.append(f"pending_update = {int(EntryState.DIRTY)}")

        with self.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE entries SET {', '.join(assignments)} WHERE {clauses}",
                (*values.values(), now_ms(), *args),
            )
            count = cursor.rowcount
            if count > 0:
                self._notify_change(local_id)

        if count > 0:
            self._request_lazy_sync()
        return count

    def soft_delete(
        self,
        where: str | None = None,
        params: tuple | list = (),
        local_id: int | None = None,
    ) -> int:
        """Hide entries locally until the remote delete is confirmed.

        Returns:
            Number of entries marked for deletion.
        """
        clauses, args = self._visible_filter(where, params, local_id)

        with self.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE entries SET pending_delete = 1 WHERE {clauses}",
                args,
            )
            count = cursor.rowcount
            if count > 0:
                self._notify_change(local_id)

        if count > 0:
            self._request_lazy_sync()
        return count

    def _visible_filter(
        self,
        where: str | None,
        params: tuple | list,
        local_id: int | None,
    ) -> tuple[str, list[Any]]:
        clauses = [WHERE_VISIBLE]
        args: list[Any] = []
        if local_id is not None:
            clauses.append("local_id = ?")
            args.append(local_id)
        if where:
            clauses.append(f"({where})")
            args.extend(params)
        return " AND ".join(clauses), args

    # ==================== Push Support ====================

    def stage_dirty_entries(self) -> list[Entry]:
        """Snapshot dirty rows and mark them staged and in flight.

        Selection and marking happen in one transaction, so a crash leaves
        the rows recognizable by pending_tx = 1.

        Returns:
            Snapshot of the staged rows in creation order.
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                f"SELECT * FROM entries WHERE {WHERE_DIRTY} "
                f"ORDER BY {DEFAULT_SORT_ORDER}, local_id ASC"
            )
            staged = [Entry.from_row(row) for row in cursor]
            conn.execute(
                f"UPDATE entries SET pending_update = {int(EntryState.STAGED)}, "
                f"pending_tx = 1 WHERE {WHERE_DIRTY}"
            )

        logger.debug(f"Staged {len(staged)} entries for push")
        return staged

    def finish_staging(self) -> int:
        """Reset pending_tx on every row still marked in flight."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE entries SET pending_tx = 0 WHERE pending_tx = 1"
            )
        return cursor.rowcount

    def hard_delete(self, local_id: int) -> bool:
        """Physically remove a row once its remote delete is confirmed."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM entries WHERE local_id = ?", (local_id,)
            )
            deleted = cursor.rowcount > 0
            if deleted:
                self._notify_change(local_id)
        return deleted

    def apply_push_result(self, local_id: int, remote: "RemoteEntry") -> bool:
        """Merge server canonical fields after a confirmed create/update.

        Editable fields are left alone because they may have changed again
        since staging. pending_update is decremented, never below zero, so
        an edit that arrived mid-flight keeps the row dirty.
        """
        values = remote.to_values()
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE entries
                SET remote_id = ?,
                    created = ?,
                    modified = ?,
                    pending_update = MAX(pending_update - 1, 0)
                WHERE local_id = ?
                """,
                (values["remote_id"], values["created"], values["modified"], local_id),
            )
            applied = cursor.rowcount > 0
            if applied:
                self._notify_change(local_id)
        return applied

    # ==================== Pull Support ====================

    def has_remote_id(self, remote_id: int) -> bool:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT 1 FROM entries WHERE remote_id = ?", (remote_id,)
        ).fetchone()
        return row is not None

    def delete_by_remote_id(self, remote_id: int) -> int:
        """Remove the row for a remote tombstone, dirty or not."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM entries WHERE remote_id = ?", (remote_id,)
            )
            if cursor.rowcount > 0:
                self._notify_change()
        return cursor.rowcount

    def update_clean_from_remote(self, remote: "RemoteEntry") -> int:
        """Apply a remote change to a clean row whose modified time differs.

        Dirty rows are excluded inside the same statement, so a local edit
        racing with the pull is never overwritten.
        """
        values = remote.to_values()
        with self.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE entries
                SET title = ?, notes = ?, complete = ?, created = ?, modified = ?
                WHERE remote_id = ? AND {WHERE_CLEAN} AND modified != ?
                """,
                (
                    values["title"],
                    values["notes"],
                    values["complete"],
                    values["created"],
                    values["modified"],
                    values["remote_id"],
                    values["modified"],
                ),
            )
            if cursor.rowcount > 0:
                self._notify_change()
        return cursor.rowcount

    def insert_from_remote(
        self, remote: "RemoteEntry", local_id: int | None = None
    ) -> int:
        """Insert a clean row from a remote entry.

        Args:
            remote: Entry as returned by the service.
            local_id: Re-use an existing local identity (full pull).

        Returns:
            Local id of the inserted row.
        """
        values = remote.to_values()
        if local_id is not None:
            values["local_id"] = local_id
        with self.transaction() as conn:
            columns = ", ".join(values)
            placeholders = ", ".join("?" * len(values))
            cursor = conn.execute(
                f"INSERT INTO entries ({columns}) VALUES ({placeholders})",
                tuple(values.values()),
            )
            new_id = cursor.lastrowid
            self._notify_change()
        return new_id

    def dirty_entries(self) -> list[Entry]:
        """All rows with unsynced local changes, including soft-deleted ones."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            f"SELECT * FROM entries WHERE {WHERE_DIRTY} ORDER BY {DEFAULT_SORT_ORDER}"
        )
        return [Entry.from_row(row) for row in cursor]

    def remote_id_map(self) -> dict[int, int]:
        """Map of remote id to local id for every row that has one."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT remote_id, local_id FROM entries WHERE remote_id IS NOT NULL"
        )
        return {row["remote_id"]: row["local_id"] for row in cursor}

    def restore_entry(self, entry: Entry) -> None:
        """Write a held row back verbatim, including its flags and local id."""
        with self.transaction() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO entries ({', '.join(COLUMNS)}) "
                f"VALUES ({', '.join('?' * len(COLUMNS))})",
                self._entry_params(entry),
            )
            self._notify_change(entry.local_id)

    def overlay_entry(self, entry: Entry) -> int:
        """Re-apply a held row over the freshly pulled row with its remote id."""
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE entries
                SET title = ?, notes = ?, complete = ?, created = ?, modified = ?,
                    pending_tx = ?, pending_update = ?, pending_delete = ?
                WHERE remote_id = ?
                """,
                (
                    entry.title,
                    entry.notes,
                    int(entry.complete),
                    entry.created,
                    entry.modified,
                    int(entry.pending_tx),
                    entry.pending_update,
                    int(entry.pending_delete),
                    entry.remote_id,
                ),
            )
            if cursor.rowcount > 0:
                self._notify_change(entry.local_id)
        return cursor.rowcount

    def clear(self) -> int:
        """Delete every row (full sync starts from a blank slate)."""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM entries")
            self._notify_change()
        if cursor.rowcount > 0:
            logger.info(f"Cleared {cursor.rowcount} local entries")
        return cursor.rowcount

    @staticmethod
    def _entry_params(entry: Entry) -> tuple:
        return (
            entry.local_id,
            entry.remote_id,
            entry.title,
            entry.notes,
            int(entry.complete),
            entry.created,
            entry.modified,
            int(entry.pending_tx),
            entry.pending_update,
            int(entry.pending_delete),
        )

    # ==================== Meta ====================

    def get_meta(self, key: str) -> str | None:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT value FROM sync_meta WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value) VALUES (?, ?)",
                (key, value),
            )

    # ==================== Maintenance ====================

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics.

        Returns:
            Dict with entry counts and size info.
        """
        conn = self._ensure_connected()

        stats = {}

        cursor = conn.execute(f"SELECT COUNT(*) FROM entries WHERE {WHERE_VISIBLE}")
        stats["entries_count"] = cursor.fetchone()[0]

        cursor = conn.execute(f"SELECT COUNT(*) FROM entries WHERE {WHERE_DIRTY}")
        stats["dirty_count"] = cursor.fetchone()[0]

        cursor = conn.execute("SELECT COUNT(*) FROM entries WHERE pending_delete = 1")
        stats["pending_delete_count"] = cursor.fetchone()[0]

        cursor = conn.execute("SELECT COUNT(*) FROM entries WHERE pending_tx = 1")
        stats["in_flight_count"] = cursor.fetchone()[0]

        cursor = conn.execute("SELECT COUNT(*) FROM entries WHERE remote_id IS NULL")
        stats["unsynced_new_count"] = cursor.fetchone()[0]

        if isinstance(self.db_path, Path) and self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
