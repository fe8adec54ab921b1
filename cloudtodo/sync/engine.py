"""Sync engine: reconciles the local entry store with the remote service.

A cycle runs stage -> push -> pull:

1. Resolve credentials (failures are counted, the cycle continues).
2. Full sync: wipe the local store and reset the cursor.
   Otherwise: stage dirty rows and push them one by one.
3. Unless the push hit a network or server failure, pull: full pull when
   the cursor is zero, incremental pull otherwise.

Failures are tallied in the returned SyncResult, never raised.
"""

import logging
import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from ..store import Entry, EntryStore
from .credentials import CredentialProvider
from .cursor import SyncCursor
from .remote_client import (
    STATUS_CREATED,
    STATUS_OK,
    AuthenticationError,
    MalformedResponseError,
    NetworkError,
    RemoteClientError,
    RemoteEntryClient,
)

logger = logging.getLogger(__name__)


class SyncState(Enum):
    """Progress of a sync cycle."""

    IDLE = "idle"
    AUTH_RESOLVED = "auth_resolved"
    PUSHED = "pushed"
    PULLED = "pulled"
    DONE = "done"


@dataclass
class SyncResult:
    """Result of a sync cycle."""

    full_sync_requested: bool = False

    # Local changes applied by the pull
    num_inserts: int = 0
    num_updates: int = 0
    num_deletes: int = 0
    num_entries: int = 0
    num_refreshed: int = 0

    # Changes confirmed upstream by the push
    num_upstream_inserts: int = 0
    num_upstream_updates: int = 0
    num_upstream_deletes: int = 0

    # Failure counters
    num_network_errors: int = 0
    num_response_errors: int = 0  # malformed response or server fault
    num_request_errors: int = 0
    num_auth_errors: int = 0
    num_store_errors: int = 0
    invalid_credentials: bool = False

    state: SyncState = SyncState.IDLE
    timestamp: datetime | None = None

    @property
    def updated(self) -> bool:
        """True if the pull changed local rows (push bookkeeping excluded)."""
        return self.num_deletes > 0 or self.num_inserts > 0 or self.num_updates > 0

    @property
    def network_error(self) -> bool:
        return self.num_network_errors > 0

    @property
    def server_error(self) -> bool:
        return self.num_response_errors > 0

    @property
    def authentication_error(self) -> bool:
        return self.num_auth_errors > 0

    @property
    def needs_notification(self) -> bool:
        return self.updated or self.authentication_error

    def record_error(self, phase: str, error: RemoteClientError) -> None:
        """Tally a remote failure under its category."""
        logger.error(f"{phase}, {type(error).__name__}: {error}")
        if isinstance(error, NetworkError):
            self.num_network_errors += 1
        elif isinstance(error, MalformedResponseError):
            self.num_response_errors += 1
        elif isinstance(error, AuthenticationError):
            self.num_auth_errors += 1
            if error.invalid_credentials:
                self.invalid_credentials = True
        else:
            self.num_request_errors += 1

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["timestamp"] = self.timestamp.isoformat() if self.timestamp else None
        data["updated"] = self.updated
        return data


class SyncEngine:
    """Runs sync cycles for one entry store.

    Cycles must not overlap on the same store; callers serialize them
    (see SyncService).
    """

    def __init__(
        self,
        store: EntryStore,
        client: RemoteEntryClient,
        cursor: SyncCursor,
        credentials: CredentialProvider | None = None,
    ):
        """Initialize the sync engine.

        Args:
            store: Local entry store to reconcile.
            client: Client for the remote entries resource.
            cursor: Persisted watermark of the last pull.
            credentials: Optional provider resolved once per cycle.
        """
        self.store = store
        self.client = client
        self.cursor = cursor
        self.credentials = credentials

    async def perform_sync(
        self,
        account: str | None = None,
        full_sync: bool = False,
    ) -> SyncResult:
        """Run one sync cycle.

        Args:
            account: Account to resolve credentials for.
            full_sync: Discard local rows and rebuild from the remote.

        Returns:
            SyncResult with counters; failures are reported, not raised.
        """
        result = SyncResult()
        logger.info(f"Sync started (full={full_sync})")

        await self._resolve_credentials(account, result)
        result.state = SyncState.AUTH_RESOLVED

        try:
            last_sync = self.cursor.get()
            if full_sync:
                self._clear_local_data()
                last_sync = 0.0
            else:
                await self._push(result)
            result.state = SyncState.PUSHED

            if result.network_error or result.server_error:
                logger.warning("Skipping pull after network/server failure")
            else:
                if last_sync > 0:
                    await self._incremental_pull(last_sync, result)
                else:
                    await self._full_pull(result)
                result.state = SyncState.DONE

        except sqlite3.Error as e:
            logger.exception(f"Store failure during sync: {e}")
            result.num_store_errors += 1

        result.timestamp = datetime.now()
        logger.info(
            f"Sync finished: state={result.state.value}, "
            f"pulled +{result.num_inserts}/~{result.num_updates}/-{result.num_deletes}, "
            f"pushed +{result.num_upstream_inserts}/~{result.num_upstream_updates}"
            f"/-{result.num_upstream_deletes}, "
            f"errors net={result.num_network_errors} server={result.num_response_errors} "
            f"request={result.num_request_errors} auth={result.num_auth_errors}"
        )
        return result

    async def _resolve_credentials(self, account: str | None, result: SyncResult) -> None:
        if self.credentials is None:
            return
        try:
            headers = await self.credentials.resolve(account)
        except RemoteClientError as e:
            result.record_error("authentication", e)
            return
        self.client.set_auth_headers(headers)

    def _clear_local_data(self) -> None:
        with self.store.transaction():
            self.store.clear()
            self.cursor.reset()

    # ==================== Push ====================

    async def _push(self, result: SyncResult) -> None:
        """Push every staged row upstream, in creation order."""
        staged = self.store.stage_dirty_entries()
        try:
            for entry in staged:
                try:
                    if entry.pending_delete:
                        await self._push_delete(entry, result)
                    else:
                        await self._push_upsert(entry, result)
                except NetworkError as e:
                    # Remaining rows stay staged and are retried next cycle
                    result.record_error("push", e)
                    break
                except RemoteClientError as e:
                    result.record_error("push", e)
                except sqlite3.Error as e:
                    logger.error(f"push, store failure for entry {entry.local_id}: {e}")
                    result.num_store_errors += 1
        finally:
            self.store.finish_staging()

    async def _push_delete(self, entry: Entry, result: SyncResult) -> None:
        if entry.remote_id is None:
            # Never reached the service, nothing to delete remotely
            self.store.hard_delete(entry.local_id)
            logger.debug(f"Dropped unsynced entry {entry.local_id}")
            return

        response = await self.client.delete(entry.remote_id)
        if response.succeeded or response.gone:
            self.store.hard_delete(entry.local_id)
            result.num_upstream_deletes += 1
        else:
            result.num_request_errors += 1

    async def _push_upsert(self, entry: Entry, result: SyncResult) -> None:
        fields = {"title": entry.title, "notes": entry.notes, "complete": entry.complete}

        if entry.remote_id is None:
            response = await self.client.create(fields)
        else:
            response = await self.client.update(entry.remote_id, fields)

        if response.gone and entry.remote_id is not None:
            # Deleted upstream while we held edits: the remote delete wins
            deleted = self.store.delete_by_remote_id(entry.remote_id)
            result.num_deletes += deleted
            result.num_entries += deleted
            logger.info(f"Entry {entry.remote_id} no longer exists remotely, removed")
            return

        if response.status_code == STATUS_CREATED:
            result.num_upstream_inserts += 1
        elif response.status_code == STATUS_OK:
            result.num_upstream_updates += 1
        else:
            result.num_request_errors += 1
            return

        if response.entry is None:
            raise MalformedResponseError("Push response carried no entry")

        self.store.apply_push_result(entry.local_id, response.entry)

    # ==================== Pull ====================

    async def _incremental_pull(self, since: float, result: SyncResult) -> None:
        """Apply remote changes newer than the cursor in one transaction."""
        try:
            response = await self.client.list(since=since)
        except RemoteClientError as e:
            result.record_error("incremental pull", e)
            return

        if response.rejected:
            # Cursor is outside the service's tombstone window
            logger.info("Incremental pull rejected, full sync requested")
            result.full_sync_requested = True
            return
        if response.status_code != STATUS_OK:
            result.num_request_errors += 1
            return

        with self.store.transaction():
            for remote in response.entries:
                if remote.deleted:
                    deleted = self.store.delete_by_remote_id(remote.id)
                    if deleted > 0:
                        result.num_deletes += deleted
                        result.num_entries += 1
                elif self.store.has_remote_id(remote.id):
                    updated = self.store.update_clean_from_remote(remote)
                    if updated > 0:
                        result.num_updates += updated
                        result.num_entries += 1
                else:
                    self.store.insert_from_remote(remote)
                    result.num_inserts += 1
                    result.num_entries += 1

            if self.cursor.transactional:
                self.cursor.set(response.timestamp)

        # A cursor outside the store only advances once the batch committed
        if not self.cursor.transactional:
            self.cursor.set(response.timestamp)
        result.state = SyncState.PULLED

    async def _full_pull(self, result: SyncResult) -> None:
        """Rebuild the table from the full remote list, keeping dirty rows."""
        try:
            response = await self.client.list()
        except RemoteClientError as e:
            result.record_error("full pull", e)
            return

        if response.status_code != STATUS_OK:
            result.num_request_errors += 1
            return

        with self.store.transaction():
            held = self.store.dirty_entries()
            known = self.store.remote_id_map()

            self.store.clear()
            for remote in response.entries:
                if remote.deleted:
                    continue
                self.store.insert_from_remote(remote, local_id=known.get(remote.id))
                result.num_refreshed += 1

            # Unsynced edits and deletes survive the rebuild
            for entry in held:
                if self.store.overlay_entry(entry) == 0:
                    self.store.restore_entry(entry)

            if self.cursor.transactional:
                self.cursor.set(response.timestamp)

        if not self.cursor.transactional:
            self.cursor.set(response.timestamp)
        result.state = SyncState.PULLED
        logger.info(
            f"Full pull loaded {result.num_refreshed} entries, "
            f"re-applied {len(held)} local changes"
        )
