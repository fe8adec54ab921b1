"""Sync scheduling.

The entry store asks its scheduler for a lazy sync after every local write.
SyncService is the asyncio implementation: it coalesces those requests,
serializes cycles and re-arms the periodic sync after each one.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

from .engine import SyncEngine, SyncResult

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 900.0
LAZY_SYNC_DELAY_SECONDS = 5.0
NETWORK_RETRY_SECONDS = 30.0


class SyncScheduler(ABC):
    """Receives sync requests from the store and the application."""

    @abstractmethod
    def request_immediate_sync(self) -> None:
        pass

    @abstractmethod
    def request_lazy_sync(self) -> None:
        """Sync soon, coalescing bursts of local writes into one cycle."""
        pass

    @abstractmethod
    def request_full_sync(self) -> None:
        pass

    @abstractmethod
    def schedule_sync(self, delay: float | None = None) -> None:
        """Arm the next sync ``delay`` seconds out (periodic interval if None)."""
        pass

    @abstractmethod
    def cancel_pending_sync(self) -> None:
        pass


class NullScheduler(SyncScheduler):
    """Scheduler that ignores every request."""

    def request_immediate_sync(self) -> None:
        pass

    def request_lazy_sync(self) -> None:
        pass

    def request_full_sync(self) -> None:
        pass

    def schedule_sync(self, delay: float | None = None) -> None:
        pass

    def cancel_pending_sync(self) -> None:
        pass


class SyncService(SyncScheduler):
    """Drives a SyncEngine from the running asyncio event loop."""

    def __init__(
        self,
        engine: SyncEngine,
        account: str | None = None,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        lazy_delay: float = LAZY_SYNC_DELAY_SECONDS,
        network_retry: float = NETWORK_RETRY_SECONDS,
        offline_mode: bool = False,
        on_result: Callable[[SyncResult], None] | None = None,
    ):
        """Initialize the sync service.

        Args:
            engine: Engine that performs the cycles.
            account: Account passed to every cycle.
            interval: Seconds between periodic syncs.
            lazy_delay: Seconds a lazy request waits for further writes.
            network_retry: Seconds before retrying after a network failure.
            offline_mode: Skip all cycles.
            on_result: Called with results that changed local data or
                failed authentication.
        """
        self.engine = engine
        self.account = account
        self.interval = interval
        self.lazy_delay = lazy_delay
        self.network_retry = network_retry
        self.offline_mode = offline_mode
        self.on_result = on_result

        self._timer: asyncio.TimerHandle | None = None
        self._pending_full = False
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._closed = False
        self.last_result: SyncResult | None = None

    @property
    def pending(self) -> bool:
        """True if a sync is armed."""
        return self._timer is not None

    def request_immediate_sync(self) -> None:
        self.schedule_sync(0)

    def request_lazy_sync(self) -> None:
        if self._pending_full and self._timer is not None:
            # An immediate full sync is already armed
            return
        self.schedule_sync(self.lazy_delay)

    def request_full_sync(self) -> None:
        self._pending_full = True
        self.schedule_sync(0)

    def schedule_sync(self, delay: float | None = None) -> None:
        if self._closed:
            return
        if delay is None:
            delay = self.interval

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, sync not scheduled")
            return

        self.cancel_pending_sync()
        self._timer = loop.call_later(delay, self._start_cycle)
        logger.debug(f"Sync scheduled in {delay}s")

    def cancel_pending_sync(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _start_cycle(self) -> None:
        self._timer = None
        full_sync, self._pending_full = self._pending_full, False
        task = asyncio.get_running_loop().create_task(self.run_cycle(full_sync=full_sync))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def run_cycle(
        self,
        full_sync: bool = False,
        reschedule: bool = True,
    ) -> SyncResult | None:
        """Run one sync cycle and apply the follow-up policy.

        Args:
            full_sync: Rebuild the local store from the remote.
            reschedule: Arm the next sync according to the result.

        Returns:
            The final SyncResult, or None in offline mode.
        """
        if self.offline_mode:
            logger.info("Offline mode, sync skipped")
            return None

        async with self._lock:
            result = await self.engine.perform_sync(self.account, full_sync=full_sync)
            if result.full_sync_requested and not full_sync:
                logger.info("Incremental sync refused, running a full sync")
                result = await self.engine.perform_sync(self.account, full_sync=True)
            self.last_result = result

        if self.on_result is not None and result.needs_notification:
            try:
                self.on_result(result)
            except Exception as e:
                logger.error(f"Sync result callback failed: {e}")

        if reschedule:
            self._reschedule(result)
        return result

    def _reschedule(self, result: SyncResult) -> None:
        if self._timer is not None:
            # A request arrived during the cycle and is already armed
            return
        if result.network_error:
            logger.info(f"Network failure, retrying sync in {self.network_retry}s")
            self.schedule_sync(self.network_retry)
        elif result.server_error:
            logger.warning("Server failure, periodic sync suspended until next request")
        else:
            self.schedule_sync()

    async def serve(self, stop_event: asyncio.Event | None = None) -> None:
        """Sync immediately, then keep syncing until ``stop_event`` is set."""
        self._closed = False
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Sync service started (interval={self.interval}s)")

        self.request_immediate_sync()
        try:
            await stop_event.wait()
        finally:
            await self.close()
        logger.info("Sync service stopped")

    async def close(self) -> None:
        """Disarm the timer and wait for an in-flight cycle to finish."""
        self._closed = True
        self.cancel_pending_sync()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status."""
        return {
            "offline_mode": self.offline_mode,
            "interval_seconds": self.interval,
            "pending": self.pending,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }
