"""Persisted watermark of the last successful pull."""

import logging
from abc import ABC, abstractmethod
from pathlib import Path

from ..store import EntryStore

logger = logging.getLogger(__name__)

CURSOR_KEY = "last_sync_time"


class SyncCursor(ABC):
    """A single float, 0.0 meaning "never synced"."""

    # True when set() joins an open store transaction
    transactional = False

    @abstractmethod
    def get(self) -> float:
        pass

    @abstractmethod
    def set(self, value: float) -> None:
        pass

    def reset(self) -> None:
        self.set(0.0)


class StoreSyncCursor(SyncCursor):
    """Cursor kept in the entry store's meta table.

    Writes join any open store transaction, so advancing the cursor commits
    together with the pull batch that produced it.
    """

    transactional = True

    def __init__(self, store: EntryStore):
        self.store = store

    def get(self) -> float:
        value = self.store.get_meta(CURSOR_KEY)
        if value is None:
            return 0.0
        try:
            return float(value)
        except ValueError:
            logger.error(f"Invalid stored sync cursor {value!r}, resetting")
            return 0.0

    def set(self, value: float) -> None:
        self.store.set_meta(CURSOR_KEY, f"{value:f}")


class FileSyncCursor(SyncCursor):
    """Cursor kept in a small text file."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        self._value: float | None = None

    def get(self) -> float:
        if self._value is None:
            self._value = self._load()
        return self._value

    def _load(self) -> float:
        try:
            return float(self.path.read_text().strip())
        except FileNotFoundError:
            return 0.0
        except (OSError, ValueError) as e:
            logger.error(f"Failed to retrieve last sync time from {self.path}: {e}")
            return 0.0

    def set(self, value: float) -> None:
        self._value = value
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(f"{value:f}")
        except OSError as e:
            logger.error(f"Failed to save last sync time to {self.path}: {e}")
