"""Local entry storage for cloudtodo.

Provides the SQLite entry table with per-row sync-state flags:
- Ordinary CRUD for callers (insert, query, update, soft delete)
- Staging and merge primitives used by the sync engine
"""

from .entry_store import DEFAULT_TITLE, Entry, EntryState, EntryStore

__all__ = ["DEFAULT_TITLE", "Entry", "EntryState", "EntryStore"]
