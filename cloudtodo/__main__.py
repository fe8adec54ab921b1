"""CLI entry point for cloudtodo."""

import argparse
import asyncio
import inspect
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .store import EntryStore
from .sync import (
    FileSyncCursor,
    RemoteEntryClient,
    StaticTokenCredentials,
    StoreSyncCursor,
    SyncCursor,
    SyncEngine,
    SyncResult,
    SyncService,
)

LOG_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

TEXT_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


class JSONLogFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def resolve_log_level(verbose: bool = False, log_level: str | None = None) -> int:
    """Pick the root level; an explicit --log-level beats -v."""
    if log_level:
        return LOG_LEVELS[log_level]
    return logging.DEBUG if verbose else logging.WARNING


def setup_logging(level: int, json_output: bool = False) -> None:
    """Send log records to stderr as text or JSON lines.

    httpx logs every request at INFO, so it stays at WARNING unless the
    root level is DEBUG.
    """
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JSONLogFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    logging.basicConfig(level=level, handlers=[handler])
    if level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)


def _open_store(config: Config) -> EntryStore:
    store = EntryStore(config.store.db_path)
    store.connect()
    return store


def _build_cursor(config: Config, store: EntryStore) -> SyncCursor:
    if config.store.cursor_path:
        return FileSyncCursor(config.store.cursor_path)
    return StoreSyncCursor(store)


def _build_service(config: Config, store: EntryStore) -> tuple[SyncService, RemoteEntryClient]:
    """Wire client, cursor, credentials and engine into a sync service."""
    client = RemoteEntryClient(
        base_url=config.remote.base_url,
        entries_path=config.remote.entries_path,
        timeout=config.remote.timeout,
        max_retries=config.remote.max_retries,
        retry_backoff=config.remote.retry_backoff_seconds,
    )
    credentials = None
    if config.auth.token:
        credentials = StaticTokenCredentials(config.auth.token)

    engine = SyncEngine(store, client, _build_cursor(config, store), credentials)
    service = SyncService(
        engine,
        account=config.auth.account,
        interval=config.sync.interval_seconds,
        lazy_delay=config.sync.lazy_delay_seconds,
        network_retry=config.sync.network_retry_seconds,
        offline_mode=config.sync.offline_mode,
        on_result=_report_changes,
    )
    return service, client


def _report_changes(result: SyncResult) -> None:
    if result.authentication_error:
        print("Sync: authentication failed, check the configured token", file=sys.stderr)
    if result.updated:
        print(
            f"Sync: {result.num_inserts} new, {result.num_updates} changed, "
            f"{result.num_deletes} removed"
        )


def cmd_add(args: argparse.Namespace) -> int:
    """Add a new entry."""
    store = _open_store(load_config(args.config))
    try:
        fields = {"title": args.title}
        if args.notes is not None:
            fields["notes"] = args.notes
        local_id = store.insert(fields)
    finally:
        store.close()

    print(f"Added entry {local_id}")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    """List visible entries."""
    store = _open_store(load_config(args.config))
    try:
        entries = store.query()
    finally:
        store.close()

    if args.json_output:
        print(json.dumps([entry.to_dict() for entry in entries], indent=2))
        return 0

    if not entries:
        print("No entries.")
        return 0

    for entry in entries:
        mark = "x" if entry.complete else " "
        sync_mark = "*" if entry.dirty else " "
        print(f"[{mark}]{sync_mark}{entry.local_id:>4}  {entry.title or ''}")
        if entry.notes:
            print(f"          {entry.notes}")
    return 0


def _edit(args: argparse.Namespace, fields: dict) -> int:
    store = _open_store(load_config(args.config))
    try:
        count = store.update(fields, local_id=args.id)
    finally:
        store.close()

    if count == 0:
        print(f"Error: entry {args.id} not found", file=sys.stderr)
        return 1
    print(f"Updated entry {args.id}")
    return 0


def cmd_edit(args: argparse.Namespace) -> int:
    """Edit title and/or notes of an entry."""
    fields = {}
    if args.title is not None:
        fields["title"] = args.title
    if args.notes is not None:
        fields["notes"] = args.notes
    if not fields:
        print("Error: nothing to change (use --title and/or --notes)", file=sys.stderr)
        return 1
    return _edit(args, fields)


def cmd_done(args: argparse.Namespace) -> int:
    """Mark an entry complete (or incomplete with --undo)."""
    return _edit(args, {"complete": not args.undo})


def cmd_rm(args: argparse.Namespace) -> int:
    """Delete an entry."""
    store = _open_store(load_config(args.config))
    try:
        count = store.soft_delete(local_id=args.id)
    finally:
        store.close()

    if count == 0:
        print(f"Error: entry {args.id} not found", file=sys.stderr)
        return 1
    print(f"Deleted entry {args.id}")
    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run a single sync cycle."""
    config = load_config(args.config)
    store = _open_store(config)
    service, client = _build_service(config, store)

    try:
        result = await service.run_cycle(full_sync=args.full, reschedule=False)
    finally:
        await client.close()
        store.close()

    if result is None:
        print("Offline mode enabled, sync skipped")
        return 0

    print(
        f"Sync {result.state.value}: "
        f"pushed {result.num_upstream_inserts} new, {result.num_upstream_updates} changed, "
        f"{result.num_upstream_deletes} deleted; "
        f"pulled {result.num_inserts} new, {result.num_updates} changed, "
        f"{result.num_deletes} removed"
    )
    if result.num_refreshed:
        print(f"Full pull loaded {result.num_refreshed} entries")

    failed = (
        result.network_error
        or result.server_error
        or result.authentication_error
        or result.num_store_errors > 0
    )
    if failed:
        print(
            f"Sync errors: network={result.num_network_errors}, "
            f"server={result.num_response_errors}, request={result.num_request_errors}, "
            f"auth={result.num_auth_errors}, store={result.num_store_errors}",
            file=sys.stderr,
        )
        return 1
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show local store and sync status."""
    config = load_config(args.config)
    store = _open_store(config)
    try:
        stats = store.get_stats()
        last_sync = _build_cursor(config, store).get()
    finally:
        store.close()

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "store": {"db_path": config.store.db_path, **stats},
        "remote": {
            "base_url": config.remote.base_url,
            "entries_path": config.remote.entries_path,
        },
        "sync": {
            "offline_mode": config.sync.offline_mode,
            "interval_seconds": config.sync.interval_seconds,
            "last_sync": last_sync,
            "account": config.auth.account,
        },
    }

    if args.json_output:
        print(json.dumps(status_data, indent=2))
        return 0

    print("cloudtodo Status")
    print("================")
    print(f"Store ({config.store.db_path}):")
    print(f"  Entries: {stats['entries_count']}")
    print(f"  Unsynced changes: {stats['dirty_count']}")
    print(f"  Pending deletes: {stats['pending_delete_count']}")
    print(f"  Never uploaded: {stats['unsynced_new_count']}")
    print()
    print(f"Remote ({config.remote.base_url}{config.remote.entries_path}):")
    if last_sync > 0:
        print(f"  Last sync: {datetime.fromtimestamp(last_sync).isoformat()}")
    else:
        print("  Last sync: never")
    print(f"  Offline mode: {'Yes' if config.sync.offline_mode else 'No'}")
    return 0


async def cmd_run(args: argparse.Namespace) -> int:
    """Keep syncing in the foreground."""
    config = load_config(args.config)
    store = _open_store(config)
    service, client = _build_service(config, store)
    store.set_scheduler(service)

    print(f"Syncing {config.store.db_path} with {config.remote.base_url}")
    print(f"Interval: {config.sync.interval_seconds}s (Ctrl+C to stop)")

    try:
        await service.serve()
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        await service.close()
        await client.close()
        store.close()

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="cloudtodo",
        description="Offline-first todo list synchronized with a remote service",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=list(LOG_LEVELS),
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    add_parser = subparsers.add_parser("add", help="Add an entry")
    add_parser.add_argument("title", help="Entry title")
    add_parser.add_argument("--notes", default=None, help="Entry notes")
    add_parser.set_defaults(func=cmd_add)

    list_parser = subparsers.add_parser("list", help="List entries")
    list_parser.add_argument(
        "--json",
        dest="json_output",
        action="store_true",
        help="Output entries as JSON",
    )
    list_parser.set_defaults(func=cmd_list)

    edit_parser = subparsers.add_parser("edit", help="Edit an entry")
    edit_parser.add_argument("id", type=int, help="Local entry id")
    edit_parser.add_argument("--title", default=None, help="New title")
    edit_parser.add_argument("--notes", default=None, help="New notes")
    edit_parser.set_defaults(func=cmd_edit)

    done_parser = subparsers.add_parser("done", help="Mark an entry complete")
    done_parser.add_argument("id", type=int, help="Local entry id")
    done_parser.add_argument(
        "--undo",
        action="store_true",
        help="Mark the entry incomplete instead",
    )
    done_parser.set_defaults(func=cmd_done)

    rm_parser = subparsers.add_parser("rm", help="Delete an entry")
    rm_parser.add_argument("id", type=int, help="Local entry id")
    rm_parser.set_defaults(func=cmd_rm)

    sync_parser = subparsers.add_parser("sync", help="Run one sync cycle")
    sync_parser.add_argument(
        "--full",
        action="store_true",
        help="Discard local data and rebuild it from the remote",
    )
    sync_parser.set_defaults(func=cmd_sync)

    status_parser = subparsers.add_parser("status", help="Show store and sync status")
    status_parser.add_argument(
        "--json",
        dest="json_output",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    run_parser = subparsers.add_parser("run", help="Keep syncing in the foreground")
    run_parser.set_defaults(func=cmd_run)

    args = parser.parse_args()

    setup_logging(resolve_log_level(args.verbose, args.log_level), args.json)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if inspect.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
