"""Command-line interface for fieldsync.

Commands:
    serve                         Start the sync server
    enqueue <type> <payload>      Queue an event for sending
    queue list|failed|clear-failed|clear|progress
    sync now|status               Run one sync cycle / show sync status
    conflicts                     List conflicts waiting for a decision
    resolve <id> (--local|--remote|--value JSON)
    storage status|cleanup|wipe   Inspect or clean local storage
    feed [--cursor C]             Show one page of the server feed
    config show|set <key> <value>
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from .background import BackgroundSync
from .config import DEFAULT_SYNC_CONFIG, Config
from .conflicts import ConflictNotFoundError, ConflictResolver
from .connectivity import ConnectivityMonitor, probe_for_url
from .database import Database
from .event_store import EventStore
from .models import ConflictRecord, Priority, QueueItem
from .outbox import OutboxStore
from .scheduler import RetryScheduler
from .storage import StorageSteward, format_bytes
from .sync import create_sync_server
from .sync_client import SyncClient
from .sync_queue import RetryPolicy, SyncQueue
from .timestamp_utils import format_epoch
from .validation import ValidationError


def format_queue_item(item: QueueItem) -> str:
    """Format a queue item as one line of text."""
    state = "FAILED" if item.is_terminal else "pending"
    line = (
        f"[{item.id[:8]}] {item.priority.value:<6} {item.type:<12} "
        f"attempts {item.attempts}/{item.max_attempts} {state}"
    )
    if item.next_retry_at is not None:
        line += f" (retry at {format_epoch(item.next_retry_at)})"
    if item.error:
        line += f" - {item.error}"
    return line


def _conflict_to_dict(conflict: ConflictRecord) -> Dict[str, Any]:
    return {
        "id": conflict.id,
        "record_id": conflict.record_id,
        "type": conflict.type,
        "field": conflict.conflicting_field,
        "local": conflict.local_version,
        "remote": conflict.remote_version,
        "created_at": conflict.created_at,
    }


def _print_items(items: List[QueueItem], args: argparse.Namespace, empty_message: str) -> None:
    if args.format == "json":
        print(json.dumps([item.to_dict() for item in items], indent=2))
        return
    if not items:
        print(empty_message)
        return
    for item in items:
        print(format_queue_item(item))


def build_background_sync(
    db: Database,
    config: Config,
    monitor: Optional[ConnectivityMonitor] = None,
) -> BackgroundSync:
    """Wire up the client components over one database.

    Args:
        db: Client database
        config: Config instance
        monitor: Connectivity monitor (default: TCP probe of the server URL)

    Returns:
        BackgroundSync ready for attempt_sync()
    """
    if monitor is None:
        monitor = ConnectivityMonitor(probe=probe_for_url(config.get_server_url()))
    queue = SyncQueue(db, RetryPolicy.from_config(config))
    client = SyncClient(db, config)
    scheduler = RetryScheduler.from_config(queue, monitor, client.send_item, config)
    storage = StorageSteward(
        db,
        quota_bytes=int(config.get_sync_value("storage_quota_bytes")),
        low_threshold=float(config.get_sync_value("low_storage_threshold")),
        retention_days=int(config.get_sync_value("retention_days")),
    )
    return BackgroundSync(OutboxStore(db), scheduler, client, storage=storage)


# ===== Server =====

def cmd_serve(config: Config, args: argparse.Namespace) -> int:
    """Start the sync server.

    Args:
        config: Config instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    port = args.port or config.get_sync_server_port()
    store = EventStore(config.get_server_database_file())
    app = create_sync_server(store, config)

    print(f"Serving sync endpoints on http://{args.host}:{port}/sync")
    print("Press Ctrl+C to stop.")
    try:
        app.run(host=args.host, port=port, debug=args.debug, threaded=True)
    finally:
        store.close()
    return 0


# ===== Queue =====

def cmd_enqueue(db: Database, config: Config, args: argparse.Namespace) -> int:
    """Queue an event for sending."""
    queue = SyncQueue(db, RetryPolicy.from_config(config))
    item_id = queue.enqueue(args.type, args.payload, args.priority)
    if args.format == "json":
        print(json.dumps({"id": item_id}))
    else:
        print(f"Queued {args.type} event {item_id} ({args.priority})")
    return 0


def cmd_queue(db: Database, config: Config, args: argparse.Namespace) -> int:
    """Inspect or clear the local queue."""
    queue = SyncQueue(db, RetryPolicy.from_config(config))
    command = args.queue_command

    if command == "list":
        items = queue.list_by_priority(args.priority) if args.priority else queue.list_all()
        _print_items(items, args, "Queue is empty.")
    elif command == "failed":
        _print_items(queue.list_failed(), args, "No failed items.")
    elif command == "clear-failed":
        removed = queue.clear_failed()
        print(f"Removed {removed} failed items.")
    elif command == "clear":
        if not args.yes:
            print("Error: clearing the queue discards unsent events. Pass --yes to confirm.",
                  file=sys.stderr)
            return 1
        removed = queue.clear()
        print(f"Removed {removed} items.")
    elif command == "progress":
        progress = queue.progress()
        if args.format == "json":
            print(json.dumps(asdict(progress), indent=2))
        else:
            print(f"Pending:   {progress.pending}")
            print(f"Completed: {progress.completed}")
            print(f"Failed:    {progress.failed}")
            print(f"Total:     {progress.total}")
            print(f"Estimated time: {progress.estimated_time_ms / 1000:.1f}s")
    else:
        print("Error: No queue command specified. Use 'queue --help'.", file=sys.stderr)
        return 1
    return 0


# ===== Sync =====

def cmd_sync_now(db: Database, config: Config, args: argparse.Namespace) -> int:
    """Run one sync cycle against the configured server.

    Returns:
        Exit code (0 if the cycle ran and nothing failed, 1 otherwise)
    """
    background = build_background_sync(db, config)
    background.scheduler.monitor.probe()
    summary = background.attempt_sync()

    if args.format == "json":
        print(json.dumps({
            "skipped": summary.skipped,
            "replayed": summary.replayed,
            "sent": summary.drain.completed,
            "failed": summary.drain.failed,
            "terminal": summary.drain.terminal,
            "received": summary.feed.get("applied", 0),
            "resynced": summary.feed.get("resynced", False),
            "error": summary.feed.get("error"),
        }, indent=2))
    elif summary.skipped:
        print(f"Sync skipped: {summary.skipped}")
    else:
        print(f"Replayed {summary.replayed} outbox requests")
        print(f"Sent {summary.drain.completed} events, {summary.drain.failed} failed")
        if summary.drain.terminal:
            print(f"  {summary.drain.terminal} events failed permanently (see 'queue failed')")
        print(f"Received {summary.feed.get('applied', 0)} events")
        if summary.feed.get("resynced"):
            print("  Cursor was stale; performed a full resync")
        if summary.feed.get("error"):
            print(f"  Feed error: {summary.feed['error']}")

    if summary.skipped or summary.drain.failed or not summary.feed.get("success"):
        return 1
    return 0


def cmd_sync_status(db: Database, config: Config, args: argparse.Namespace) -> int:
    """Show sync status: server reachability, queue, cursor and conflicts."""
    queue = SyncQueue(db, RetryPolicy.from_config(config))
    client = SyncClient(db, config)
    server = client.check_status()
    progress = queue.progress()
    unresolved = ConflictResolver(db).get_unresolved_count()

    status = {
        "server_url": config.get_server_url(),
        "reachable": server.get("reachable", False),
        "owner_id": config.get_owner_id(),
        "device_id": config.get_device_id_hex(),
        "device_name": config.get_device_name(),
        "pending": progress.pending,
        "failed": progress.failed,
        "cursor": client.get_cursor(),
        "unresolved_conflicts": unresolved,
    }
    if args.format == "json":
        print(json.dumps(status, indent=2))
    else:
        print(f"Server: {status['server_url']} "
              f"({'reachable' if status['reachable'] else 'unreachable'})")
        print(f"Owner ID: {status['owner_id'] or '(not set)'}")
        print(f"Device: {status['device_name']} ({status['device_id']})")
        print(f"Queue: {status['pending']} pending, {status['failed']} failed")
        print(f"Feed cursor: {status['cursor'] or '(none)'}")
        if unresolved:
            print(f"\nUnresolved Conflicts: {unresolved}")
    return 0


def cmd_feed(db: Database, config: Config, args: argparse.Namespace) -> int:
    """Show one page of the server feed without moving the stored cursor."""
    client = SyncClient(db, config)
    cursor = args.cursor if args.cursor is not None else client.get_cursor()
    result = client.fetch_feed(cursor, args.limit)
    if not result.get("success"):
        print(f"Error: {result.get('error')}", file=sys.stderr)
        return 1

    events = result["events"]
    if args.format == "json":
        print(json.dumps([event.to_dict() for event in events], indent=2))
    else:
        if result["stale"]:
            print(f"Cursor '{cursor}' is stale; a full resync is needed.")
        elif not events:
            print("No new events.")
        for event in events:
            print(f"{event.created_at}  [{event.id[:8]}] {event.type:<12} {event.payload[:60]}")
    return 0


# ===== Conflicts =====

def cmd_conflicts(db: Database, args: argparse.Namespace) -> int:
    """List conflicts waiting for a manual decision."""
    pending = ConflictResolver(db).pending_manual_conflicts()

    if args.format == "json":
        print(json.dumps([_conflict_to_dict(c) for c in pending], indent=2))
        return 0
    if not pending:
        print("No unresolved conflicts.")
        return 0

    print(f"Unresolved Conflicts ({len(pending)}):\n")
    for c in pending:
        local = json.dumps(c.local_version.get(c.conflicting_field))
        remote = json.dumps(c.remote_version.get(c.conflicting_field))
        print(f"  [{c.id[:8]}] {c.type} {c.record_id} - {c.conflicting_field}: {local} vs {remote}")
    return 0


def cmd_resolve(db: Database, args: argparse.Namespace) -> int:
    """Resolve a pending manual conflict.

    The conflict ID may be given as a prefix, as shown by 'conflicts'.
    """
    resolver = ConflictResolver(db)
    matches = [
        c for c in resolver.pending_manual_conflicts()
        if c.id.startswith(args.conflict_id) or c.record_id == args.conflict_id
    ]
    if not matches:
        print(f"Error: No pending conflict matching '{args.conflict_id}'", file=sys.stderr)
        return 1
    if len({c.id for c in matches}) > 1:
        print(f"Error: '{args.conflict_id}' matches {len(matches)} conflicts; use a longer prefix",
              file=sys.stderr)
        return 1
    conflict = matches[0]

    if args.local:
        value = conflict.local_version
    elif args.remote:
        value = conflict.remote_version
    else:
        try:
            value = json.loads(args.value)
        except ValueError as e:
            raise ValidationError("value", f"not valid JSON: {e}") from None

    resolver.resolve_manually(conflict.id, value)
    print(f"Resolved conflict {conflict.id[:8]} for {conflict.type} {conflict.record_id}")
    return 0


# ===== Storage =====

def cmd_storage(db: Database, config: Config, args: argparse.Namespace) -> int:
    """Inspect or clean local storage."""
    steward = StorageSteward(
        db,
        quota_bytes=int(config.get_sync_value("storage_quota_bytes")),
        low_threshold=float(config.get_sync_value("low_storage_threshold")),
        retention_days=int(config.get_sync_value("retention_days")),
    )
    command = args.storage_command

    if command == "status":
        info = steward.get_storage_info()
        breakdown = steward.size_breakdown()
        if args.format == "json":
            print(json.dumps({
                "usage": info.usage,
                "quota": info.quota,
                "usage_percent": round(info.usage_percent, 1),
                "available": info.available,
                "low": steward.is_storage_low(),
                "breakdown": breakdown,
            }, indent=2))
        else:
            print(f"Usage: {format_bytes(info.usage)} / {format_bytes(info.quota)} "
                  f"({info.usage_percent:.1f}%)")
            if steward.is_storage_low():
                print("Warning: storage is running low")
            for table, size in breakdown.items():
                print(f"  {table}: {format_bytes(size)}")
    elif command == "cleanup":
        result = steward.evict_stale()
        print(f"Removed {result.items_removed} stale items, freed {format_bytes(result.bytes_freed)}")
    elif command == "wipe":
        if not args.yes:
            print("Error: wipe deletes all unsent events and sync state. Pass --yes to confirm.",
                  file=sys.stderr)
            return 1
        steward.wipe()
        print("All local sync data deleted.")
    else:
        print("Error: No storage command specified. Use 'storage --help'.", file=sys.stderr)
        return 1
    return 0


# ===== Config =====

def cmd_config(config: Config, args: argparse.Namespace) -> int:
    """Show or change configuration."""
    if args.config_command == "show":
        print(json.dumps(config.config_data, indent=2))
        return 0
    if args.config_command == "set":
        if args.key in DEFAULT_SYNC_CONFIG:
            try:
                value = json.loads(args.value)
            except ValueError:
                value = args.value
            config.set_sync_value(args.key, value)
        else:
            config.set(args.key, args.value)
        print(f"Set {args.key}")
        return 0
    print("Error: No config command specified. Use 'config --help'.", file=sys.stderr)
    return 1


def add_cli_subparsers(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add all fieldsync commands.

    Args:
        subparsers: Parent subparsers object to add commands to
    """
    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the sync server")
    serve_parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (default: 8384 or from config)"
    )
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    # enqueue
    enqueue_parser = subparsers.add_parser("enqueue", help="Queue an event for sending")
    enqueue_parser.add_argument("type", type=str, help="Event type (e.g. attendance, photo)")
    enqueue_parser.add_argument("payload", type=str, help="Event payload (opaque string)")
    enqueue_parser.add_argument(
        "--priority",
        choices=[p.value for p in Priority],
        default=Priority.MEDIUM.value,
        help="Sync priority (default: medium)"
    )

    # queue
    queue_parser = subparsers.add_parser("queue", help="Inspect the local queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")
    list_parser = queue_subparsers.add_parser("list", help="List queued items")
    list_parser.add_argument(
        "--priority",
        choices=[p.value for p in Priority],
        default=None,
        help="Only show one priority class"
    )
    queue_subparsers.add_parser("failed", help="List permanently failed items")
    queue_subparsers.add_parser("clear-failed", help="Delete permanently failed items")
    clear_parser = queue_subparsers.add_parser("clear", help="Delete every queued item")
    clear_parser.add_argument("--yes", action="store_true", help="Confirm deletion")
    queue_subparsers.add_parser("progress", help="Show sync progress")

    # sync
    sync_parser = subparsers.add_parser("sync", help="Sync operations (now, status)")
    sync_subparsers = sync_parser.add_subparsers(dest="sync_command", help="Sync commands")
    sync_subparsers.add_parser("now", help="Run one sync cycle")
    sync_subparsers.add_parser("status", help="Show sync status")

    # feed
    feed_parser = subparsers.add_parser("feed", help="Show one page of the server feed")
    feed_parser.add_argument(
        "--cursor",
        type=str,
        default=None,
        help="Cursor to read after (default: stored cursor; '' for the beginning)"
    )
    feed_parser.add_argument("--limit", type=int, default=None, help="Page size")

    # conflicts / resolve
    subparsers.add_parser("conflicts", help="List conflicts waiting for a decision")
    resolve_parser = subparsers.add_parser("resolve", help="Resolve a pending conflict")
    resolve_parser.add_argument("conflict_id", type=str, help="Conflict ID (or prefix) or record ID")
    choice = resolve_parser.add_mutually_exclusive_group(required=True)
    choice.add_argument("--local", action="store_true", help="Keep the local version")
    choice.add_argument("--remote", action="store_true", help="Keep the remote version")
    choice.add_argument("--value", type=str, help="Use this JSON value")

    # storage
    storage_parser = subparsers.add_parser("storage", help="Local storage management")
    storage_subparsers = storage_parser.add_subparsers(dest="storage_command", help="Storage commands")
    storage_subparsers.add_parser("status", help="Show storage usage")
    storage_subparsers.add_parser("cleanup", help="Evict stale data")
    wipe_parser = storage_subparsers.add_parser("wipe", help="Delete all local sync data")
    wipe_parser.add_argument("--yes", action="store_true", help="Confirm deletion")

    # config
    config_parser = subparsers.add_parser("config", help="Show or change configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Print the configuration")
    set_parser = config_subparsers.add_parser("set", help="Set a configuration value")
    set_parser.add_argument("key", type=str, help="Key (top-level or sync setting)")
    set_parser.add_argument("value", type=str, help="Value (JSON for sync settings)")


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run a command with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have a command attribute)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if not getattr(args, "command", None):
        print("Error: No command specified. Use --help for available commands.", file=sys.stderr)
        return 1

    config = Config(config_dir=config_dir)

    # Commands that do not touch the client database
    try:
        if args.command == "serve":
            return cmd_serve(config, args)
        if args.command == "config":
            return cmd_config(config, args)
    except ValidationError as e:
        print(f"Error: Invalid {e.field} - {e.message}", file=sys.stderr)
        return 1

    db = Database(config.get_database_file())
    try:
        if args.command == "enqueue":
            return cmd_enqueue(db, config, args)
        elif args.command == "queue":
            return cmd_queue(db, config, args)
        elif args.command == "sync":
            sync_cmd = getattr(args, "sync_command", None)
            if sync_cmd == "now":
                return cmd_sync_now(db, config, args)
            elif sync_cmd == "status":
                return cmd_sync_status(db, config, args)
            print("Error: No sync command specified. Use 'sync --help'.", file=sys.stderr)
            return 1
        elif args.command == "feed":
            return cmd_feed(db, config, args)
        elif args.command == "conflicts":
            return cmd_conflicts(db, args)
        elif args.command == "resolve":
            return cmd_resolve(db, args)
        elif args.command == "storage":
            return cmd_storage(db, config, args)
        else:
            print(f"Error: Unknown command '{args.command}'", file=sys.stderr)
            return 1
    except ValidationError as e:
        print(f"Error: Invalid {e.field} - {e.message}", file=sys.stderr)
        return 1
    except ConflictNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()
