"""
schoolsync CLI - inspect and drive the offline sync core.

Usage:
    schoolsync status [--json]
    schoolsync flush
    schoolsync reconcile
    schoolsync sweep
    schoolsync cache get KEY | cache clear | cache purge
    schoolsync queue list [--kind KIND] [--json] | queue clear [--kind KIND]
    schoolsync notifications list [--all] [--json] | notifications cleanup [--days N]
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from schoolsync.cache import MISS
from schoolsync.config import load_config
from schoolsync.logging_config import setup_schoolsync_logging
from schoolsync.runtime import SyncRuntime
from schoolsync.types import QueueKind, ReconcileOutcome

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def cmd_status(args, rt: SyncRuntime) -> int:
    status = await rt.status()
    if args.json:
        print_json(status)
        return 0

    queue = status["queue"]
    print(f"Sync Status ({status['profile']})")
    print("=" * 40)
    print(f"Connectivity:  {status['connectivity']}")
    print(f"Queued:        {queue['total']} ({queue['settings_patches']} settings, "
          f"{queue['message_drafts']} drafts)")
    print(f"Cloud push:    {'pending' if status['push_pending'] else 'up to date'}")
    store = status.get("store")
    if store:
        print(f"Cache entries: {store['cache_entries']}")
        print(f"Settings keys: {store['settings_keys']}")
        print(f"Reminders:     {store['notifications_pending']} pending, "
              f"{store['notifications_sent']} sent")
        print(f"Database:      {store['db_path']}")
    return 0


async def cmd_flush(args, rt: SyncRuntime) -> int:
    result = await rt.coordinator.flush(user_triggered=True)
    for drain in result.drains:
        line = f"  {drain.kind}: applied={drain.applied} remaining={drain.remaining}"
        if drain.dropped:
            line += f" dropped={drain.dropped}"
        if drain.error:
            line += f" ({drain.error})"
        print(line)
    if result.success:
        print(f"✓ Synced {result.applied} offline item(s)")
        return 0
    print("✗ Sync failed")
    return 1


async def cmd_reconcile(args, rt: SyncRuntime) -> int:
    outcome = await rt.coordinator.reconcile_with_remote()
    print(f"Reconcile: {outcome.value}")
    return 1 if outcome is ReconcileOutcome.FAILED else 0


async def cmd_sweep(args, rt: SyncRuntime) -> int:
    result = await rt.scheduler.sweep()
    print(f"Due: {result.due}  Sent: {result.sent}  Failed: {result.failed}")
    for error in result.errors:
        print(f"  ! {error}")
    return 0 if result.failed == 0 else 1


async def cmd_cache(args, rt: SyncRuntime) -> int:
    if args.cache_action == "get":
        value = await rt.cache.get(args.key)
        if value is MISS:
            print(f"(miss) {args.key}")
            return 1
        print_json(value)
    elif args.cache_action == "clear":
        await rt.cache.clear()
        print("✓ Cache cleared")
    elif args.cache_action == "purge":
        purged = await rt.cache.cleanup_expired()
        print(f"✓ Purged {purged} expired entries")
    return 0


async def cmd_queue(args, rt: SyncRuntime) -> int:
    if args.queue_action == "list":
        items = await rt.queue.pending(args.kind)
        if args.json:
            print_json([
                {"id": i.id, "kind": i.kind, "payload": i.payload, "created_at": i.created_at}
                for i in items
            ])
            return 0
        if not items:
            print("Queue is empty.")
            return 0
        for item in items:
            created = item.created_at.isoformat(timespec="seconds") if item.created_at else "?"
            payload = item.payload or ""
            preview = payload[:60] + "..." if len(payload) > 60 else payload
            print(f"  #{item.id} [{item.kind}] {created}  {preview}")
    elif args.queue_action == "clear":
        removed = await rt.queue.clear(args.kind)
        print(f"✓ Removed {removed} queued item(s)")
    return 0


async def cmd_notifications(args, rt: SyncRuntime) -> int:
    if args.notifications_action == "list":
        if args.all:
            rows = await rt.store.list_notifications(include_sent=True)
        else:
            rows = await rt.scheduler.pending()
        if args.json:
            print_json([
                {
                    "id": n.id,
                    "subject_entity_id": n.subject_entity_id,
                    "kind": n.kind.value,
                    "fires_at": n.fires_at,
                    "sent_at": n.sent_at,
                }
                for n in rows
            ])
            return 0
        if not rows:
            print("No notifications scheduled.")
            return 0
        for n in rows:
            state = f"sent {n.sent_at:%Y-%m-%d %H:%M}" if n.sent_at else "scheduled"
            print(f"  #{n.id} assessment {n.subject_entity_id} {n.kind.value:<15} "
                  f"{n.fires_at:%Y-%m-%d %H:%M}  {state}")
    elif args.notifications_action == "cleanup":
        removed = await rt.scheduler.cleanup(args.days)
        print(f"✓ Removed {removed} old notification(s)")
    return 0


COMMANDS = {
    "status": cmd_status,
    "flush": cmd_flush,
    "reconcile": cmd_reconcile,
    "sweep": cmd_sweep,
    "cache": cmd_cache,
    "queue": cmd_queue,
    "notifications": cmd_notifications,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="schoolsync",
        description="Offline cache, write-behind queue and sync for the student client",
    )
    parser.add_argument("--profile", "-p", help="Profile name (default from config)")
    parser.add_argument("--db", type=Path, help="Path to the SQLite database")
    parser.add_argument("--config", type=Path, help="Path to config.json")
    parser.add_argument("--log-level", help="Log level (DEBUG also logs to the console)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_status = subparsers.add_parser("status", help="Show queue, connectivity and store counts")
    p_status.add_argument("--json", "-j", action="store_true")

    subparsers.add_parser("flush", help="Replay queued mutations now")
    subparsers.add_parser("reconcile", help="Reconcile local settings with the cloud")
    subparsers.add_parser("sweep", help="Send due notifications now")

    p_cache = subparsers.add_parser("cache", help="Cache operations")
    cache_sub = p_cache.add_subparsers(dest="cache_action", required=True)
    cache_get = cache_sub.add_parser("get", help="Show a cached value")
    cache_get.add_argument("key")
    cache_sub.add_parser("clear", help="Drop every cached value")
    cache_sub.add_parser("purge", help="Drop expired cached values")

    kinds = [k.value for k in QueueKind]
    p_queue = subparsers.add_parser("queue", help="Write-behind queue operations")
    queue_sub = p_queue.add_subparsers(dest="queue_action", required=True)
    queue_list = queue_sub.add_parser("list", help="List queued mutations")
    queue_list.add_argument("--kind", choices=kinds)
    queue_list.add_argument("--json", "-j", action="store_true")
    queue_clear = queue_sub.add_parser("clear", help="Discard queued mutations")
    queue_clear.add_argument("--kind", choices=kinds)

    p_notif = subparsers.add_parser("notifications", help="Scheduled reminder operations")
    notif_sub = p_notif.add_subparsers(dest="notifications_action", required=True)
    notif_list = notif_sub.add_parser("list", help="List reminders")
    notif_list.add_argument("--all", "-a", action="store_true", help="Include sent reminders")
    notif_list.add_argument("--json", "-j", action="store_true")
    notif_cleanup = notif_sub.add_parser("cleanup", help="Delete old sent reminders")
    notif_cleanup.add_argument("--days", type=int, default=None, help="Retention in days")

    return parser


async def run(args) -> int:
    config = load_config(args.config)
    if args.profile:
        config.profile = args.profile
    if args.db:
        config.db_path = args.db
    if args.log_level:
        config.log_level = args.log_level
    setup_schoolsync_logging(config.profile, config.log_level)

    rt = SyncRuntime(config)
    try:
        return await COMMANDS[args.command](args, rt)
    finally:
        await rt.stop()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        return asyncio.run(run(args))
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        return 1
    except Exception as e:
        logger.error(f"Command failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
