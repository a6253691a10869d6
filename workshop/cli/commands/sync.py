"""Sync commands for workshop CLI: status, manual sync, queue inspection."""

import asyncio
import json
import logging
import sys
from typing import TYPE_CHECKING

from workshop.types import MissingCredentialError, format_datetime

if TYPE_CHECKING:
    from workshop import Workshop

logger = logging.getLogger(__name__)

_CATEGORY_LABELS = {
    "offline": "○ Offline",
    "syncing": "↻ Syncing",
    "failed": "✗ Failed",
    "pending": "… Pending",
    "synced": "✓ Synced",
}


async def _health(w: "Workshop"):
    try:
        return await w.remote.health_check()
    finally:
        await w.aclose()


async def _sync_now(w: "Workshop"):
    try:
        await w.sync.force_sync_now()
        return w.sync.get_status()
    finally:
        await w.aclose()


def _print_records(records, title: str) -> None:
    print(f"{title} ({len(records)}):")
    for record in records:
        error = f" - {record.last_error[:60]}" if record.last_error else ""
        print(
            f"  [{record.id[:8]}] {record.entity_type.value}/{record.action.value} "
            f"{record.entity_id or '?'} (retries: {record.retry_count}){error}"
        )


def cmd_sync(args, w: "Workshop"):
    """Handle sync subcommands."""
    storage = w.storage

    if args.sync_action == "status":
        status = w.sync.refresh_status()
        credential = w.credentials.get_credential()
        health = asyncio.run(_health(w)) if args.check else None

        if args.json:
            result = status.to_dict()
            result["authenticated"] = credential is not None
            result["backend_url"] = w.backend_url
            if health is not None:
                result["backend"] = health
            print(json.dumps(result, indent=2, default=str))
            return

        print("Sync Status")
        print("=" * 50)
        print(f"  {_CATEGORY_LABELS[status.category.value]}")
        print(f"  Pending:    {status.pending_count}")
        print(f"  Exhausted:  {status.exhausted_count}")
        print(f"  Last sync:  {format_datetime(status.last_sync_at) or 'never (this session)'}")
        print()
        if credential:
            print(f"  Signed in as {credential.identity_id} ({w.backend_url})")
        else:
            print("  Not authenticated (run `workshop auth login`)")
        if health is not None:
            if health["healthy"]:
                print(f"  Backend reachable ({health['latency_ms']}ms)")
            else:
                print(f"  Backend unreachable: {health['error']}")
        if status.exhausted_count:
            print()
            print("  ⚠️  Some changes gave up after repeated failures.")
            print("     Inspect with `workshop sync exhausted`, retry with `workshop sync requeue`")

    elif args.sync_action == "now":
        try:
            status = asyncio.run(_sync_now(w))
        except MissingCredentialError:
            print("✗ Not authenticated")
            print("  Run `workshop auth login` or set WORKSHOP_AUTH_TOKEN and WORKSHOP_USER_ID")
            sys.exit(1)

        if args.json:
            print(json.dumps(status.to_dict(), indent=2, default=str))
            return
        push, pull = w.sync.last_push, w.sync.last_pull
        if push is None:
            print("✗ Sync did not run (offline or already syncing)")
            sys.exit(1)
        if push.auth_expired or (pull is not None and pull.auth_expired):
            print("✗ Session expired, changes stay queued")
            print("  Run `workshop auth login` to sign in again")
            sys.exit(1)
        print(f"✓ Pushed {push.removed} changes")
        if push.failed:
            print(f"⚠️  {push.failed} changes failed ({push.exhausted} gave up)")
            for error in push.errors[:3]:
                print(f"   - {error}")
        if pull is not None and pull.success:
            print(f"✓ Pulled {pull.inserted} new, {pull.overwritten} updated")
            if pull.conflicts:
                print(f"⚠️  {pull.conflicts} conflicts recorded (see `workshop sync conflicts`)")
        elif pull is not None:
            print(f"⚠️  Pull failed: {pull.error}")
        print(f"  Pending: {status.pending_count}")

    elif args.sync_action == "queue":
        records = storage.get_queue()
        if args.json:
            print(json.dumps([r.to_wire() for r in records], indent=2))
        elif not records:
            print("✓ No pending changes")
        else:
            _print_records(records, "Pending changes")

    elif args.sync_action == "exhausted":
        records = storage.get_exhausted_records(limit=args.limit)
        if args.json:
            print(
                json.dumps(
                    [{**r.to_wire(), "last_error": r.last_error} for r in records], indent=2
                )
            )
        elif not records:
            print("✓ No exhausted changes")
        else:
            _print_records(records, "Exhausted changes")

    elif args.sync_action == "requeue":
        count = w.sync.requeue_exhausted(args.ids or None)
        print(f"✓ Requeued {count} changes")

    elif args.sync_action == "conflicts":
        if args.clear:
            count = storage.clear_sync_conflicts()
            print(f"✓ Cleared {count} conflicts")
            return
        conflicts = storage.get_sync_conflicts(limit=args.limit)
        if args.json:
            print(
                json.dumps(
                    [
                        {
                            "id": c.id,
                            "record_id": c.record_id,
                            "resolution": c.resolution,
                            "resolved_at": format_datetime(c.resolved_at),
                            "local_summary": c.local_summary,
                            "remote_summary": c.remote_summary,
                        }
                        for c in conflicts
                    ],
                    indent=2,
                )
            )
        elif not conflicts:
            print("✓ No sync conflicts")
        else:
            print(f"Sync conflicts ({len(conflicts)}):")
            for c in conflicts:
                print(f"  [{c.record_id[:8]}] {c.resolution} at {format_datetime(c.resolved_at)}")
                print(f"    local:  {c.local_summary}")
                print(f"    remote: {c.remote_summary}")
