"""
Workshop CLI - Command-line interface for the offline-first painting log.

Usage:
    workshop unit add NAME [--system S] [--faction F] [--models N]
    workshop unit list [--json]
    workshop unit show ID [--json]
    workshop unit step ID DESCRIPTION [--technique T]... [--tool T]...
    workshop unit delete ID
    workshop sync status [--check] [--json]
    workshop sync now
    workshop sync queue | exhausted | requeue [IDS...] | conflicts [--clear]
    workshop auth login --user-id ID [--token TOKEN] [--backend-url URL]
    workshop auth logout | whoami
"""

import argparse
import logging
import sys
from pathlib import Path

from workshop import Workshop
from workshop.cli.commands import cmd_auth, cmd_sync, cmd_unit
from workshop.config import get_settings

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workshop",
        description="Workshop - offline-first painting log for miniature units",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--db", type=Path, default=None, help="Path to the local database")
    parser.add_argument(
        "--offline", action="store_true", help="Treat the device as offline (no network calls)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # unit (local painting log)
    p_unit = subparsers.add_parser("unit", help="Manage units and their painting steps")
    unit_sub = p_unit.add_subparsers(dest="unit_action", required=True)

    unit_add = unit_sub.add_parser("add", help="Create a unit")
    unit_add.add_argument("name", help="Unit name")
    unit_add.add_argument("--system", "-s", help="Game system (e.g. 40k, AoS)")
    unit_add.add_argument("--faction", "-f", help="Faction")
    unit_add.add_argument("--description", "-d", help="Description")
    unit_add.add_argument("--models", "-m", type=int, default=1, help="Number of models")
    unit_add.add_argument("--public", action="store_true", help="Make the unit public")
    unit_add.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    unit_list = unit_sub.add_parser("list", help="List units")
    unit_list.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    unit_show = unit_sub.add_parser("show", help="Show a unit and its steps")
    unit_show.add_argument("id", help="Unit ID (prefix accepted)")
    unit_show.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    unit_delete = unit_sub.add_parser("delete", help="Delete a unit")
    unit_delete.add_argument("id", help="Unit ID (prefix accepted)")

    unit_step = unit_sub.add_parser("step", help="Add a painting step to a unit")
    unit_step.add_argument("id", help="Unit ID (prefix accepted)")
    unit_step.add_argument("description", help="What was done in this step")
    unit_step.add_argument(
        "--technique", "-t", action="append", default=[], help="Technique (repeatable)"
    )
    unit_step.add_argument("--tool", action="append", default=[], help="Other tool (repeatable)")
    unit_step.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # sync (local-to-remote synchronization)
    p_sync = subparsers.add_parser("sync", help="Sync with remote backend")
    sync_sub = p_sync.add_subparsers(dest="sync_action", required=True)

    sync_status = sync_sub.add_parser("status", help="Show sync status")
    sync_status.add_argument("--check", "-c", action="store_true", help="Check backend health")
    sync_status.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_now = sync_sub.add_parser("now", help="Push queued changes and pull remote units now")
    sync_now.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_queue = sync_sub.add_parser("queue", help="List pending changes")
    sync_queue.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_exhausted = sync_sub.add_parser(
        "exhausted", help="List changes that gave up after repeated failures"
    )
    sync_exhausted.add_argument("--limit", "-l", type=int, default=100, help="Maximum entries")
    sync_exhausted.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_requeue = sync_sub.add_parser("requeue", help="Retry exhausted changes")
    sync_requeue.add_argument("ids", nargs="*", help="Record IDs (default: all)")

    sync_conflicts = sync_sub.add_parser("conflicts", help="Show sync conflict history")
    sync_conflicts.add_argument("--limit", "-l", type=int, default=20, help="Maximum entries")
    sync_conflicts.add_argument("--clear", action="store_true", help="Clear conflict history")
    sync_conflicts.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # auth (credentials management)
    p_auth = subparsers.add_parser("auth", help="Credentials management")
    auth_sub = p_auth.add_subparsers(dest="auth_action", required=True)

    auth_login = auth_sub.add_parser("login", help="Store an issued token and sync")
    auth_login.add_argument("--user-id", "-u", required=True, help="User ID the token belongs to")
    auth_login.add_argument("--token", "-t", help="Auth token (prompted if omitted)")
    auth_login.add_argument("--backend-url", "-b", help="Backend URL")
    auth_login.add_argument("--no-sync", action="store_true", help="Skip the initial sync")
    auth_login.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    auth_sub.add_parser("logout", help="Clear stored credentials")

    auth_whoami = auth_sub.add_parser("whoami", help="Show current auth status")
    auth_whoami.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        settings = get_settings()
        if args.db is not None:
            settings = settings.model_copy(update={"db_path": args.db})
        w = Workshop(settings=settings, online=not args.offline)
    except (ValueError, TypeError) as e:
        logger.error(f"Failed to initialize workshop: {e}")
        sys.exit(1)

    # Dispatch with error handling
    try:
        if args.command == "unit":
            cmd_unit(args, w)
        elif args.command == "sync":
            cmd_sync(args, w)
        elif args.command == "auth":
            cmd_auth(args, w)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
