"""Auth commands for workshop CLI.

Token acquisition happens outside workshop; ``login`` stores a token that was
already issued and runs the post-login sync.
"""

import asyncio
import json
import logging
import sys
from typing import TYPE_CHECKING

from workshop.validation import clean_text

if TYPE_CHECKING:
    from workshop import Workshop

logger = logging.getLogger(__name__)


async def _login_sync(w: "Workshop"):
    try:
        return await w.sync.on_login_completed()
    finally:
        await w.aclose()


def cmd_auth(args, w: "Workshop"):
    """Handle auth subcommands."""
    if args.auth_action == "login":
        token = args.token
        if not token:
            print("Token: ", end="", flush=True)
            try:
                token = input().strip()
            except (EOFError, KeyboardInterrupt):
                print("\nAborted.")
                sys.exit(1)
        token = clean_text(token, "token", max_length=4096)
        user_id = clean_text(args.user_id, "user_id", max_length=200)

        try:
            w.credentials.set_credential(user_id, token, backend_url=args.backend_url)
        except ValueError as e:
            print(f"✗ {e}")
            sys.exit(1)
        print(f"✓ Signed in as {user_id}")

        if args.no_sync:
            return
        if args.backend_url and args.backend_url.rstrip("/") != w.remote.backend_url:
            from workshop import Workshop

            w = Workshop(storage=w.storage, credentials=w.credentials, settings=w.settings)

        status = asyncio.run(_login_sync(w))
        if args.json:
            print(json.dumps(status.to_dict(), indent=2, default=str))
        elif status.failed_count:
            print(f"⚠️  Initial sync: {status.failed_count} changes failed, will retry")
        else:
            print(f"✓ Initial sync complete ({status.pending_count} pending)")

    elif args.auth_action == "logout":
        w.credentials.clear()
        print("✓ Signed out (local data and queued changes are kept)")

    elif args.auth_action == "whoami":
        credential = w.credentials.get_credential()
        if args.json:
            print(
                json.dumps(
                    {
                        "authenticated": credential is not None,
                        "user_id": credential.identity_id if credential else None,
                        "backend_url": w.backend_url,
                    },
                    indent=2,
                )
            )
        elif credential:
            print(f"Signed in as {credential.identity_id}")
            print(f"  Backend: {w.backend_url}")
        else:
            print("Not authenticated")
