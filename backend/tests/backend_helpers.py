"""Shared builders for the backend tests."""

from app.auth import create_access_token
from app.config import get_settings

# Use clearly invalid test IDs that cannot collide with production IDs
TEST_USER_ID = "usr_TEST_ONLY_000000"
OTHER_USER_ID = "usr_TEST_ONLY_000001"


def make_auth_headers(user_id: str) -> dict:
    token = create_access_token(user_id, get_settings())
    return {"Authorization": f"Bearer {token}"}


def sync_item(unit_id: str, action: str = "create", owner_id: str = TEST_USER_ID, **fields):
    """Build one wire-format sync item carrying a unit snapshot."""
    if action == "delete":
        payload = {"id": unit_id, "owner_id": owner_id}
    else:
        payload = {
            "id": unit_id,
            "owner_id": owner_id,
            "name": fields.pop("name", f"Unit {unit_id}"),
            "updated_at": fields.pop("updated_at", "2024-05-01T12:00:00+00:00"),
            **fields,
        }
    return {
        "id": f"rec-{unit_id}-{action}",
        "entity_type": "unit",
        "action": action,
        "payload": payload,
        "enqueued_at": "2024-05-01T12:00:00+00:00",
        "retry_count": 0,
    }
