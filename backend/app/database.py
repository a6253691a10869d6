"""Database utilities for the workshop sync backend (SQLite)."""

import base64
import json
import sqlite3
from datetime import datetime, timezone
from typing import Annotated

from fastapi import Depends

from .config import Settings, get_settings

_connection: sqlite3.Connection | None = None


SCHEMA = """
CREATE TABLE IF NOT EXISTS units (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at TEXT,
    sync_state TEXT NOT NULL DEFAULT 'synced',
    last_sync_at TEXT,
    created_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_units_owner ON units(owner_id, updated_at);
"""


def connect_database(path: str) -> sqlite3.Connection:
    """Open a connection and make sure the schema exists."""
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


def get_connection(settings: Settings | None = None) -> sqlite3.Connection:
    """Get cached database connection."""
    global _connection
    if _connection is None:
        if settings is None:
            settings = get_settings()
        _connection = connect_database(settings.database_path)
    return _connection


def get_db(settings: Annotated[Settings, Depends(get_settings)]) -> sqlite3.Connection:
    """FastAPI dependency for the database connection."""
    return get_connection(settings)


# Type alias for dependency injection
Database = Annotated[sqlite3.Connection, Depends(get_db)]


# =============================================================================
# Table Names
# =============================================================================

UNITS_TABLE = "units"


def _row_to_unit(row: sqlite3.Row) -> dict:
    data = json.loads(row["data"])
    data["owner_id"] = row["owner_id"]
    data["sync_state"] = row["sync_state"]
    data["last_sync_at"] = row["last_sync_at"]
    return data


def encode_next_token(offset: int) -> str:
    return base64.urlsafe_b64encode(json.dumps({"offset": offset}).encode()).decode()


def decode_next_token(token: str | None) -> int:
    """Decode an opaque pagination token.

    Raises:
        ValueError: If the token is malformed.
    """
    if not token:
        return 0
    try:
        offset = json.loads(base64.urlsafe_b64decode(token.encode()).decode())["offset"]
    except (ValueError, KeyError, TypeError) as e:
        raise ValueError(f"Invalid next_token: {e}")
    if not isinstance(offset, int) or offset < 0:
        raise ValueError("Invalid next_token")
    return offset


# =============================================================================
# Unit Operations
# =============================================================================


async def get_unit(db: sqlite3.Connection, unit_id: str) -> dict | None:
    """Get a unit by id, regardless of owner."""
    row = db.execute(f"SELECT * FROM {UNITS_TABLE} WHERE id = ?", (unit_id,)).fetchone()
    return _row_to_unit(row) if row else None


async def upsert_unit(db: sqlite3.Connection, owner_id: str, data: dict) -> dict:
    """Insert or replace a unit with a full snapshot.

    The owner is pinned to ``owner_id`` and the server sync metadata is set.
    """
    now = datetime.now(timezone.utc).isoformat()
    unit = {**data, "owner_id": owner_id, "sync_state": "synced", "last_sync_at": now}
    db.execute(
        f"""INSERT INTO {UNITS_TABLE}
            (id, owner_id, data, updated_at, sync_state, last_sync_at, created_at)
            VALUES (?, ?, ?, ?, 'synced', ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                owner_id = excluded.owner_id,
                data = excluded.data,
                updated_at = excluded.updated_at,
                sync_state = 'synced',
                last_sync_at = excluded.last_sync_at""",
        (
            unit["id"],
            owner_id,
            json.dumps(unit),
            unit.get("updated_at"),
            now,
            unit.get("created_at") or now,
        ),
    )
    db.commit()
    return unit


async def delete_unit(db: sqlite3.Connection, unit_id: str) -> bool:
    """Delete a unit by id. Returns False if it did not exist."""
    cursor = db.execute(f"DELETE FROM {UNITS_TABLE} WHERE id = ?", (unit_id,))
    db.commit()
    return cursor.rowcount > 0


async def list_units(
    db: sqlite3.Connection, owner_id: str, limit: int, offset: int = 0
) -> tuple[list[dict], int]:
    """List a user's units, most recently updated first.

    Returns:
        (units on this page, total count for the owner)
    """
    total = db.execute(
        f"SELECT COUNT(*) FROM {UNITS_TABLE} WHERE owner_id = ?", (owner_id,)
    ).fetchone()[0]
    rows = db.execute(
        f"""SELECT * FROM {UNITS_TABLE} WHERE owner_id = ?
            ORDER BY updated_at DESC, id LIMIT ? OFFSET ?""",
        (owner_id, limit, offset),
    ).fetchall()
    return [_row_to_unit(row) for row in rows], total


async def get_sync_counts(db: sqlite3.Connection, owner_id: str) -> dict:
    """Count a user's units per sync state, plus the latest server sync time."""
    rows = db.execute(
        f"""SELECT sync_state, COUNT(*) AS count, MAX(last_sync_at) AS last_sync_at
            FROM {UNITS_TABLE} WHERE owner_id = ? GROUP BY sync_state""",
        (owner_id,),
    ).fetchall()
    counts = {row["sync_state"]: row["count"] for row in rows}
    last_sync = max((row["last_sync_at"] for row in rows if row["last_sync_at"]), default=None)
    return {
        "total_units": sum(counts.values()),
        "synced_units": counts.get("synced", 0),
        "local_units": counts.get("local", 0),
        "syncing_units": counts.get("syncing", 0),
        "conflict_units": counts.get("conflict", 0),
        "last_sync_at": last_sync,
    }
