"""Database schema for workshop SQLite storage.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Database initialization (init_db)
"""

import logging
import os
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 2  # v2: dead-letter state and retry bookkeeping on sync_queue

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Units: full JSON snapshot plus the columns the store queries on
CREATE TABLE IF NOT EXISTS units (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    data TEXT NOT NULL,             -- JSON snapshot of the unit
    updated_at TEXT,
    sync_state TEXT NOT NULL DEFAULT 'local',
    last_sync_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_units_owner ON units(owner_id);
CREATE INDEX IF NOT EXISTS idx_units_sync_state ON units(sync_state);

-- Outbound mutation queue (full snapshots, FIFO by seq)
CREATE TABLE IF NOT EXISTS sync_queue (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    entity_type TEXT NOT NULL,      -- unit, step, photo
    action TEXT NOT NULL,           -- create, update, delete
    payload TEXT NOT NULL,          -- JSON snapshot
    enqueued_at TEXT NOT NULL,
    retry_count INTEGER DEFAULT 0,
    state INTEGER DEFAULT 0,        -- 0 = pending, 2 = exhausted (dead-letter)
    last_error TEXT,
    last_attempt_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_state ON sync_queue(state);

-- Sync conflict history (merge decisions that discarded unacknowledged content)
CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    record_id TEXT NOT NULL,
    local_version TEXT NOT NULL,    -- JSON snapshot of local version
    remote_version TEXT NOT NULL,   -- JSON snapshot of remote version
    resolution TEXT NOT NULL,       -- "remote_wins" or "local_wins"
    resolved_at TEXT NOT NULL,
    local_summary TEXT,
    remote_summary TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_conflicts_resolved ON sync_conflicts(resolved_at);
"""


def migrate_schema(conn: sqlite3.Connection) -> None:
    """Bring a v1 sync_queue (no dead-letter columns) up to date."""
    tables = {
        row[0]
        for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    }
    if "sync_queue" not in tables:
        return

    columns = {row[1] for row in conn.execute("PRAGMA table_info(sync_queue)").fetchall()}
    if "state" not in columns:
        logger.info("Migrating sync_queue: adding state column")
        conn.execute("ALTER TABLE sync_queue ADD COLUMN state INTEGER DEFAULT 0")
    if "last_error" not in columns:
        conn.execute("ALTER TABLE sync_queue ADD COLUMN last_error TEXT")
    if "last_attempt_at" not in columns:
        conn.execute("ALTER TABLE sync_queue ADD COLUMN last_attempt_at TEXT")


def init_db(conn: sqlite3.Connection, db_path: Path) -> None:
    """Initialize the database schema.

    Args:
        conn: Database connection.
        db_path: Path to the database file (for permissions).
    """
    migrate_schema(conn)
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    else:
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    conn.commit()

    # Owner read/write only; the database holds unsynced user data
    try:
        os.chmod(db_path, 0o600)
    except OSError as e:
        logger.debug(f"Could not set permissions on {db_path}: {e}")
