"""SQLite storage backend for workshop.

Local-first storage with:
- SQLite for units (full JSON snapshots)
- A durable FIFO queue of outbound mutation records
- Dead-letter state for records that exhausted their retries
- Sync conflict history for user visibility
"""

import contextlib
import json
import logging
import sqlite3
import tempfile
import uuid
from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from workshop.types import (
    QUEUE_EXHAUSTED,
    QUEUE_PENDING,
    EntityType,
    MutationAction,
    MutationRecord,
    Step,
    SyncConflict,
    SyncState,
    Unit,
    format_datetime,
    parse_datetime,
    unit_from_dict,
    unit_to_dict,
    utc_now,
)
from workshop.utils import get_workshop_home

from .schema import init_db

logger = logging.getLogger(__name__)


class SQLiteStorage:
    """SQLite-based local storage for workshop.

    Features:
    - Zero-config local storage
    - Offline-first: every local mutation is queued in the same transaction
      that persists it
    - Pull-driven writes (``upsert_entity_locally``) never enqueue
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = self._resolve_db_path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _resolve_db_path(self, db_path: Optional[Path]) -> Path:
        """Resolve the database path, falling back to temp dir if home is not writable."""
        if db_path is not None:
            return self._validate_db_path(Path(db_path))

        default_path = get_workshop_home() / "workshop.db"
        try:
            default_path.parent.mkdir(parents=True, exist_ok=True)
            return self._validate_db_path(default_path)
        except (OSError, PermissionError) as e:
            fallback_dir = Path(tempfile.gettempdir()) / ".workshop"
            logger.warning(
                f"Cannot write to {default_path.parent} ({e}), falling back to {fallback_dir}"
            )
            return self._validate_db_path(fallback_dir / "workshop.db")

    def _validate_db_path(self, db_path: Path) -> Path:
        """Validate database path to prevent path traversal attacks."""
        try:
            resolved_path = db_path.expanduser().resolve()

            home_path = Path.home().resolve()
            tmp_path = Path("/tmp").resolve()
            system_temp = Path(tempfile.gettempdir()).resolve()

            is_safe = (
                resolved_path.is_relative_to(home_path)
                or resolved_path.is_relative_to(tmp_path)
                or resolved_path.is_relative_to(system_temp)
            )

            # Also allow /var/folders on macOS (where tempfile creates dirs)
            if not is_safe:
                try:
                    is_safe = resolved_path.is_relative_to(
                        Path("/var/folders").resolve()
                    ) or resolved_path.is_relative_to(Path("/private/var/folders").resolve())
                except (OSError, ValueError):
                    pass

            if not is_safe:
                raise ValueError("Database path must be within user home or temp directory")

            return resolved_path

        except (OSError, ValueError) as e:
            logger.error(f"Invalid database path: {e}")
            raise ValueError(f"Invalid database path: {e}")

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        Commits on success, rolls back on exception, closes in all cases.
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def close(self):
        """Close any resources.

        Connections are per-operation, so this exists for API symmetry.
        """
        pass

    def _init_db(self):
        with self._connect() as conn:
            init_db(conn, self.db_path)

    def _to_json(self, data: Any) -> str:
        return json.dumps(data)

    def _from_json(self, s: Optional[str]) -> Any:
        if not s:
            return None
        try:
            return json.loads(s)
        except json.JSONDecodeError:
            return None

    # === Unit rows ===

    def _row_to_unit(self, row: sqlite3.Row) -> Unit:
        unit = unit_from_dict(self._from_json(row["data"]) or {"id": row["id"]})
        # Columns are authoritative for the fields the engine flips in place
        return replace(
            unit,
            sync_state=SyncState(row["sync_state"]),
            last_sync_at=parse_datetime(row["last_sync_at"]),
        )

    def _write_unit(self, conn: sqlite3.Connection, unit: Unit) -> None:
        conn.execute(
            """INSERT INTO units (id, owner_id, data, updated_at, sync_state, last_sync_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   owner_id = excluded.owner_id,
                   data = excluded.data,
                   updated_at = excluded.updated_at,
                   sync_state = excluded.sync_state,
                   last_sync_at = excluded.last_sync_at""",
            (
                unit.id,
                unit.owner_id,
                self._to_json(unit_to_dict(unit)),
                format_datetime(unit.updated_at),
                unit.sync_state.value,
                format_datetime(unit.last_sync_at),
            ),
        )

    def _get_unit(self, conn: sqlite3.Connection, unit_id: str) -> Optional[Unit]:
        row = conn.execute("SELECT * FROM units WHERE id = ?", (unit_id,)).fetchone()
        return self._row_to_unit(row) if row else None

    # === Local mutation path (enqueues) ===

    def save_unit(self, unit: Unit) -> Unit:
        """Persist a locally edited unit and enqueue its full snapshot.

        ``updated_at`` is bumped so it never goes backwards, and the unit is
        tagged ``local`` until a round-trip confirms it.

        Returns:
            The unit as stored.
        """
        with self._connect() as conn:
            existing = self._get_unit(conn, unit.id)
            now = utc_now()
            if existing is not None and existing.updated_at and now <= existing.updated_at:
                now = existing.updated_at + timedelta(microseconds=1)

            stored = replace(
                unit,
                created_at=unit.created_at or (existing.created_at if existing else None) or now,
                updated_at=now,
                sync_state=SyncState.LOCAL,
                last_sync_at=existing.last_sync_at if existing else unit.last_sync_at,
            )
            self._write_unit(conn, stored)

            action = MutationAction.CREATE if existing is None else MutationAction.UPDATE
            self._enqueue(conn, EntityType.UNIT, action, unit_to_dict(stored))

        logger.debug(f"Saved unit {stored.id} ({action.value})")
        return stored

    def add_step(self, unit_id: str, step: Step) -> Optional[Unit]:
        """Append a painting step to a unit; the whole unit is re-snapshotted."""
        unit = self.get_entity(unit_id)
        if unit is None:
            return None
        steps = list(unit.steps)
        if not step.step_number:
            step = replace(step, step_number=len(steps) + 1)
        if step.timestamp is None:
            step = replace(step, timestamp=utc_now())
        steps.append(step)
        return self.save_unit(replace(unit, steps=steps))

    def delete_unit(self, unit_id: str) -> bool:
        """Delete a unit locally and enqueue a delete mutation.

        Returns:
            False if no such unit exists (nothing is enqueued).
        """
        with self._connect() as conn:
            existing = self._get_unit(conn, unit_id)
            if existing is None:
                return False
            conn.execute("DELETE FROM units WHERE id = ?", (unit_id,))
            self._enqueue(
                conn,
                EntityType.UNIT,
                MutationAction.DELETE,
                {"id": unit_id, "owner_id": existing.owner_id},
            )
        return True

    def claim_local_units(self, placeholder_owner: str, owner_id: str) -> int:
        """Re-own units created before login, and their queued snapshots.

        Does not enqueue: the queued snapshots are rewritten in place so the
        pending creates reach the server under the signed-in identity.

        Returns:
            Number of units claimed.
        """
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, data FROM units WHERE owner_id = ?", (placeholder_owner,)
            ).fetchall()
            for row in rows:
                data = self._from_json(row["data"]) or {}
                data["owner_id"] = owner_id
                conn.execute(
                    "UPDATE units SET owner_id = ?, data = ? WHERE id = ?",
                    (owner_id, self._to_json(data), row["id"]),
                )

            queued = conn.execute(
                "SELECT id, payload FROM sync_queue WHERE state = ?", (QUEUE_PENDING,)
            ).fetchall()
            for row in queued:
                payload = self._from_json(row["payload"]) or {}
                if payload.get("owner_id") != placeholder_owner:
                    continue
                payload["owner_id"] = owner_id
                conn.execute(
                    "UPDATE sync_queue SET payload = ? WHERE id = ?",
                    (self._to_json(payload), row["id"]),
                )

        if rows:
            logger.info(f"Claimed {len(rows)} local units for {owner_id}")
        return len(rows)

    # === Entities (engine path, never enqueues) ===

    def get_entity(self, entity_id: str) -> Optional[Unit]:
        with self._connect() as conn:
            return self._get_unit(conn, entity_id)

    def list_entities(self, owner_id: Optional[str] = None) -> List[Unit]:
        with self._connect() as conn:
            if owner_id:
                rows = conn.execute(
                    "SELECT * FROM units WHERE owner_id = ? ORDER BY updated_at DESC",
                    (owner_id,),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM units ORDER BY updated_at DESC").fetchall()
        return [self._row_to_unit(row) for row in rows]

    def upsert_entity_locally(self, unit: Unit) -> None:
        with self._connect() as conn:
            self._write_unit(conn, unit)

    def set_entity_sync_state(self, entity_id: str, state: SyncState) -> bool:
        with self._connect() as conn:
            if state == SyncState.SYNCED:
                cursor = conn.execute(
                    "UPDATE units SET sync_state = ?, last_sync_at = ? WHERE id = ?",
                    (state.value, format_datetime(utc_now()), entity_id),
                )
            else:
                cursor = conn.execute(
                    "UPDATE units SET sync_state = ? WHERE id = ?", (state.value, entity_id)
                )
            return cursor.rowcount > 0

    # === Queue Operations ===

    def _enqueue(
        self,
        conn: sqlite3.Connection,
        entity_type: EntityType,
        action: MutationAction,
        payload: Dict[str, Any],
    ) -> str:
        record_id = str(uuid.uuid4())
        conn.execute(
            """INSERT INTO sync_queue
               (id, entity_type, action, payload, enqueued_at, retry_count, state)
               VALUES (?, ?, ?, ?, ?, 0, ?)""",
            (
                record_id,
                entity_type.value,
                action.value,
                self._to_json(payload),
                format_datetime(utc_now()),
                QUEUE_PENDING,
            ),
        )
        return record_id

    def enqueue(
        self, entity_type: EntityType, action: MutationAction, payload: Dict[str, Any]
    ) -> str:
        """Queue a mutation that is not tied to a unit row (steps, photos)."""
        with self._connect() as conn:
            return self._enqueue(conn, entity_type, action, payload)

    def _row_to_record(self, row: sqlite3.Row) -> MutationRecord:
        return MutationRecord(
            id=row["id"],
            entity_type=EntityType(row["entity_type"]),
            action=MutationAction(row["action"]),
            payload=self._from_json(row["payload"]) or {},
            enqueued_at=parse_datetime(row["enqueued_at"]),
            retry_count=row["retry_count"] or 0,
            last_error=row["last_error"],
            last_attempt_at=parse_datetime(row["last_attempt_at"]),
        )

    def get_queue(self) -> List[MutationRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue WHERE state = ? ORDER BY seq", (QUEUE_PENDING,)
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def remove_queue_record(self, record_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM sync_queue WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def update_queue_record(self, record: MutationRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """UPDATE sync_queue
                   SET retry_count = ?, last_error = ?, last_attempt_at = ?
                   WHERE id = ?""",
                (
                    record.retry_count,
                    (record.last_error or "")[:500] or None,
                    format_datetime(record.last_attempt_at),
                    record.id,
                ),
            )

    def exhaust_queue_record(self, record: MutationRecord) -> None:
        """Dead-letter a record: it leaves the active queue but stays inspectable."""
        with self._connect() as conn:
            conn.execute(
                """UPDATE sync_queue
                   SET state = ?, retry_count = ?, last_error = ?, last_attempt_at = ?
                   WHERE id = ?""",
                (
                    QUEUE_EXHAUSTED,
                    record.retry_count,
                    (record.last_error or "")[:500] or None,
                    format_datetime(record.last_attempt_at),
                    record.id,
                ),
            )

    def get_pending_count(self) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE state = ?", (QUEUE_PENDING,)
            ).fetchone()[0]

    def get_exhausted_count(self) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE state = ?", (QUEUE_EXHAUSTED,)
            ).fetchone()[0]

    def get_exhausted_records(self, limit: int = 100) -> List[MutationRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM sync_queue WHERE state = ?
                   ORDER BY last_attempt_at DESC LIMIT ?""",
                (QUEUE_EXHAUSTED, limit),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def requeue_exhausted(self, record_ids: Optional[List[str]] = None) -> int:
        """Re-enqueue dead-lettered records with a fresh retry budget.

        Requeued records keep their original position (``seq``) in the queue.

        Args:
            record_ids: Specific IDs to requeue, or None for all.
        Returns:
            Number of records requeued.
        """
        with self._connect() as conn:
            if record_ids:
                placeholders = ",".join("?" for _ in record_ids)
                cursor = conn.execute(
                    f"UPDATE sync_queue SET state = ?, retry_count = 0, last_error = NULL "
                    f"WHERE state = ? AND id IN ({placeholders})",
                    (QUEUE_PENDING, QUEUE_EXHAUSTED, *record_ids),
                )
            else:
                cursor = conn.execute(
                    "UPDATE sync_queue SET state = ?, retry_count = 0, last_error = NULL "
                    "WHERE state = ?",
                    (QUEUE_PENDING, QUEUE_EXHAUSTED),
                )
            return cursor.rowcount

    # === Conflict History ===

    def save_sync_conflict(self, conflict: SyncConflict) -> str:
        with self._connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO sync_conflicts
                   (id, record_id, local_version, remote_version, resolution,
                    resolved_at, local_summary, remote_summary)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    conflict.id,
                    conflict.record_id,
                    json.dumps(conflict.local_version, default=str),
                    json.dumps(conflict.remote_version, default=str),
                    conflict.resolution,
                    format_datetime(conflict.resolved_at),
                    conflict.local_summary,
                    conflict.remote_summary,
                ),
            )
        return conflict.id

    def get_sync_conflicts(self, limit: int = 100) -> List[SyncConflict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_conflicts ORDER BY resolved_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            SyncConflict(
                id=row["id"],
                record_id=row["record_id"],
                local_version=json.loads(row["local_version"]),
                remote_version=json.loads(row["remote_version"]),
                resolution=row["resolution"],
                resolved_at=parse_datetime(row["resolved_at"]) or utc_now(),
                local_summary=row["local_summary"],
                remote_summary=row["remote_summary"],
            )
            for row in rows
        ]

    def clear_sync_conflicts(self) -> int:
        with self._connect() as conn:
            return conn.execute("DELETE FROM sync_conflicts").rowcount

    # === Stats ===

    def get_storage_stats(self) -> Dict[str, int]:
        units = self.list_entities()
        return {
            "units": len(units),
            "steps": sum(len(u.steps) for u in units),
            "photos": sum(len(s.photos) for u in units for s in u.steps),
            "unsynced_units": sum(1 for u in units if u.sync_state != SyncState.SYNCED),
            "pending": self.get_pending_count(),
            "exhausted": self.get_exhausted_count(),
        }
