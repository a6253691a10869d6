"""Storage protocol for workshop backends.

This defines the interface the sync engine and the Workshop facade consume
from the durable local store. Currently supported:
- SQLiteStorage: Local-first storage with a durable outbound mutation queue
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from workshop.types import (
    EntityType,
    MutationAction,
    MutationRecord,
    Step,
    SyncConflict,
    SyncState,
    Unit,
)


@runtime_checkable
class LocalStore(Protocol):
    """Durable local store of units and the ordered queue of pending mutations.

    Entity writes made through ``upsert_entity_locally`` never enqueue
    outbound mutations; only the UI mutation path creates queue records.
    """

    # === UI mutations (each write enqueues a snapshot atomically) ===

    def save_unit(self, unit: Unit) -> Unit:
        """Persist a local edit, tag it ``local`` and queue a create or update."""
        ...

    def delete_unit(self, unit_id: str) -> bool:
        ...

    def add_step(self, unit_id: str, step: Step) -> Optional[Unit]:
        ...

    def enqueue(
        self, entity_type: EntityType, action: MutationAction, payload: Dict[str, Any]
    ) -> str:
        ...

    def claim_local_units(self, placeholder_owner: str, owner_id: str) -> int:
        """Re-own units (and their queued snapshots) created before login."""
        ...

    # === Queue ===

    def get_queue(self) -> List[MutationRecord]:
        """All pending (non-exhausted) records in FIFO enqueue order."""
        ...

    def remove_queue_record(self, record_id: str) -> bool:
        ...

    def update_queue_record(self, record: MutationRecord) -> None:
        """Persist retry bookkeeping for a record still in the queue."""
        ...

    def exhaust_queue_record(self, record: MutationRecord) -> None:
        """Move a record that reached the retry ceiling out of the active queue."""
        ...

    def get_pending_count(self) -> int:
        ...

    def get_exhausted_count(self) -> int:
        ...

    def requeue_exhausted(self, record_ids: Optional[List[str]] = None) -> int:
        """Return dead-lettered records to the active queue with a fresh retry budget."""
        ...

    def get_exhausted_records(self, limit: int = 100) -> List[MutationRecord]:
        ...

    # === Entities ===

    def list_entities(self) -> List[Unit]:
        ...

    def get_entity(self, entity_id: str) -> Optional[Unit]:
        ...

    def upsert_entity_locally(self, unit: Unit) -> None:
        """Write a unit as-is, without enqueueing a mutation."""
        ...

    def set_entity_sync_state(self, entity_id: str, state: SyncState) -> bool:
        ...

    # === Conflicts ===

    def save_sync_conflict(self, conflict: SyncConflict) -> str:
        ...

    def get_sync_conflicts(self, limit: int = 100) -> List[SyncConflict]:
        ...

    def clear_sync_conflicts(self) -> int:
        ...

    # === Housekeeping ===

    def get_storage_stats(self) -> Dict[str, int]:
        ...

    def close(self) -> None:
        ...
