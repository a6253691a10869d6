"""Tests for SQLiteStorage: units, the durable mutation queue and conflict history."""

import sqlite3
import uuid
from dataclasses import replace
from datetime import timedelta

import pytest
from sync_helpers import USER_ID, make_unit

from workshop.storage import LocalStore, SQLiteStorage
from workshop.storage import sqlite as sqlite_module
from workshop.types import (
    EntityType,
    MutationAction,
    Photo,
    Step,
    SyncConflict,
    SyncState,
    utc_now,
)


class TestUnitMutations:
    def test_implements_local_store_protocol(self, storage):
        assert isinstance(storage, LocalStore)

    def test_save_new_unit_enqueues_create_snapshot(self, storage):
        unit = storage.save_unit(make_unit("Intercessors"))

        queue = storage.get_queue()
        assert len(queue) == 1
        record = queue[0]
        assert record.entity_type == EntityType.UNIT
        assert record.action == MutationAction.CREATE
        assert record.retry_count == 0
        # Full snapshot, not a diff
        assert record.payload["name"] == "Intercessors"
        assert record.payload["game_system"] == "40k"
        assert record.payload["id"] == unit.id
        assert unit.sync_state == SyncState.LOCAL

    def test_saving_existing_unit_enqueues_update(self, storage):
        unit = storage.save_unit(make_unit("Intercessors"))
        storage.save_unit(replace(unit, name="Hellblasters"))

        queue = storage.get_queue()
        assert [r.action for r in queue] == [MutationAction.CREATE, MutationAction.UPDATE]
        assert queue[1].payload["name"] == "Hellblasters"
        assert storage.get_entity(unit.id).name == "Hellblasters"

    def test_updated_at_never_goes_backwards(self, storage, monkeypatch, t0):
        """A clock that stalls or steps back still yields increasing updated_at."""
        monkeypatch.setattr(sqlite_module, "utc_now", lambda: t0)
        first = storage.save_unit(make_unit())
        second = storage.save_unit(first)

        monkeypatch.setattr(sqlite_module, "utc_now", lambda: t0 - timedelta(hours=1))
        third = storage.save_unit(second)

        assert first.updated_at == t0
        assert second.updated_at > first.updated_at
        assert third.updated_at > second.updated_at

    def test_save_resets_sync_state_to_local(self, storage):
        unit = storage.save_unit(make_unit())
        storage.set_entity_sync_state(unit.id, SyncState.SYNCED)

        saved = storage.save_unit(storage.get_entity(unit.id))

        assert saved.sync_state == SyncState.LOCAL
        assert storage.get_entity(unit.id).sync_state == SyncState.LOCAL

    def test_add_step_numbers_and_snapshots_whole_unit(self, storage):
        unit = storage.save_unit(make_unit())
        storage.add_step(unit.id, Step(id="s1", step_number=0, description="Prime"))
        updated = storage.add_step(unit.id, Step(id="s2", step_number=0, description="Base"))

        assert [s.step_number for s in updated.steps] == [1, 2]
        assert updated.steps[0].timestamp is not None
        last = storage.get_queue()[-1]
        assert last.action == MutationAction.UPDATE
        assert [s["id"] for s in last.payload["steps"]] == ["s1", "s2"]

    def test_add_step_to_missing_unit(self, storage):
        assert storage.add_step("missing", Step(id="s1", step_number=1)) is None
        assert storage.get_queue() == []

    def test_delete_enqueues_delete_with_owner(self, storage):
        unit = storage.save_unit(make_unit())

        assert storage.delete_unit(unit.id) is True

        assert storage.get_entity(unit.id) is None
        last = storage.get_queue()[-1]
        assert last.action == MutationAction.DELETE
        assert last.payload == {"id": unit.id, "owner_id": USER_ID}

    def test_delete_missing_unit_does_not_enqueue(self, storage):
        assert storage.delete_unit("missing") is False
        assert storage.get_queue() == []


class TestEntityWrites:
    def test_upsert_locally_never_enqueues(self, storage):
        unit = make_unit(sync_state=SyncState.SYNCED, updated_at=utc_now())

        storage.upsert_entity_locally(unit)
        storage.upsert_entity_locally(replace(unit, name="Renamed"))

        assert storage.get_queue() == []
        assert storage.get_entity(unit.id).name == "Renamed"
        assert storage.get_entity(unit.id).sync_state == SyncState.SYNCED

    def test_set_entity_sync_state_records_sync_time(self, storage):
        unit = storage.save_unit(make_unit())

        assert storage.set_entity_sync_state(unit.id, SyncState.SYNCED)

        stored = storage.get_entity(unit.id)
        assert stored.sync_state == SyncState.SYNCED
        assert stored.last_sync_at is not None
        assert storage.set_entity_sync_state("missing", SyncState.SYNCED) is False

    def test_list_entities_by_owner(self, storage):
        storage.save_unit(make_unit("Mine"))
        storage.save_unit(make_unit("Theirs", owner_id="usr_other"))

        assert len(storage.list_entities()) == 2
        assert [u.name for u in storage.list_entities(owner_id=USER_ID)] == ["Mine"]

    def test_nested_photos_persist(self, storage):
        step = Step(id="s1", step_number=1, photos=[Photo(id="p1", path="/img/1.jpg")])
        unit = storage.save_unit(make_unit(steps=[step]))

        stored = storage.get_entity(unit.id)
        assert stored.steps[0].photos[0].path == "/img/1.jpg"


class TestQueue:
    def test_queue_is_fifo(self, storage):
        names = [f"Unit {i}" for i in range(5)]
        for name in names:
            storage.save_unit(make_unit(name))

        assert [r.payload["name"] for r in storage.get_queue()] == names

    def test_enqueue_non_unit_entity(self, storage):
        record_id = storage.enqueue(EntityType.PHOTO, MutationAction.CREATE, {"id": "p1"})

        record = storage.get_queue()[0]
        assert record.id == record_id
        assert record.entity_type == EntityType.PHOTO

    def test_update_and_remove_record(self, storage):
        storage.save_unit(make_unit())
        record = storage.get_queue()[0]

        storage.update_queue_record(
            replace(record, retry_count=1, last_error="boom", last_attempt_at=utc_now())
        )
        stored = storage.get_queue()[0]
        assert stored.retry_count == 1
        assert stored.last_error == "boom"

        assert storage.remove_queue_record(record.id) is True
        assert storage.get_queue() == []
        assert storage.remove_queue_record(record.id) is False

    def test_exhausted_records_leave_active_queue(self, storage):
        storage.save_unit(make_unit("A"))
        storage.save_unit(make_unit("B"))
        first = storage.get_queue()[0]

        storage.exhaust_queue_record(replace(first, retry_count=3, last_error="HTTP 500"))

        assert [r.payload["name"] for r in storage.get_queue()] == ["B"]
        assert storage.get_pending_count() == 1
        assert storage.get_exhausted_count() == 1
        exhausted = storage.get_exhausted_records()
        assert exhausted[0].id == first.id
        assert exhausted[0].last_error == "HTTP 500"

    def test_requeue_restores_position_and_budget(self, storage):
        storage.save_unit(make_unit("A"))
        storage.save_unit(make_unit("B"))
        first = storage.get_queue()[0]
        storage.exhaust_queue_record(replace(first, retry_count=3))

        assert storage.requeue_exhausted() == 1

        queue = storage.get_queue()
        assert [r.payload["name"] for r in queue] == ["A", "B"]
        assert queue[0].retry_count == 0
        assert storage.get_exhausted_count() == 0

    def test_requeue_specific_ids(self, storage):
        for name in ("A", "B"):
            storage.save_unit(make_unit(name))
        a, b = storage.get_queue()
        storage.exhaust_queue_record(replace(a, retry_count=3))
        storage.exhaust_queue_record(replace(b, retry_count=3))

        assert storage.requeue_exhausted([b.id]) == 1
        assert [r.id for r in storage.get_queue()] == [b.id]


class TestConflicts:
    def _conflict(self, record_id="u1"):
        return SyncConflict(
            id=str(uuid.uuid4()),
            record_id=record_id,
            local_version={"name": "Local"},
            remote_version={"name": "Remote"},
            resolution="remote_wins",
            resolved_at=utc_now(),
            local_summary="Local (0 steps)",
            remote_summary="Remote (0 steps)",
        )

    def test_save_get_clear(self, storage):
        storage.save_sync_conflict(self._conflict("u1"))
        storage.save_sync_conflict(self._conflict("u2"))

        conflicts = storage.get_sync_conflicts()
        assert {c.record_id for c in conflicts} == {"u1", "u2"}
        assert conflicts[0].local_version == {"name": "Local"}

        assert storage.clear_sync_conflicts() == 2
        assert storage.get_sync_conflicts() == []


class TestClaimAndStats:
    def test_claim_local_units_rewrites_queue_payloads(self, storage):
        unit = storage.save_unit(make_unit(owner_id="local"))
        storage.delete_unit(storage.save_unit(make_unit("Gone", owner_id="local")).id)

        assert storage.claim_local_units("local", USER_ID) == 1

        assert storage.get_entity(unit.id).owner_id == USER_ID
        assert {r.payload["owner_id"] for r in storage.get_queue()} == {USER_ID}

    def test_storage_stats(self, storage):
        steps = [Step(id="s1", step_number=1, photos=[Photo(id="p1", path="/a.jpg")])]
        storage.save_unit(make_unit(steps=steps))
        storage.save_unit(make_unit())

        stats = storage.get_storage_stats()

        assert stats["units"] == 2
        assert stats["steps"] == 1
        assert stats["photos"] == 1
        assert stats["unsynced_units"] == 2
        assert stats["pending"] == 2
        assert stats["exhausted"] == 0


class TestSchema:
    def test_migrates_queue_without_dead_letter_columns(self, tmp_path):
        db_path = tmp_path / "old.db"
        conn = sqlite3.connect(db_path)
        conn.execute(
            """CREATE TABLE sync_queue (
                   seq INTEGER PRIMARY KEY AUTOINCREMENT,
                   id TEXT NOT NULL UNIQUE,
                   entity_type TEXT NOT NULL,
                   action TEXT NOT NULL,
                   payload TEXT NOT NULL,
                   enqueued_at TEXT NOT NULL,
                   retry_count INTEGER DEFAULT 0
               )"""
        )
        conn.execute(
            """INSERT INTO sync_queue (id, entity_type, action, payload, enqueued_at)
               VALUES ('r1', 'unit', 'create', '{"id": "u1"}', '2024-05-01T00:00:00+00:00')"""
        )
        conn.commit()
        conn.close()

        storage = SQLiteStorage(db_path=db_path)

        queue = storage.get_queue()
        assert [r.id for r in queue] == ["r1"]
        assert storage.get_exhausted_count() == 0

    def test_rejects_path_outside_home_and_temp(self):
        with pytest.raises(ValueError):
            SQLiteStorage(db_path="/etc/workshop.db")
