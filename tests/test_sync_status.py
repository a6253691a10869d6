"""Tests for the status channel: snapshots, subscriber order and isolation."""

import logging
from dataclasses import FrozenInstanceError

import pytest
from sync_helpers import make_unit

from workshop.storage import SyncEngine
from workshop.types import StatusCategory, SyncStatus


class TestInitialStatus:
    def test_counts_are_read_from_store(self, storage, credentials, remote, settings):
        storage.save_unit(make_unit("A"))
        storage.save_unit(make_unit("B"))

        engine = SyncEngine(storage, credentials, remote, settings=settings)

        status = engine.get_status()
        assert status == SyncStatus(pending_count=2)
        assert status.category == StatusCategory.PENDING

    def test_status_is_immutable_snapshot(self, engine):
        before = engine.get_status()
        engine.set_online(False)

        assert before.online is True
        assert engine.get_status().online is False
        with pytest.raises(FrozenInstanceError):
            before.online = False


class TestSubscribers:
    def test_subscribers_called_in_registration_order(self, engine):
        calls = []
        engine.subscribe(lambda s: calls.append(("first", s.online)))
        engine.subscribe(lambda s: calls.append(("second", s.online)))

        engine.set_online(False)

        assert calls == [("first", False), ("second", False)]

    def test_no_notification_when_nothing_changed(self, engine):
        published = []
        engine.subscribe(published.append)

        engine.refresh_status()
        engine.set_online(True)

        assert published == []

    def test_unsubscribe_during_notification_takes_effect_next_time(self, engine, storage):
        calls = []
        unsubscribe_holder = {}

        def first(status):
            calls.append("first")
            unsubscribe_holder["second"]()

        def second(status):
            calls.append("second")

        engine.subscribe(first)
        unsubscribe_holder["second"] = engine.subscribe(second)

        engine.set_online(False)
        storage.save_unit(make_unit())
        engine.refresh_status()

        assert calls == ["first", "second", "first"]

    def test_unsubscribe_is_idempotent(self, engine):
        published = []
        unsubscribe = engine.subscribe(published.append)

        unsubscribe()
        unsubscribe()
        engine.set_online(False)

        assert published == []

    def test_raising_subscriber_does_not_block_others(self, engine, caplog):
        published = []

        def broken(status):
            raise RuntimeError("listener bug")

        engine.subscribe(broken)
        engine.subscribe(published.append)

        with caplog.at_level(logging.ERROR):
            engine.set_online(False)

        assert [s.online for s in published] == [False]
        assert "listener bug" in caplog.text

    @pytest.mark.asyncio
    async def test_round_trip_publishes_syncing_then_result(self, engine, storage):
        storage.save_unit(make_unit())
        engine.refresh_status()
        published = []
        engine.subscribe(published.append)

        await engine.force_sync_now()

        assert published[0].syncing is True
        assert published[-1].syncing is False
        assert published[-1].pending_count == 0
        assert published[-1].category == StatusCategory.SYNCED
