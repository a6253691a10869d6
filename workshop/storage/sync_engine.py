"""Sync engine for workshop storage.

SyncEngine drains the durable mutation queue against the remote backend,
pulls authoritative units back and merges them, schedules retries with
exponential backoff, and publishes a status snapshot to subscribers.

Everything runs on one asyncio event loop. The only suspension points are
the push and pull requests and the timers (debounce, periodic, backoff);
store calls are synchronous.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional

from workshop.config import SyncSettings, get_settings
from workshop.types import (
    Credential,
    EngineState,
    EntityType,
    FailedRecord,
    MissingCredentialError,
    MutationAction,
    MutationRecord,
    PullResult,
    PushResult,
    SyncConflict,
    SyncState,
    SyncStatus,
    TransportError,
    Unit,
    format_datetime,
    normalize_timestamps,
    parse_datetime,
    unit_from_dict,
    unit_to_dict,
    utc_now,
)

from .base import LocalStore

logger = logging.getLogger(__name__)

StatusListener = Callable[[SyncStatus], None]

# Sync metadata is not part of what the user edited
_CONTENT_IGNORED_FIELDS = ("sync_state", "last_sync_at")


def _content(unit: Unit) -> dict:
    data = unit_to_dict(unit)
    for key in _CONTENT_IGNORED_FIELDS:
        data.pop(key, None)
    return data


def _remote_is_newer(remote_ts: Optional[datetime], local_ts: Optional[datetime]) -> bool:
    """Strict last-writer-wins comparison; ties favour the local copy."""
    if remote_ts is None:
        return False
    if local_ts is None:
        return True
    return remote_ts > local_ts


class SyncEngine:
    """Offline-first sync engine.

    Args:
        store: Durable local store holding units and the mutation queue.
        credentials: Provider of the current credential.
        remote: Client for the sync backend (``push_batch``/``pull_entities``).
        settings: Scheduling and batching settings.
        online: Initial connectivity.
    """

    def __init__(
        self,
        store: LocalStore,
        credentials,
        remote,
        *,
        settings: Optional[SyncSettings] = None,
        online: bool = True,
    ):
        self._store = store
        self._credentials = credentials
        self._remote = remote
        self._settings = settings or get_settings()

        self._status = SyncStatus(
            online=online,
            pending_count=store.get_pending_count(),
            exhausted_count=store.get_exhausted_count(),
        )
        self._subscribers: List[StatusListener] = []

        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._backoff_handle: Optional[asyncio.TimerHandle] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._current_task: Optional[asyncio.Task] = None
        self._unsubscribe_credentials: Optional[Callable[[], None]] = None
        self._consecutive_failures = 0

        self.last_push: Optional[PushResult] = None
        self.last_pull: Optional[PullResult] = None

    # === Lifecycle ===

    def start(self) -> None:
        """Start the periodic backstop timer and listen for credential changes.

        Must be called from within a running event loop.
        """
        if self._periodic_task is None or self._periodic_task.done():
            self._periodic_task = asyncio.get_running_loop().create_task(self._periodic_loop())
        if self._unsubscribe_credentials is None:
            self._unsubscribe_credentials = self._credentials.on_credential_change(
                self._on_credential_change
            )
        self.refresh_status()

    async def stop(self) -> None:
        """Cancel timers and wait for an in-flight round-trip to finish."""
        self._cancel_debounce()
        self._cancel_backoff()
        if self._unsubscribe_credentials is not None:
            self._unsubscribe_credentials()
            self._unsubscribe_credentials = None
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None
        if self._current_task is not None:
            await asyncio.shield(self._current_task)

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.periodic_interval_seconds)
            self.trigger_sync()

    # === Status channel ===

    @property
    def state(self) -> EngineState:
        if self._status.syncing:
            return EngineState.SYNCING
        if self._debounce_handle is not None:
            return EngineState.DEBOUNCING
        if self._backoff_handle is not None:
            return EngineState.BACKOFF_WAIT
        return EngineState.IDLE

    def get_status(self) -> SyncStatus:
        return self._status

    def subscribe(self, callback: StatusListener) -> Callable[[], None]:
        """Register a status listener; returns a callable that unregisters it.

        Unsubscribing is idempotent and safe during a notification; it takes
        effect from the next one.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _update_status(self, **changes) -> None:
        new_status = self._status.evolve(**changes)
        if new_status == self._status:
            return
        self._status = new_status
        for callback in list(self._subscribers):
            try:
                callback(new_status)
            except Exception as e:
                logger.error(f"Sync status subscriber failed: {e}", exc_info=True)

    def refresh_status(self) -> SyncStatus:
        """Re-read queue counts from the durable store and publish them."""
        self._update_status(
            pending_count=self._store.get_pending_count(),
            exhausted_count=self._store.get_exhausted_count(),
        )
        return self._status

    def set_online(self, online: bool) -> None:
        """Report connectivity. Coming online triggers a sync attempt.

        Going offline only updates status; a round-trip already in flight is
        left to finish or fail on its own.
        """
        if online == self._status.online:
            return
        logger.info("Device came online" if online else "Device went offline")
        self._update_status(online=online)
        if online:
            self.trigger_sync()

    # === Triggers ===

    def notify_local_mutation(self) -> None:
        """Called after the UI path enqueued a mutation; (re)arms the debounce timer."""
        self._update_status(pending_count=self._store.get_pending_count())
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, mutation stays queued for the next sync")
            return

        self._cancel_debounce(publish=False)
        self._debounce_handle = loop.call_later(
            self._settings.debounce_seconds, self._on_debounce_fired
        )
        self._update_status(immediate_sync_scheduled=True)

    def _on_debounce_fired(self) -> None:
        self._debounce_handle = None
        self._update_status(immediate_sync_scheduled=False)
        self.trigger_sync()

    def trigger_sync(self) -> Optional[asyncio.Task]:
        """Start a round-trip if none is running, the device is online and a
        credential is present. Never raises.

        Returns:
            The round-trip task, or None if nothing was started.
        """
        if self._status.syncing:
            logger.debug("Sync already in progress, skipping")
            return None
        if not self._status.online:
            logger.debug("Offline - sync skipped, changes stay queued")
            return None
        credential = self._credentials.get_credential()
        if credential is None:
            logger.debug("Not authenticated, skipping sync")
            return None
        return self._begin_round_trip(credential)

    async def force_sync_now(self) -> None:
        """Run a round-trip immediately, bypassing the debounce timer.

        Returns silently if a round-trip is already running or the device is
        offline.

        Raises:
            MissingCredentialError: No credential is present.
        """
        credential = self._require_credential()
        if self._status.syncing:
            logger.debug("Force sync requested while syncing, ignoring")
            return
        if not self._status.online:
            logger.debug("Force sync requested while offline, ignoring")
            return
        logger.info("Force sync triggered")
        await self._begin_round_trip(credential)

    def on_login_completed(self) -> "asyncio.Future[SyncStatus]":
        """Start an immediate round-trip after login.

        Returns a one-shot future resolved with the status snapshot once the
        round-trip finishes. If one is already in flight the future follows
        it instead; if offline it resolves immediately.

        Raises:
            MissingCredentialError: No credential is present.
        """
        credential = self._require_credential()
        loop = asyncio.get_running_loop()
        completion: "asyncio.Future[SyncStatus]" = loop.create_future()

        if self._status.syncing:
            task = self._current_task
        elif self._status.online:
            task = self._begin_round_trip(credential)
        else:
            task = None

        if task is None:
            completion.set_result(self._status)
            return completion

        def _resolve(done: asyncio.Task) -> None:
            if completion.done():
                return
            if done.cancelled():
                completion.cancel()
            elif done.exception() is not None:
                completion.set_exception(done.exception())
            else:
                completion.set_result(done.result())

        task.add_done_callback(_resolve)
        return completion

    def requeue_exhausted(self, record_ids: Optional[List[str]] = None) -> int:
        """Give dead-lettered records a fresh retry budget and schedule a sync."""
        count = self._store.requeue_exhausted(record_ids)
        if count:
            logger.info(f"Requeued {count} exhausted records")
            self.refresh_status()
            self.notify_local_mutation()
        return count

    def _require_credential(self) -> Credential:
        credential = self._credentials.get_credential()
        if credential is None:
            raise MissingCredentialError("A credential is required to sync")
        return credential

    def _on_credential_change(self, credential: Optional[Credential]) -> None:
        if credential is None:
            logger.info("Credential cleared, cancelling scheduled syncs")
            self._cancel_debounce()
            self._cancel_backoff()

    def _expire_credential(self, credential: Credential) -> None:
        """Drop a credential the backend rejected; queued records stay pending.

        Only the in-memory credential is cleared; the stored file is left for
        `auth logout`. Scheduled syncs stop until a credential is installed.
        """
        self._consecutive_failures = 0
        if self._credentials.get_credential() is not credential:
            return
        logger.warning(
            f"Credential for {credential.identity_id} expired, sync paused until login"
        )
        self._credentials.clear(persist=False)

    # === Timers ===

    def _cancel_debounce(self, publish: bool = True) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if publish:
            self._update_status(immediate_sync_scheduled=False)

    def _cancel_backoff(self) -> None:
        if self._backoff_handle is not None:
            self._backoff_handle.cancel()
            self._backoff_handle = None

    def backoff_delay(self) -> float:
        """Delay before the next retry, from the consecutive failure count."""
        exponent = max(self._consecutive_failures - 1, 0)
        return min(
            self._settings.backoff_base_seconds * (2**exponent),
            self._settings.backoff_max_seconds,
        )

    def _schedule_backoff(self) -> None:
        self._consecutive_failures += 1
        delay = self.backoff_delay()
        self._cancel_backoff()
        self._backoff_handle = asyncio.get_running_loop().call_later(
            delay, self._on_backoff_fired
        )
        logger.info(f"Retrying sync in {delay:.0f}s (failure #{self._consecutive_failures})")

    def _on_backoff_fired(self) -> None:
        self._backoff_handle = None
        logger.debug("Retrying failed sync records")
        self.trigger_sync()

    # === Round-trip ===

    def _begin_round_trip(self, credential: Credential) -> asyncio.Task:
        # The syncing flag is set before the first suspension point
        self._cancel_debounce(publish=False)
        self._cancel_backoff()
        self._update_status(syncing=True, immediate_sync_scheduled=False)
        task = asyncio.get_running_loop().create_task(self._round_trip(credential))
        self._current_task = task
        return task

    async def _round_trip(self, credential: Credential) -> SyncStatus:
        try:
            push = await self._push(credential)
            if push.auth_expired:
                pull = PullResult(error=push.errors[-1], auth_expired=True)
            else:
                pull = await self._pull(credential)
            pending = self._store.get_pending_count()
            exhausted = self._store.get_exhausted_count()
        except asyncio.CancelledError:
            self._finish_round_trip(syncing=False)
            raise
        except Exception as e:
            logger.error(f"Sync error: {e}", exc_info=True)
            self._schedule_backoff()
            return self._finish_round_trip(syncing=False)

        self.last_push, self.last_pull = push, pull
        if push.auth_expired or pull.auth_expired:
            self._expire_credential(credential)
            return self._finish_round_trip(
                syncing=False, pending_count=pending, exhausted_count=exhausted
            )

        logger.info(
            f"Sync completed: {push.removed} pushed, {push.failed} failed, "
            f"{pull.inserted + pull.overwritten} pulled"
        )
        # Retry state is settled before subscribers see syncing=False
        if push.failed:
            self._schedule_backoff()
        else:
            self._consecutive_failures = 0
        return self._finish_round_trip(
            syncing=False,
            last_sync_at=utc_now(),
            pending_count=pending,
            failed_count=push.failed,
            exhausted_count=exhausted,
        )

    def _finish_round_trip(self, **changes) -> SyncStatus:
        # A subscriber may start the next round from this publish
        if self._current_task is asyncio.current_task():
            self._current_task = None
        final = self._status.evolve(**changes)
        self._update_status(**changes)
        return final

    # === Push ===

    async def _push(self, credential: Credential) -> PushResult:
        """Drain the queue in FIFO batches."""
        result = PushResult()
        queue = self._store.get_queue()
        if not queue:
            return result

        logger.debug(f"Pushing {len(queue)} queued records")
        batch_size = self._settings.batch_size
        for start in range(0, len(queue), batch_size):
            batch = queue[start : start + batch_size]
            result.batches += 1
            try:
                batch_result = await self._remote.push_batch(batch, credential.token)
                failures = batch_result.failed
            except TransportError as e:
                if e.unauthorized:
                    # Records keep their retry budget
                    logger.warning(f"Credential rejected by backend, stopping push: {e}")
                    result.errors.append(str(e))
                    result.auth_expired = True
                    return result
                logger.warning(f"Batch of {len(batch)} records failed: {e}")
                result.errors.append(str(e))
                failures = [FailedRecord(record=record, error_message=str(e)) for record in batch]

            failed_ids = {failure.record.id for failure in failures}
            for record in batch:
                if record.id not in failed_ids:
                    self._acknowledge(record)
                    result.removed += 1
            for failure in failures:
                result.failed += 1
                if self._record_failure(failure):
                    result.exhausted += 1

        return result

    def _acknowledge(self, record: MutationRecord) -> None:
        self._store.remove_queue_record(record.id)
        if record.entity_type != EntityType.UNIT or record.action == MutationAction.DELETE:
            return
        if record.entity_id is None:
            return
        local = self._store.get_entity(record.entity_id)
        # A newer local edit still waits in the queue; leave it tagged local
        if local is None or local.updated_at != parse_datetime(record.payload.get("updated_at")):
            return
        self._store.set_entity_sync_state(record.entity_id, SyncState.SYNCED)

    def _record_failure(self, failure: FailedRecord) -> bool:
        """Bump the retry count; dead-letter the record at the ceiling.

        Returns:
            True if the record was exhausted.
        """
        record = replace(
            failure.record,
            retry_count=failure.record.retry_count + 1,
            last_error=failure.error_message,
            last_attempt_at=utc_now(),
        )
        if record.retry_count >= self._settings.max_retries:
            logger.warning(
                f"Record {record.id} ({record.entity_type.value}/{record.action.value}) "
                f"exhausted after {record.retry_count} attempts: {record.last_error}"
            )
            self._store.exhaust_queue_record(record)
            return True
        self._store.update_queue_record(record)
        return False

    # === Pull / merge ===

    async def _pull(self, credential: Credential) -> PullResult:
        """Fetch authoritative units and merge them. Never raises."""
        result = PullResult()
        try:
            items = await self._remote.pull_entities(
                credential.token,
                owner_scope=credential.identity_id,
                page_size_hint=self._settings.pull_page_size,
            )
            pending_deletes = {
                record.entity_id
                for record in self._store.get_queue()
                if record.action == MutationAction.DELETE
            }
            for item in items:
                if item.get("id") in pending_deletes:
                    continue
                try:
                    remote = unit_from_dict(normalize_timestamps(item))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed remote unit {item.get('id')}: {e}")
                    continue
                self._merge(remote, result)
        except TransportError as e:
            logger.warning(f"Pull failed: {e}")
            result.error = str(e)
            result.auth_expired = e.unauthorized
            return result
        except Exception as e:
            logger.warning(f"Pull failed: {e}", exc_info=True)
            result.error = str(e)
            return result

        logger.debug(
            f"Pull merged: {result.inserted} inserted, {result.overwritten} overwritten, "
            f"{result.kept_local} kept local, {result.conflicts} conflicts"
        )
        return result

    def _merge(self, remote: Unit, result: PullResult) -> None:
        remote = replace(remote, sync_state=SyncState.SYNCED)
        local = self._store.get_entity(remote.id)

        if local is None:
            self._store.upsert_entity_locally(remote)
            result.inserted += 1
            return

        unacknowledged = local.sync_state != SyncState.SYNCED
        if _remote_is_newer(remote.updated_at, local.updated_at):
            if unacknowledged:
                self._record_conflict(local, remote, "remote_wins")
                result.conflicts += 1
            self._store.upsert_entity_locally(remote)
            result.overwritten += 1
            return

        result.kept_local += 1
        if (
            unacknowledged
            and remote.updated_at is not None
            and local.updated_at is not None
            and remote.updated_at < local.updated_at
            and _content(remote) != _content(local)
        ):
            self._record_conflict(local, remote, "local_wins")
            result.conflicts += 1

    def _record_conflict(self, local: Unit, remote: Unit, resolution: str) -> None:
        conflict = SyncConflict(
            id=str(uuid.uuid4()),
            record_id=local.id,
            local_version=unit_to_dict(local),
            remote_version=unit_to_dict(remote),
            resolution=resolution,
            resolved_at=utc_now(),
            local_summary=self._summary(local),
            remote_summary=self._summary(remote),
        )
        self._store.save_sync_conflict(conflict)
        logger.info(f"Sync conflict on unit {local.id}: {resolution}")

    @staticmethod
    def _summary(unit: Unit) -> str:
        return f"{unit.name} ({len(unit.steps)} steps, updated {format_datetime(unit.updated_at)})"
