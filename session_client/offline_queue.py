import json
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, List, Optional

from shared.channels import Channel
from shared.errors import ErrorKind, PermanentFailure, RemoteError, StorageError
from shared.events import (
    Event, QueueChange, SyncStatus, saved_offline_event, sync_completed_event
)
from shared.retry import RetryPolicy
from .operations import QueuedOperation

logger = logging.getLogger(__name__)

QUEUE_KEY = 'OFFLINE_QUEUE'
MAX_RETRIES = 3
SLOW_DRAIN_SECONDS = 10.0


@dataclass
class DrainResult:
    succeeded: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {'succeeded': self.succeeded, 'failed': self.failed}


@dataclass
class SubmitResult:
    applied: bool
    operation_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {'applied': self.applied, 'operation_id': self.operation_id}


class OfflineQueue:
    """
    Durable outbox for tournament mutations made while offline.

    The queue is the only writer of its snapshot under `key`. Every change to
    the in-memory list is written to the store before the call returns.
    drain() replays a point-in-time snapshot strictly in enqueue order, one
    operation at a time; a second drain while one is running is a no-op.
    """

    def __init__(
        self,
        store,
        connectivity,
        applier: Callable[[QueuedOperation], None],
        key: str = QUEUE_KEY,
        max_retries: int = MAX_RETRIES,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        idle_reset_seconds: Optional[float] = 3.0,
        timer_factory=threading.Timer,
        clock: Callable[[], float] = time.monotonic
    ):
        self.store = store
        self.connectivity = connectivity
        self.applier = applier
        self.key = key
        self.max_retries = max_retries
        self.replay_policy = RetryPolicy(max_retries=max_retries, base_delay=base_delay)
        self.sleep = sleep
        self.idle_reset_seconds = idle_reset_seconds
        self.timer_factory = timer_factory
        self.clock = clock

        self.queue_changed: Channel[QueueChange] = Channel("queue_changed")
        self.sync_status: Channel[SyncStatus] = Channel("sync_status")
        self.notifications: Channel[Event] = Channel("queue_notifications")

        self.progress = (0, 0)
        self.discarded = 0

        self._queue: List[QueuedOperation] = []
        self._lock = threading.RLock()
        self._loaded = False
        self._initialized = False
        self._draining = False
        self._was_online = True
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._idle_timer = None

    # ==================== Lifecycle ====================

    def initialize(self):
        """Load the stored snapshot and start auto-draining on reconnect."""
        with self._lock:
            if self._initialized:
                return
            self._ensure_loaded()
            self._initialized = True

        self._was_online = self.connectivity.is_online
        self._unsubscribe = self.connectivity.subscribe(self._on_connectivity_change)
        logger.info(f"Offline queue initialized with {len(self._queue)} pending operation(s)")
        self.queue_changed.publish(QueueChange.LOADED)

    def cleanup(self):
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_idle_timer()
        self._initialized = False

    def _ensure_loaded(self):
        if self._loaded:
            return
        self._queue = self._load()
        self._loaded = True

    def _load(self) -> List[QueuedOperation]:
        try:
            raw = self.store.get(self.key)
        except StorageError as e:
            logger.error(f"Failed to load offline queue, starting empty: {e}")
            return []
        if not raw:
            return []

        try:
            entries = json.loads(raw)
        except ValueError as e:
            logger.error(f"Stored offline queue is not valid JSON, starting empty: {e}")
            return []
        if not isinstance(entries, list):
            logger.error("Stored offline queue is not a list, starting empty")
            return []

        operations = []
        for entry in entries:
            try:
                operation = QueuedOperation.from_dict(entry)
            except (PermanentFailure, TypeError, AttributeError) as e:
                logger.error(f"Dropping unreadable queued operation: {e}")
                self.discarded += 1
                continue
            if operation.attempt >= self.max_retries:
                logger.error(f"Dropping queued operation {operation.id}: retry budget already spent")
                self.discarded += 1
                continue
            operations.append(operation)

        if self.discarded:
            self._queue = operations
            self._persist_quietly()
        return operations

    # ==================== Persistence ====================

    def _persist(self):
        snapshot = json.dumps([op.to_dict() for op in self._queue])
        self.store.set(self.key, snapshot)

    def _persist_quietly(self):
        try:
            self._persist()
        except StorageError as e:
            logger.error(f"Failed to save offline queue: {e}")

    # ==================== Queue operations ====================

    def enqueue(self, kind, target_id: str, payload) -> str:
        """
        Append a mutation and persist the whole queue before returning.

        Raises UnknownOperationError / MalformedOperationError for payloads that
        could never be applied, and StorageError when the snapshot could not be
        written (the operation is then not queued).
        """
        operation = QueuedOperation.create(kind, target_id, payload)
        return self._append(operation)

    def _append(self, operation: QueuedOperation) -> str:
        with self._lock:
            self._ensure_loaded()
            self._queue.append(operation)
            try:
                self._persist()
            except StorageError:
                self._queue = [op for op in self._queue if op.id != operation.id]
                raise

        logger.info(
            f"Queued {operation.kind.value} for session {operation.target_id} "
            f"({len(self._queue)} pending)"
        )
        self.queue_changed.publish(QueueChange.ENQUEUED)
        if not self.connectivity.is_online:
            self.notifications.publish(
                saved_offline_event(operation.id, operation.kind.value, operation.target_id)
            )
        return operation.id

    def submit(self, kind, target_id: str, payload) -> SubmitResult:
        """
        Apply a mutation now when online, otherwise queue it.

        While earlier mutations are still pending the new one is queued behind
        them so edits to a session are never applied out of order.
        """
        operation = QueuedOperation.create(kind, target_id, payload)

        if self.connectivity.is_online and not self.has_unsynced():
            try:
                self.applier(operation)
                return SubmitResult(applied=True)
            except RemoteError as e:
                if not e.is_retryable:
                    raise
                logger.warning(f"Network error applying {operation.kind.value}, queueing: {e}")

        return SubmitResult(applied=False, operation_id=self._append(operation))

    def _remove(self, operation: QueuedOperation):
        with self._lock:
            self._queue = [op for op in self._queue if op.id != operation.id]
            self._persist_quietly()
        self.queue_changed.publish(QueueChange.REMOVED)

    def clear(self):
        with self._lock:
            self._queue = []
            self._persist()
        self.queue_changed.publish(QueueChange.CLEARED)

    def operations(self) -> List[QueuedOperation]:
        with self._lock:
            return [replace(op) for op in self._queue]

    def has_unsynced(self) -> bool:
        return len(self) > 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def is_draining(self) -> bool:
        return self._draining

    # ==================== Drain ====================

    def drain(self) -> DrainResult:
        with self._lock:
            self._ensure_loaded()
            if self._draining or not self._queue:
                return DrainResult()
            self._draining = True
            snapshot = list(self._queue)

        self._cancel_idle_timer()
        self.sync_status.publish(SyncStatus.SYNCING)

        result = DrainResult()
        started = self.clock()
        try:
            for index, operation in enumerate(snapshot):
                self.progress = (index, len(snapshot))

                delay = self.replay_policy.backoff(operation.attempt)
                if delay > 0:
                    self.sleep(delay)

                try:
                    self.applier(operation)
                except Exception as error:
                    self._record_failure(operation, error, result)
                else:
                    self._remove(operation)
                    result.succeeded += 1
        finally:
            with self._lock:
                self._draining = False
            self.progress = (0, 0)

        duration = self.clock() - started
        logger.info(
            f"Offline queue drain completed: {len(snapshot)} operation(s), "
            f"{result.succeeded} succeeded, {result.failed} failed in {duration:.2f}s"
        )
        if duration > SLOW_DRAIN_SECONDS:
            logger.warning(
                f"Offline queue drain was slow: {duration:.1f}s for {len(snapshot)} operation(s)"
            )

        if result.failed:
            self.sync_status.publish(SyncStatus.FAILED)
        else:
            self.sync_status.publish(SyncStatus.SYNCED)
            self._schedule_idle_reset()
        self.notifications.publish(sync_completed_event(result.succeeded, result.failed))
        return result

    def _record_failure(self, operation: QueuedOperation, error: Exception, result: DrainResult):
        if getattr(error, 'kind', None) == ErrorKind.PERMANENT:
            logger.error(
                f"Dropping {operation.kind.value} for session {operation.target_id}: {error}"
            )
            self._remove(operation)
            result.failed += 1
            return

        with self._lock:
            operation.attempt += 1
            exhausted = operation.attempt >= self.max_retries

        if exhausted:
            logger.error(
                f"Max retries reached for {operation.kind.value} on session "
                f"{operation.target_id} ({operation.attempt}/{self.max_retries}), removing: {error}"
            )
            self._remove(operation)
            result.failed += 1
            return

        logger.warning(
            f"Replay of {operation.kind.value} on session {operation.target_id} failed "
            f"(attempt {operation.attempt}/{self.max_retries}): {error}"
        )
        with self._lock:
            self._persist_quietly()
        self.queue_changed.publish(QueueChange.UPDATED)

    def _on_connectivity_change(self, online: bool):
        was_online = self._was_online
        self._was_online = online
        if online and not was_online and len(self) > 0 and not self._draining:
            logger.info(f"Network reconnected, syncing offline queue ({len(self)} pending)")
            self.drain()

    # ==================== Sync status ====================

    def _schedule_idle_reset(self):
        if self.idle_reset_seconds is None:
            return
        self._cancel_idle_timer()
        timer = self.timer_factory(self.idle_reset_seconds, self._reset_to_idle)
        timer.daemon = True
        self._idle_timer = timer
        timer.start()

    def _reset_to_idle(self):
        self._idle_timer = None
        if self.sync_status.latest == SyncStatus.SYNCED:
            self.sync_status.publish(SyncStatus.IDLE)

    def _cancel_idle_timer(self):
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None
