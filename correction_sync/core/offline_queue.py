"""
Offline queue - durable FIFO of saves that could not complete, replayed
through the SaveCoordinator's version-checked path when connectivity returns.

Persisted as one JSON list under QUEUE_STORAGE_KEY. At most one operation per
record is held: a second enqueue merges into the first and keeps the first
expected version, so replay is still checked against the version the user
originally edited.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Mapping, Optional

from .config import (
    PENDING_TTL_SEC,
    QUEUE_MAX_ATTEMPTS,
    QUEUE_MAX_SIZE,
    QUEUE_POLL_INTERVAL_SEC,
    QUEUE_STORAGE_KEY,
    get_backoff_bounds,
)
from .errors import QueueCorruptionError, QueueFullError
from .ports import NetworkSignal, PersistentKV
from .schema import ErrorKind, PendingOperation, QueueReason, coerce_fields, fields_to_json

from util.logging import logger

# Failures that leave the operation in place and stop the run
_TRANSIENT = (ErrorKind.NETWORK, ErrorKind.IN_FLIGHT)


@dataclass
class QueueRunResult:
    """Summary of one process_queue run."""
    succeeded: int = 0
    conflicts: int = 0
    failed: int = 0
    remaining: int = 0
    stopped: bool = False
    skipped: bool = False
    error: Optional[str] = None
    retry_in: Optional[float] = None


class OfflineQueue:
    """Durable retry queue with exponential backoff."""

    def __init__(self, kv: PersistentKV, coordinator, network: NetworkSignal,
                 on_success: Callable = None, on_conflict: Callable = None, on_failed: Callable = None,
                 base_delay: float = None, max_delay: float = None, poll_interval: float = None,
                 max_size: int = None, ttl_sec: int = None, max_attempts: int = None,
                 key: str = QUEUE_STORAGE_KEY):
        default_base, default_max = get_backoff_bounds()
        self.kv = kv
        self.coordinator = coordinator
        self.network = network
        self.on_success = on_success
        self.on_conflict = on_conflict
        self.on_failed = on_failed
        self.base_delay = default_base if base_delay is None else base_delay
        self.max_delay = default_max if max_delay is None else max_delay
        self.poll_interval = QUEUE_POLL_INTERVAL_SEC if poll_interval is None else poll_interval
        self.max_size = max_size or QUEUE_MAX_SIZE
        self.ttl_sec = PENDING_TTL_SEC if ttl_sec is None else ttl_sec
        self.max_attempts = max_attempts or QUEUE_MAX_ATTEMPTS
        self.key = key

        self._ops: List[PendingOperation] = self._load()
        self._processing = False
        self._next_delay = self.base_delay
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def queue_size(self) -> int:
        return len(self._ops)

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def operations(self) -> List[PendingOperation]:
        return list(self._ops)

    @property
    def next_retry_delay(self) -> float:
        """Delay the next transient failure will wait before retrying."""
        return self._next_delay

    @property
    def retry_scheduled(self) -> bool:
        return self._retry_handle is not None

    def find(self, record_id: int) -> Optional[PendingOperation]:
        for op in self._ops:
            if op.record_id == record_id:
                return op
        return None

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def enqueue(self, record_id: int, payload: Mapping[str, Any], expected_version: int,
                reason=QueueReason.NETWORK_ERROR) -> PendingOperation:
        """Add a save to the queue, merging into an existing one for the same record."""
        validated = fields_to_json(coerce_fields(payload))
        reason = QueueReason(reason)

        existing = self.find(record_id)
        if existing:
            existing.payload.update(validated)
            self._persist()
            logger.log_queue_event("merged", existing.id, record_id, {
                "fields": list(validated),
                "expected_version": existing.expected_version
            })
            return existing

        if len(self._ops) >= self.max_size:
            raise QueueFullError(f"Offline queue is full ({self.max_size} operations)")

        op = PendingOperation.create(record_id, validated, expected_version, reason)
        self._ops.append(op)
        self._persist()
        logger.log_queue_event("enqueued", op.id, record_id, {
            "reason": reason.value,
            "expected_version": expected_version,
            "queue_size": len(self._ops)
        })
        return op

    def dequeue(self, operation_id: str) -> bool:
        """Remove one operation by id."""
        for op in self._ops:
            if op.id == operation_id:
                self._ops.remove(op)
                self._persist()
                logger.log_queue_event("dequeued", op.id, op.record_id)
                return True
        return False

    def clear(self) -> None:
        self._ops = []
        self._persist()
        self._cancel_retry()
        logger.log_queue_event("cleared", "*")

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    async def process_queue(self) -> QueueRunResult:
        """Replay operations in FIFO order until the queue empties or a transient failure stops the run."""
        if self._processing:
            return QueueRunResult(skipped=True, remaining=len(self._ops), error="Already processing")

        if not self.network.is_online:
            return QueueRunResult(skipped=True, remaining=len(self._ops), error="Offline")

        self._processing = True
        self._cancel_retry()
        run = QueueRunResult()
        try:
            while self._ops:
                op = self._ops[0]
                submitted = dict(op.payload)
                result = await self.coordinator.submit(op.record_id, submitted, op.expected_version)

                if result.success:
                    self._next_delay = self.base_delay
                    if op.payload != submitted:
                        # Merged into while replaying: the rest goes out against the new version
                        op.expected_version = result.record.version
                        self._persist()
                        logger.log_queue_event("rebased", op.id, op.record_id,
                                               {"expected_version": op.expected_version})
                        continue

                    self._remove(op)
                    run.succeeded += 1
                    logger.log_queue_event("replayed", op.id, op.record_id,
                                           {"version": result.record.version, "attempts": op.attempts})
                    await self._fire(self.on_success, op, result.record)

                elif result.is_conflict:
                    self._remove(op)
                    run.conflicts += 1
                    logger.log_queue_event("conflict", op.id, op.record_id, {
                        "expected_version": op.expected_version,
                        "server_version": result.conflict.server_version
                    })
                    await self._fire(self.on_conflict, op, result.conflict)

                elif result.error_kind in _TRANSIENT:
                    if op not in self._ops:
                        # Dequeued or cleared while the save was in flight
                        continue

                    op.attempts += 1
                    op.last_error = result.error
                    if result.error_kind == ErrorKind.NETWORK and op.attempts >= self.max_attempts:
                        self._remove(op)
                        run.failed += 1
                        logger.log_queue_event("abandoned", op.id, op.record_id,
                                               {"attempts": op.attempts, "error": result.error})
                        await self._fire(self.on_failed, op, result.error)
                        continue

                    self._persist()
                    run.stopped = True
                    run.error = result.error
                    run.retry_in = self._schedule_retry(op)
                    break

                else:
                    self._remove(op)
                    run.failed += 1
                    logger.log_queue_event("failed", op.id, op.record_id,
                                           {"kind": getattr(result.error_kind, "value", None), "error": result.error})
                    await self._fire(self.on_failed, op, result.error)
        finally:
            self._processing = False

        run.remaining = len(self._ops)
        return run

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Drain on reconnect and periodically while online. Needs a running loop."""
        if self._unsubscribe is None:
            self._unsubscribe = self.network.on_change(self._on_network_change)
        if self._poll_task is None:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())
        logger.log_operation("queue.start", "running", {"queue_size": len(self._ops)})

    def stop(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._poll_task:
            self._poll_task.cancel()
            self._poll_task = None
        if self._drain_task and not self._drain_task.done():
            self._drain_task.cancel()
        self._drain_task = None
        self._cancel_retry()
        logger.log_operation("queue.stop", "stopped", {"queue_size": len(self._ops)})

    def _on_network_change(self, online: bool) -> None:
        if online and self._ops:
            self._trigger()

    def _trigger(self) -> None:
        self._retry_handle = None
        if self._drain_task and not self._drain_task.done():
            return
        self._drain_task = asyncio.ensure_future(self.process_queue())

    async def _poll_loop(self):
        while True:
            await asyncio.sleep(self.poll_interval)
            if self.network.is_online and self._ops and not self._processing:
                await self.process_queue()

    def _schedule_retry(self, op: PendingOperation) -> Optional[float]:
        delay = self._next_delay
        self._next_delay = min(self._next_delay * 2, self.max_delay)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None

        self._retry_handle = loop.call_later(delay, self._trigger)
        logger.log_queue_event("retry_scheduled", op.id, op.record_id,
                               {"attempts": op.attempts, "delay_sec": delay, "error": op.last_error})
        return delay

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    async def _fire(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Offline queue callback {getattr(callback, '__name__', callback)} failed: {e}")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _remove(self, op: PendingOperation) -> None:
        if op in self._ops:
            self._ops.remove(op)
            self._persist()

    def _persist(self) -> None:
        if self._ops:
            self.kv.set(self.key, json.dumps([op.to_dict() for op in self._ops]))
        else:
            self.kv.remove(self.key)

    def _load(self) -> List[PendingOperation]:
        raw = self.kv.get(self.key)
        if raw is None:
            return []

        try:
            entries = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Discarding unreadable offline queue: {e}")
            self.kv.remove(self.key)
            return []

        if not isinstance(entries, list):
            logger.warning("Discarding offline queue: stored value is not a list")
            self.kv.remove(self.key)
            return []

        cutoff = datetime.now() - timedelta(seconds=self.ttl_sec)
        ops: List[PendingOperation] = []
        dropped = 0
        for entry in entries:
            try:
                if not isinstance(entry, dict):
                    raise QueueCorruptionError(f"Unreadable pending operation: {entry!r}")
                op = PendingOperation.from_dict(entry)
            except QueueCorruptionError as e:
                dropped += 1
                entry_id = entry.get("id", "?") if isinstance(entry, dict) else "?"
                logger.log_queue_event("corrupt", str(entry_id), details={"error": str(e)})
                continue

            if op.created_at < cutoff:
                dropped += 1
                logger.log_queue_event("dropped", op.id, op.record_id,
                                       {"reason": "expired", "created_at": op.created_at.isoformat()})
                continue

            ops.append(op)

        if dropped:
            self._ops = ops
            self._persist()

        logger.log_operation("queue.load", "success", {"loaded": len(ops), "dropped": dropped})
        return ops
