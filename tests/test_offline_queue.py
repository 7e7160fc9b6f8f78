"""
OfflineQueue: merge-on-enqueue, FIFO replay, backoff, durability and
corruption handling.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from correction_sync.core.config import QUEUE_STORAGE_KEY
from correction_sync.core.errors import NetworkError, QueueFullError, UnknownServerError, ValidationError
from correction_sync.core.offline_queue import OfflineQueue
from correction_sync.core.schema import ActionType, PendingOperation, QueueReason, UrgencyLevel


@pytest.fixture
def callbacks():
    return {"on_success": MagicMock(), "on_conflict": MagicMock(), "on_failed": MagicMock()}


@pytest.fixture
def queue(kv, coordinator, network, callbacks):
    return OfflineQueue(kv, coordinator, network, base_delay=1.0, max_delay=4.0,
                        poll_interval=3600, max_attempts=5, **callbacks)


class TestEnqueue:
    """At most one pending operation per record."""

    def test_second_enqueue_merges(self, queue):
        first = queue.enqueue(42, {"urgency": "HIGH"}, 3, "offline")
        merged = queue.enqueue(42, {"urgency": "LOW", "action": "TASK"}, 5, "network-error")

        assert merged is first
        assert queue.queue_size == 1
        assert merged.payload == {"urgency": "LOW", "action": "TASK"}
        assert merged.expected_version == 3
        assert merged.reason == QueueReason.OFFLINE

    def test_invalid_payload_rejected(self, queue):
        with pytest.raises(ValidationError):
            queue.enqueue(42, {"urgency": "SOON"}, 3)
        assert queue.queue_size == 0

    def test_full_queue_rejects_new_records_but_merges(self, kv, coordinator, network):
        queue = OfflineQueue(kv, coordinator, network, max_size=2)
        queue.enqueue(42, {"urgency": "HIGH"}, 3)
        queue.enqueue(7, {"urgency": "HIGH"}, 1)

        with pytest.raises(QueueFullError):
            queue.enqueue(8, {"urgency": "HIGH"}, 1)

        queue.enqueue(42, {"action": "TASK"}, 3)
        assert queue.queue_size == 2

    def test_dequeue_and_clear(self, queue, kv):
        op = queue.enqueue(42, {"urgency": "HIGH"}, 3)
        queue.enqueue(7, {"urgency": "HIGH"}, 1)

        assert queue.dequeue(op.id)
        assert not queue.dequeue(op.id)
        assert [o.record_id for o in queue.operations] == [7]

        queue.clear()
        assert queue.queue_size == 0
        assert kv.get(QUEUE_STORAGE_KEY) is None


class TestProcessQueue:
    @pytest.mark.asyncio
    async def test_offline_instant_save_then_reconnect_scenario(self, queue, coordinator, network, store, callbacks):
        network.set_online(False)
        store.fail_with(NetworkError("network unreachable"))

        result = await coordinator.instant_save(42, "urgency", "HIGH", "LOW")
        assert result.is_network_error

        queue.enqueue(42, {"urgency": "HIGH"}, 3, "offline")
        assert queue.queue_size == 1

        network.set_online(True)
        run = await queue.process_queue()

        assert run.succeeded == 1
        assert queue.queue_size == 0
        assert store.records[42].urgency is UrgencyLevel.HIGH
        assert store.records[42].version == 4
        op, record = callbacks["on_success"].call_args[0]
        assert op.record_id == 42 and record.version == 4

    @pytest.mark.asyncio
    async def test_skipped_while_offline(self, queue, network, store):
        queue.enqueue(42, {"urgency": "HIGH"}, 3)
        network.set_online(False)

        run = await queue.process_queue()

        assert run.skipped
        assert run.remaining == 1
        assert store.update_calls == []

    @pytest.mark.asyncio
    async def test_fifo_order(self, queue, store):
        queue.enqueue(7, {"action": "CALENDAR"}, 1)
        queue.enqueue(42, {"action": "PAYMENT"}, 3)

        await queue.process_queue()

        assert [call[0] for call in store.update_calls] == [7, 42]

    @pytest.mark.asyncio
    async def test_conflict_removed_not_retried(self, queue, store, callbacks):
        store.bump(42, urgency="MEDIUM")
        queue.enqueue(42, {"urgency": "HIGH"}, 3)

        run = await queue.process_queue()

        assert run.conflicts == 1
        assert queue.queue_size == 0
        assert store.records[42].urgency is UrgencyLevel.MEDIUM
        op, conflict = callbacks["on_conflict"].call_args[0]
        assert conflict.expected_version == 3
        assert conflict.server_version == 4

    @pytest.mark.asyncio
    async def test_network_failure_stops_run(self, queue, store):
        queue.enqueue(42, {"urgency": "HIGH"}, 3)
        queue.enqueue(7, {"urgency": "HIGH"}, 1)
        store.fail_with(NetworkError("connection refused"))

        run = await queue.process_queue()
        queue.stop()

        assert run.stopped
        assert run.remaining == 2
        assert run.retry_in == 1.0
        assert len(store.update_calls) == 1
        first = queue.operations[0]
        assert first.record_id == 42
        assert first.attempts == 1
        assert first.last_error == "connection refused"

    @pytest.mark.asyncio
    async def test_backoff_doubles_caps_and_resets(self, queue, store):
        queue.enqueue(42, {"urgency": "HIGH"}, 3)
        store.fail_with(NetworkError("down"), times=4)

        delays = []
        for _ in range(4):
            delays.append((await queue.process_queue()).retry_in)
        queue.stop()

        assert delays == [1.0, 2.0, 4.0, 4.0]
        assert queue.operations[0].attempts == 4

        run = await queue.process_queue()
        assert run.succeeded == 1
        assert queue.next_retry_delay == 1.0

    @pytest.mark.asyncio
    async def test_scheduled_retry_drains(self, kv, coordinator, network, store):
        queue = OfflineQueue(kv, coordinator, network, base_delay=0.01, poll_interval=3600)
        queue.enqueue(42, {"urgency": "HIGH"}, 3)
        store.fail_with(NetworkError("blip"))

        await queue.process_queue()
        assert queue.retry_scheduled

        await asyncio.sleep(0.1)

        assert queue.queue_size == 0
        assert store.records[42].version == 4

    @pytest.mark.asyncio
    async def test_server_error_removed_and_reported(self, queue, store, callbacks):
        queue.enqueue(42, {"urgency": "HIGH"}, 3)
        queue.enqueue(7, {"urgency": "HIGH"}, 1)
        store.fail_with(UnknownServerError("internal error"))

        run = await queue.process_queue()

        assert run.failed == 1
        assert run.succeeded == 1
        assert queue.queue_size == 0
        op, error = callbacks["on_failed"].call_args[0]
        assert op.record_id == 42
        assert error == "internal error"

    @pytest.mark.asyncio
    async def test_merge_during_replay_is_sent_against_new_version(self, queue, store):
        queue.enqueue(42, {"urgency": "HIGH"}, 3)
        store.hold()

        running = asyncio.ensure_future(queue.process_queue())
        await asyncio.sleep(0)
        assert queue.is_processing
        queue.enqueue(42, {"action": "TASK"}, 3)
        store.release()
        run = await running

        assert run.succeeded == 1
        assert [call[2] for call in store.update_calls] == [3, 4]
        assert store.records[42].action is ActionType.TASK
        assert store.records[42].version == 5

    @pytest.mark.asyncio
    async def test_clear_during_replay(self, queue, store, callbacks):
        queue.enqueue(42, {"urgency": "HIGH"}, 3)
        store.hold()

        running = asyncio.ensure_future(queue.process_queue())
        await asyncio.sleep(0)
        queue.clear()
        store.release()
        run = await running

        assert run.succeeded == 1
        assert queue.queue_size == 0
        callbacks["on_success"].assert_called_once()

    @pytest.mark.asyncio
    async def test_dequeue_during_failed_replay_not_restored(self, queue, store, kv):
        op = queue.enqueue(42, {"urgency": "HIGH"}, 3)
        store.fail_with(NetworkError("down"))
        store.hold()

        running = asyncio.ensure_future(queue.process_queue())
        await asyncio.sleep(0)
        queue.dequeue(op.id)
        store.release()
        run = await running
        queue.stop()

        assert not run.stopped
        assert queue.queue_size == 0
        assert kv.get(QUEUE_STORAGE_KEY) is None
        assert not queue.retry_scheduled

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, kv, coordinator, network, store, callbacks):
        queue = OfflineQueue(kv, coordinator, network, base_delay=1.0, poll_interval=3600,
                             max_attempts=3, **callbacks)
        queue.enqueue(42, {"urgency": "HIGH"}, 3)
        queue.enqueue(7, {"urgency": "HIGH"}, 1)
        store.fail_with(NetworkError("unreachable"), times=3)

        runs = [await queue.process_queue() for _ in range(3)]
        queue.stop()

        assert [run.stopped for run in runs] == [True, True, False]
        assert runs[2].failed == 1
        assert runs[2].succeeded == 1
        assert queue.queue_size == 0
        op, error = callbacks["on_failed"].call_args[0]
        assert op.record_id == 42
        assert op.attempts == 3
        assert error == "unreachable"
        assert store.records[42].version == 3

    @pytest.mark.asyncio
    async def test_concurrent_run_skipped(self, queue, store):
        queue.enqueue(42, {"urgency": "HIGH"}, 3)
        store.hold()

        running = asyncio.ensure_future(queue.process_queue())
        await asyncio.sleep(0)
        second = await queue.process_queue()
        store.release()
        await running

        assert second.skipped
        assert len(store.update_calls) == 1

    @pytest.mark.asyncio
    async def test_async_callback_awaited(self, kv, coordinator, network):
        seen = []

        async def on_success(op, record):
            seen.append(record.version)

        queue = OfflineQueue(kv, coordinator, network, on_success=on_success)
        queue.enqueue(42, {"urgency": "HIGH"}, 3)
        await queue.process_queue()

        assert seen == [4]

    @pytest.mark.asyncio
    async def test_reconnect_triggers_drain(self, queue, network, store):
        network.set_online(False)
        queue.start()
        queue.enqueue(42, {"urgency": "HIGH"}, 3, "offline")

        network.set_online(True)
        await asyncio.sleep(0.05)
        queue.stop()
        await asyncio.sleep(0)

        assert queue.queue_size == 0
        assert store.records[42].version == 4


class TestPersistence:
    def test_queue_survives_reload(self, queue, kv, coordinator, network):
        op = queue.enqueue(42, {"urgency": "HIGH"}, 3, "offline")

        reloaded = OfflineQueue(kv, coordinator, network)

        assert reloaded.operations == [op]

    def test_corrupt_entries_dropped(self, kv, coordinator, network):
        good = PendingOperation.create(42, {"urgency": "HIGH"}, 3, "offline").to_dict()
        no_time = dict(good, id="no-time", record_id=8, created_at=None)
        aware = dict(good, id="aware", record_id=7, created_at="2020-01-01T00:00:00+00:00")
        kv.set(QUEUE_STORAGE_KEY, json.dumps([{"id": "bad", "payload": "??"}, "junk", no_time, aware, good]))

        queue = OfflineQueue(kv, coordinator, network)

        assert [op.id for op in queue.operations] == [good["id"]]
        assert len(json.loads(kv.get(QUEUE_STORAGE_KEY))) == 1

    @pytest.mark.parametrize("raw", ["{not json", json.dumps({"id": "x"})])
    def test_unreadable_queue_starts_empty(self, kv, coordinator, network, raw):
        kv.set(QUEUE_STORAGE_KEY, raw)

        queue = OfflineQueue(kv, coordinator, network)

        assert queue.queue_size == 0
        assert kv.get(QUEUE_STORAGE_KEY) is None

    def test_expired_operations_dropped(self, kv, coordinator, network):
        old = PendingOperation.create(42, {"urgency": "HIGH"}, 3, "offline")
        old.created_at = datetime.now() - timedelta(days=8)
        fresh = PendingOperation.create(7, {"urgency": "HIGH"}, 1, "offline")
        kv.set(QUEUE_STORAGE_KEY, json.dumps([old.to_dict(), fresh.to_dict()]))

        queue = OfflineQueue(kv, coordinator, network)

        assert [op.record_id for op in queue.operations] == [7]

    def test_timezone_aware_timestamp_normalised(self, kv, coordinator, network):
        entry = PendingOperation.create(42, {"urgency": "HIGH"}, 3, "offline").to_dict()
        entry["created_at"] = datetime.now(timezone.utc).isoformat()
        kv.set(QUEUE_STORAGE_KEY, json.dumps([entry]))

        queue = OfflineQueue(kv, coordinator, network)

        assert [op.record_id for op in queue.operations] == [42]
        assert queue.operations[0].created_at.tzinfo is None
