"""
UndoManager: bounded stack, replay through instant save, partial failures.
"""

import asyncio

import pytest

from correction_sync.core.schema import ChangeKind, ChangeRecord, FieldChange, UrgencyLevel
from correction_sync.core.undo import UndoManager


def single(change):
    return ChangeRecord.create(ChangeKind.SINGLE, [change], f"{change.field} -> {change.new_value}")


@pytest.fixture
def undo(coordinator):
    return UndoManager(coordinator, max_entries=20)


class TestUndoStack:
    """Cap, eviction order and inspection."""

    def test_empty(self, undo):
        assert not undo.can_undo
        assert undo.size == 0
        assert undo.peek() is None
        assert undo.undo_description is None

    def test_cap_keeps_most_recent_entries(self, undo):
        entries = [single(FieldChange(42, "urgency", "LOW", "HIGH")) for _ in range(25)]
        for entry in entries:
            undo.record_change(entry)

        assert undo.size == 20
        assert [e.id for e in undo.entries()] == [e.id for e in entries[5:]]
        assert undo.peek() is entries[-1]

    def test_description_of_top_entry(self, undo):
        undo.record_change(single(FieldChange(42, "urgency", "LOW", "HIGH")))
        assert undo.undo_description == "Undo: urgency -> HIGH"

    def test_empty_entry_not_recorded(self, undo):
        undo.record_change(ChangeRecord.create(ChangeKind.BULK, [], "nothing"))
        assert not undo.can_undo

    def test_clear(self, undo):
        undo.record_change(single(FieldChange(42, "urgency", "LOW", "HIGH")))
        undo.clear()
        assert not undo.can_undo

    def test_default_size_from_config(self, coordinator):
        assert UndoManager(coordinator).max_entries == 20


class TestExecuteUndo:
    @pytest.mark.asyncio
    async def test_single_undo_scenario(self, undo, coordinator, store):
        result = await coordinator.instant_save(42, "urgency", "HIGH", "LOW")
        undo.record_change(single(result.change))

        outcome = await undo.execute_undo()

        assert outcome.success
        assert store.update_calls[-1] == (42, {"urgency": UrgencyLevel.LOW}, 4)
        assert store.records[42].urgency is UrgencyLevel.LOW
        assert store.records[42].version == 5
        assert not undo.can_undo

    @pytest.mark.asyncio
    async def test_n_undos_restore_original_value(self, undo, coordinator, store):
        previous = "LOW"
        for value in ["HIGH", "MEDIUM", "HIGH"]:
            result = await coordinator.instant_save(42, "urgency", value, previous)
            undo.record_change(single(result.change))
            previous = value

        for _ in range(3):
            assert (await undo.execute_undo()).success

        assert store.records[42].urgency is UrgencyLevel.LOW
        assert not undo.can_undo

        calls = len(store.update_calls)
        extra = await undo.execute_undo()
        assert not extra.success
        assert len(store.update_calls) == calls

    @pytest.mark.asyncio
    async def test_bulk_replayed_in_reverse(self, undo, coordinator, store):
        a = (await coordinator.instant_save(42, "action", "TASK", "FYI")).change
        b = (await coordinator.instant_save(7, "action", "PAYMENT", "TASK")).change
        undo.record_change(ChangeRecord.create(ChangeKind.BULK, [a, b], "bulk action"))

        outcome = await undo.execute_undo()

        assert outcome.success
        assert [call[0] for call in store.update_calls[-2:]] == [7, 42]
        assert outcome.restored == [b, a]

    @pytest.mark.asyncio
    async def test_partial_failure_reported_and_not_restored(self, undo, coordinator, store):
        a = (await coordinator.instant_save(42, "action", "TASK", "FYI")).change
        b = (await coordinator.instant_save(7, "action", "PAYMENT", "TASK")).change
        undo.record_change(ChangeRecord.create(ChangeKind.BULK, [a, b], "bulk action"))
        store.bump(42, urgency="HIGH")

        outcome = await undo.execute_undo()

        assert not outcome.success
        assert outcome.partial
        assert outcome.restored == [b]
        assert outcome.failed_change == a
        assert outcome.conflict is not None
        assert store.records[7].action.value == "TASK"
        assert store.records[42].action.value == "TASK"
        assert not undo.can_undo

    @pytest.mark.asyncio
    async def test_failure_on_first_change_is_not_partial(self, undo, coordinator, store):
        result = await coordinator.instant_save(42, "urgency", "HIGH", "LOW")
        undo.record_change(single(result.change))
        from correction_sync.core.errors import NetworkError
        store.fail_with(NetworkError("offline"))

        outcome = await undo.execute_undo()

        assert not outcome.success
        assert not outcome.partial
        assert outcome.error == "offline"

    @pytest.mark.asyncio
    async def test_not_reentrant(self, undo, coordinator, store):
        result = await coordinator.instant_save(42, "urgency", "HIGH", "LOW")
        undo.record_change(single(result.change))
        undo.record_change(single(FieldChange(7, "urgency", "MEDIUM", "LOW")))

        store.hold()
        first = asyncio.ensure_future(undo.execute_undo())
        await asyncio.sleep(0)
        assert undo.is_undoing

        second = await undo.execute_undo()
        assert not second.success
        assert undo.size == 1

        store.release()
        await first
        assert not undo.is_undoing
