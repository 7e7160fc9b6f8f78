"""
CorrectionEditor - the UI-facing surface of the edit-and-sync core.

Wires SaveCoordinator, ConflictResolver, UndoManager, OfflineQueue and
AutoSaveRecovery together and applies the cross-component policy:
- successful instant saves push one undo entry; a bulk update pushes one
  bulk entry holding only the changes that succeeded
- network failures go to the offline queue, reason ``offline`` when the
  network signal reports offline and ``network-error`` otherwise
- a replayed queue operation clears the draft for the same record
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .autosave import AutoSaveRecovery, RecoveryNotice
from .conflicts import ConflictResolver, ConflictRow, ResolutionOutcome
from .errors import EditStateError, QueueFullError
from .offline_queue import OfflineQueue, QueueRunResult
from .ports import NetworkSignal, PersistentKV, RecordStore
from .save_coordinator import SaveCoordinator
from .schema import (
    ChangeKind,
    ChangeRecord,
    ConflictDescriptor,
    EditableRecord,
    EditSession,
    FieldChange,
    PendingOperation,
    QueueReason,
    SaveResult,
    SaveStatus,
    coerce_field_value,
)
from .undo import UndoManager, UndoResult

from util.logging import logger


@dataclass
class BulkUpdateResult:
    """Per-record outcome of a bulk update."""
    succeeded: List[int] = field(default_factory=list)
    conflicts: Dict[int, ConflictDescriptor] = field(default_factory=dict)
    failed: Dict[int, str] = field(default_factory=dict)
    queued: List[int] = field(default_factory=list)
    undo_entry: Optional[ChangeRecord] = None

    @property
    def success(self) -> bool:
        return not (self.conflicts or self.failed or self.queued)


def describe_change(change: FieldChange) -> str:
    return f"{change.field} on #{change.record_id}: {change.previous_value} -> {change.new_value}"


class CorrectionEditor:
    """One editor per client; every component instance is owned here."""

    def __init__(self, store: RecordStore, kv: PersistentKV, network: NetworkSignal,
                 undo_size: int = None, debounce_sec: float = None,
                 on_queue_success: Callable = None, on_queue_conflict: Callable = None,
                 on_queue_failed: Callable = None, **queue_options):
        self.network = network
        self.autosave = AutoSaveRecovery(kv, debounce_sec=debounce_sec)
        self.coordinator = SaveCoordinator(store, autosave=self.autosave)
        self.resolver = ConflictResolver(self.coordinator)
        self.undo = UndoManager(self.coordinator, max_entries=undo_size)

        self._on_queue_success = on_queue_success
        self.queue = OfflineQueue(
            kv, self.coordinator, network,
            on_success=self._queue_succeeded,
            on_conflict=on_queue_conflict,
            on_failed=on_queue_failed,
            **queue_options
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load_records(self, records: Iterable[EditableRecord]) -> None:
        self.coordinator.load_records(records)

    def start(self) -> None:
        self.queue.start()

    def stop(self) -> None:
        self.queue.stop()
        self.autosave.flush()

    # ------------------------------------------------------------------
    # Reactive surface
    # ------------------------------------------------------------------

    @property
    def editing_id(self) -> Optional[int]:
        return self.coordinator.editing_id

    @property
    def current_data(self) -> Optional[Dict[str, Any]]:
        return self.coordinator.current_data

    @property
    def save_status(self) -> SaveStatus:
        return self.coordinator.status

    @property
    def is_dirty(self) -> bool:
        return self.coordinator.is_dirty

    @property
    def conflict_data(self) -> Optional[ConflictDescriptor]:
        return self.coordinator.conflict_data

    @property
    def conflict_rows(self) -> List[ConflictRow]:
        return self.resolver.rows

    @property
    def can_undo(self) -> bool:
        return self.undo.can_undo

    @property
    def undo_description(self) -> Optional[str]:
        return self.undo.undo_description

    @property
    def queue_size(self) -> int:
        return self.queue.queue_size

    @property
    def is_processing(self) -> bool:
        return self.queue.is_processing

    @property
    def is_online(self) -> bool:
        return self.network.is_online

    # ------------------------------------------------------------------
    # Session commands
    # ------------------------------------------------------------------

    def start_editing(self, record_id: int) -> EditSession:
        return self.coordinator.start_edit(record_id)

    def update_field(self, field_name: str, value: Any, record_id: int = None) -> EditSession:
        return self.coordinator.update_field(field_name, value, record_id=record_id)

    async def save_edit(self) -> SaveResult:
        """Save the session; a network failure hands the working copy to the queue."""
        session = self.coordinator.session
        result = await self.coordinator.save()

        if result.is_network_error and session is not None:
            result.queued = self._enqueue_quietly(session.record_id, session.current, session.baseline.version)
            if result.queued:
                self.coordinator.detach_session()

        return result

    def cancel_edit(self) -> bool:
        return self.coordinator.cancel_edit()

    async def force_overwrite(self) -> SaveResult:
        return await self.coordinator.force_overwrite()

    def accept_server_version(self) -> Optional[EditableRecord]:
        return self.coordinator.accept_server_version()

    async def resolve_conflict(self, intent) -> ResolutionOutcome:
        return await self.resolver.resolve(intent)

    # ------------------------------------------------------------------
    # Instant and bulk saves
    # ------------------------------------------------------------------

    async def instant_save(self, record_id: int, field_name: str, new_value: Any,
                           previous_value: Any = None) -> SaveResult:
        """Save one cell immediately and make it undoable."""
        if previous_value is None:
            record = self.coordinator.get_record(record_id)
            previous_value = record.get_field(field_name) if record else None

        result = await self.coordinator.instant_save(record_id, field_name, new_value, previous_value)

        if result.success and result.change:
            self.undo.record_change(ChangeRecord.create(
                ChangeKind.SINGLE, [result.change], describe_change(result.change)
            ))
        elif result.is_network_error:
            record = self.coordinator.get_record(record_id)
            if record is not None:
                result.queued = self._enqueue_quietly(record_id, {field_name: new_value}, record.version)

        return result

    async def bulk_update(self, record_ids: Iterable[int], field_name: str, value: Any) -> BulkUpdateResult:
        """Apply one field value to many records, one at a time, as a single undo step."""
        coerce_field_value(field_name, value)

        outcome = BulkUpdateResult()
        changes = []
        for record_id in record_ids:
            record = self.coordinator.get_record(record_id)
            if record is None:
                outcome.failed[record_id] = f"Record {record_id} is not displayed"
                continue

            result = await self.coordinator.instant_save(record_id, field_name, value, record.get_field(field_name))
            if result.success:
                outcome.succeeded.append(record_id)
                if result.change:
                    changes.append(result.change)
            elif result.is_conflict:
                outcome.conflicts[record_id] = result.conflict
            elif result.is_network_error and self._enqueue_quietly(record_id, {field_name: value}, record.version):
                outcome.queued.append(record_id)
            else:
                outcome.failed[record_id] = result.error

        if changes:
            outcome.undo_entry = ChangeRecord.create(
                ChangeKind.BULK, changes, f"Bulk {field_name} -> {getattr(value, 'value', value)} on {len(changes)} records"
            )
            self.undo.record_change(outcome.undo_entry)

        logger.log_operation("bulk_update", "completed" if outcome.success else "partial", {
            "field": field_name,
            "succeeded": len(outcome.succeeded),
            "conflicts": len(outcome.conflicts),
            "failed": len(outcome.failed),
            "queued": len(outcome.queued)
        })
        return outcome

    async def execute_undo(self) -> UndoResult:
        return await self.undo.execute_undo()

    # ------------------------------------------------------------------
    # Offline queue
    # ------------------------------------------------------------------

    def enqueue(self, record_id: int, payload: Mapping[str, Any], expected_version: int,
                reason=None) -> PendingOperation:
        if reason is None:
            reason = QueueReason.NETWORK_ERROR if self.network.is_online else QueueReason.OFFLINE
        return self.queue.enqueue(record_id, payload, expected_version, reason)

    async def process_queue(self) -> QueueRunResult:
        return await self.queue.process_queue()

    def _enqueue_quietly(self, record_id: int, payload: Mapping[str, Any],
                         expected_version: int) -> Optional[PendingOperation]:
        try:
            return self.enqueue(record_id, payload, expected_version)
        except QueueFullError as e:
            logger.warning(f"Could not queue save for record {record_id}: {e}")
            return None

    async def _queue_succeeded(self, op: PendingOperation, record: EditableRecord) -> None:
        draft = self.autosave.get_saved_state()
        if draft is not None and draft.record_id == op.record_id and self.editing_id != op.record_id:
            self.autosave.clear_saved_state()

        if self._on_queue_success:
            result = self._on_queue_success(op, record)
            if hasattr(result, "__await__"):
                await result

    # ------------------------------------------------------------------
    # Draft recovery
    # ------------------------------------------------------------------

    def pending_recovery(self) -> Optional[RecoveryNotice]:
        return self.autosave.check_for_recovery()

    def recover_draft(self) -> EditSession:
        """Reopen the stored draft. Only ever called on an explicit user action."""
        snapshot = self.autosave.get_saved_state()
        if snapshot is None:
            raise EditStateError("No draft to recover")
        return self.coordinator.restore_draft(snapshot)

    def discard_draft(self) -> None:
        self.autosave.clear_saved_state()
