"""
Undo manager - bounded stack of reversible changes replayed through the
SaveCoordinator's instant save path.

Oldest entries are evicted once the cap is reached; the newest entry is
always undone first. An undo that fails part way is reported, not retried,
and its entry is not pushed back.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import List, Optional

from .config import get_undo_stack_size
from .schema import ChangeKind, ChangeRecord, ConflictDescriptor, FieldChange

from util.logging import logger


@dataclass
class UndoResult:
    """Outcome of one executeUndo call."""
    success: bool
    entry_id: Optional[str] = None
    error: Optional[str] = None
    conflict: Optional[ConflictDescriptor] = None
    restored: List[FieldChange] = field(default_factory=list)
    failed_change: Optional[FieldChange] = None

    @property
    def partial(self) -> bool:
        """Some inverses were applied before a later one failed."""
        return not self.success and bool(self.restored)


class UndoManager:
    def __init__(self, coordinator, max_entries: int = None):
        self.coordinator = coordinator
        self.max_entries = max_entries or get_undo_stack_size()
        self._stack = deque(maxlen=self.max_entries)
        self._undoing = False

    @property
    def can_undo(self) -> bool:
        return len(self._stack) > 0

    @property
    def size(self) -> int:
        return len(self._stack)

    @property
    def is_undoing(self) -> bool:
        return self._undoing

    @property
    def undo_description(self) -> Optional[str]:
        top = self.peek()
        return f"Undo: {top.description}" if top else None

    def peek(self) -> Optional[ChangeRecord]:
        return self._stack[-1] if self._stack else None

    def entries(self) -> List[ChangeRecord]:
        """Entries oldest first."""
        return list(self._stack)

    def record_change(self, entry: ChangeRecord) -> None:
        if not entry.changes:
            return

        evicted = self._stack[0] if len(self._stack) == self.max_entries else None
        self._stack.append(entry)

        logger.log_undo(entry.id, "recorded", {
            "kind": entry.kind.value,
            "changes": len(entry.changes),
            "stack_size": len(self._stack)
        })
        if evicted is not None:
            logger.log_undo(evicted.id, "evicted")

    def clear(self) -> None:
        self._stack.clear()
        logger.log_undo("*", "cleared")

    async def execute_undo(self) -> UndoResult:
        """Pop the newest entry and apply its inverses, last change first."""
        if self._undoing:
            return UndoResult(success=False, error="Undo already in progress")

        if not self._stack:
            return UndoResult(success=False, error="Nothing to undo")

        self._undoing = True
        entry = self._stack.pop()
        restored = []
        try:
            changes = reversed(entry.changes) if entry.kind == ChangeKind.BULK else entry.changes
            for change in changes:
                inverse = change.inverse()
                result = await self.coordinator.instant_save(
                    inverse.record_id, inverse.field, inverse.new_value, inverse.previous_value
                )
                if not result.success:
                    status = "partial" if restored else "failed"
                    logger.log_undo(entry.id, status, {
                        "record_id": change.record_id,
                        "field": change.field,
                        "restored": len(restored),
                        "remaining": len(entry.changes) - len(restored),
                        "error": result.error
                    })
                    return UndoResult(
                        success=False,
                        entry_id=entry.id,
                        error=result.error,
                        conflict=result.conflict,
                        restored=restored,
                        failed_change=change,
                    )
                restored.append(change)
        finally:
            self._undoing = False

        logger.log_undo(entry.id, "success", {"restored": len(restored)})
        return UndoResult(success=True, entry_id=entry.id, restored=restored)
