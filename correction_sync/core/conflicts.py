"""
Conflict resolution - field-level diff of a ConflictDescriptor and the three
explicit resolution intents.

The system never merges on its own: ``merge`` only hands the record back to
the user for manual re-editing.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .schema import EDITABLE_FIELDS, ConflictDescriptor, EditableRecord, SaveResult

from util.logging import logger


class ResolutionIntent(str, Enum):
    KEEP_MINE = "keep-mine"
    USE_SERVER = "use-server"
    MERGE = "merge"


@dataclass
class ConflictRow:
    """One field where the attempted value and the server value disagree."""
    field: str
    baseline_value: str
    mine_value: str
    server_value: str

    @property
    def changed_on_server(self) -> bool:
        return self.baseline_value != self.server_value

    @property
    def changed_by_me(self) -> bool:
        return self.baseline_value != self.mine_value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "baseline_value": self.baseline_value,
            "mine_value": self.mine_value,
            "server_value": self.server_value,
        }


def build_conflict_rows(conflict: ConflictDescriptor) -> List[ConflictRow]:
    """Rows for every tracked field whose attempted value differs from the server's.

    Fields absent from ``mine`` (a partial save) count as the baseline value.
    """
    rows = []
    for name in EDITABLE_FIELDS:
        baseline_value = conflict.baseline.get_field(name)
        mine_value = conflict.mine.get(name, baseline_value)
        server_value = conflict.server.get_field(name)

        if mine_value != server_value:
            rows.append(ConflictRow(
                field=name,
                baseline_value=baseline_value.value,
                mine_value=mine_value.value,
                server_value=server_value.value,
            ))
    return rows


@dataclass
class ResolutionOutcome:
    intent: ResolutionIntent
    success: bool
    record: Optional[EditableRecord] = None
    save_result: Optional[SaveResult] = None
    manual_review: bool = False
    error: Optional[str] = None


class ConflictResolver:
    """Presents the coordinator's current conflict and dispatches a chosen resolution."""

    def __init__(self, coordinator):
        self.coordinator = coordinator

    @property
    def conflict(self) -> Optional[ConflictDescriptor]:
        return self.coordinator.conflict_data

    @property
    def rows(self) -> List[ConflictRow]:
        conflict = self.conflict
        return build_conflict_rows(conflict) if conflict else []

    async def resolve(self, intent) -> ResolutionOutcome:
        intent = ResolutionIntent(intent)
        conflict = self.conflict
        if conflict is None:
            return ResolutionOutcome(intent=intent, success=False, error="No conflict to resolve")

        logger.log_operation("conflict.resolve", intent.value, {
            "record_id": conflict.record_id,
            "expected_version": conflict.expected_version,
            "server_version": conflict.server_version,
            "differing_fields": [row.field for row in build_conflict_rows(conflict)]
        })

        if intent == ResolutionIntent.KEEP_MINE:
            result = await self.coordinator.force_overwrite()
            return ResolutionOutcome(intent=intent, success=result.success, record=result.record,
                                     save_result=result, error=result.error)

        if intent == ResolutionIntent.USE_SERVER:
            record = self.coordinator.accept_server_version()
            return ResolutionOutcome(intent=intent, success=record is not None, record=record)

        self.coordinator.begin_manual_merge()
        return ResolutionOutcome(intent=intent, success=True, record=conflict.server, manual_review=True)
