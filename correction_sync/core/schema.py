"""
Data model for the edit-and-sync core: closed classification enums, the
editable record, edit sessions, undo entries, conflict descriptors, queued
operations and draft snapshots.

Everything that is persisted to the key/value store round-trips through
``to_dict`` / ``from_dict`` as plain JSON-safe values.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import QueueCorruptionError, ValidationError


class Category(str, Enum):
    KIDS = "KIDS"
    ROBYN = "ROBYN"
    WORK = "WORK"
    FINANCIAL = "FINANCIAL"
    SHOPPING = "SHOPPING"
    CHURCH = "CHURCH"
    OTHER = "OTHER"


class UrgencyLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ActionType(str, Enum):
    FYI = "FYI"
    RESPOND = "RESPOND"
    TASK = "TASK"
    PAYMENT = "PAYMENT"
    CALENDAR = "CALENDAR"
    NONE = "NONE"


class SaveStatus(str, Enum):
    IDLE = "idle"
    EDITING = "editing"
    SAVING = "saving"
    CONFLICT = "conflict"
    ERROR = "error"


class QueueReason(str, Enum):
    OFFLINE = "offline"
    NETWORK_ERROR = "network-error"


class ChangeKind(str, Enum):
    SINGLE = "single"
    BULK = "bulk"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    NETWORK = "network"
    SERVER = "server"
    NOT_FOUND = "not_found"
    IN_FLIGHT = "in_flight"
    NO_SESSION = "no_session"


# Editable field name -> closed value type
FIELD_TYPES = {
    "category": Category,
    "urgency": UrgencyLevel,
    "action": ActionType,
}
EDITABLE_FIELDS = tuple(FIELD_TYPES)


def coerce_field_value(field_name: str, value: Any) -> Enum:
    """Convert a raw value into the field's enum member or raise ValidationError."""
    enum_type = FIELD_TYPES.get(field_name)
    if enum_type is None:
        raise ValidationError(field_name, value, f"Unknown field: {field_name}")

    if isinstance(value, enum_type):
        return value

    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValidationError(
            field_name, value,
            f"Invalid {field_name}: {value}. Must be one of: {allowed}"
        )


def coerce_fields(fields: Mapping[str, Any]) -> Dict[str, Enum]:
    """Validate a partial field mapping; every key must be an editable field."""
    return {name: coerce_field_value(name, value) for name, value in fields.items()}


def fields_to_json(fields: Mapping[str, Any]) -> Dict[str, str]:
    """Plain string form of a field mapping."""
    return {name: getattr(value, "value", value) for name, value in fields.items()}


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _parse_timestamp(value: Any) -> datetime:
    """Required timestamp as naive local time; aware values are converted."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    elif not isinstance(value, datetime):
        raise ValueError(f"timestamp must be an ISO string, got {value!r}")
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return value


@dataclass
class EditableRecord:
    """A classification as seen by the editor. ``version`` is server-owned."""
    id: int
    category: Category
    urgency: UrgencyLevel
    action: ActionType
    version: int
    corrected_by: Optional[str] = None
    corrected_at: Optional[datetime] = None

    def __post_init__(self):
        self.category = coerce_field_value("category", self.category)
        self.urgency = coerce_field_value("urgency", self.urgency)
        self.action = coerce_field_value("action", self.action)

    def fields(self) -> Dict[str, Enum]:
        """The editable field values."""
        return {name: getattr(self, name) for name in EDITABLE_FIELDS}

    def get_field(self, field_name: str) -> Enum:
        if field_name not in FIELD_TYPES:
            raise ValidationError(field_name, None, f"Unknown field: {field_name}")
        return getattr(self, field_name)

    def with_fields(self, fields: Mapping[str, Any], version: int = None) -> 'EditableRecord':
        """Copy of this record with some fields (and optionally the version) replaced."""
        merged = self.fields()
        merged.update(coerce_fields(fields))
        return EditableRecord(
            id=self.id,
            version=self.version if version is None else version,
            corrected_by=self.corrected_by,
            corrected_at=self.corrected_at,
            **merged
        )

    def to_dict(self) -> Dict:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "category": self.category.value,
            "urgency": self.urgency.value,
            "action": self.action.value,
            "version": self.version,
            "corrected_by": self.corrected_by,
            "corrected_at": self.corrected_at.isoformat() if self.corrected_at else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> 'EditableRecord':
        """Create from dictionary (for loading from storage or the wire)."""
        return cls(
            id=int(data["id"]),
            category=data["category"],
            urgency=data["urgency"],
            action=data["action"],
            version=int(data["version"]),
            corrected_by=data.get("corrected_by"),
            corrected_at=_parse_datetime(data.get("corrected_at")),
        )


@dataclass(frozen=True)
class FieldChange:
    """One field's transition on one record; the unit an undo replays."""
    record_id: int
    field: str
    previous_value: str
    new_value: str

    def inverse(self) -> 'FieldChange':
        return FieldChange(self.record_id, self.field, self.new_value, self.previous_value)

    def to_dict(self) -> Dict:
        return {
            "record_id": self.record_id,
            "field": self.field,
            "previous_value": self.previous_value,
            "new_value": self.new_value,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> 'FieldChange':
        return cls(
            record_id=int(data["record_id"]),
            field=data["field"],
            previous_value=data["previous_value"],
            new_value=data["new_value"],
        )


@dataclass(frozen=True)
class ChangeRecord:
    """An undoable action. Immutable once pushed to the undo stack."""
    id: str
    timestamp: datetime
    kind: ChangeKind
    changes: Tuple[FieldChange, ...]
    description: str

    @classmethod
    def create(cls, kind: ChangeKind, changes, description: str) -> 'ChangeRecord':
        """Build a new entry with a fresh id and timestamp."""
        return cls(
            id=f"undo-{uuid.uuid4()}",
            timestamp=datetime.now(),
            kind=ChangeKind(kind),
            changes=tuple(changes),
            description=description,
        )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind.value,
            "changes": [change.to_dict() for change in self.changes],
            "description": self.description,
        }


@dataclass
class ConflictDescriptor:
    """Baseline, server and client state captured when a version check fails."""
    record_id: int
    baseline: EditableRecord
    server: EditableRecord
    mine: Dict[str, Enum]

    @property
    def expected_version(self) -> int:
        return self.baseline.version

    @property
    def server_version(self) -> int:
        return self.server.version

    def to_dict(self) -> Dict:
        return {
            "record_id": self.record_id,
            "baseline": self.baseline.to_dict(),
            "server": self.server.to_dict(),
            "mine": fields_to_json(self.mine),
        }


@dataclass
class PendingOperation:
    """A save that could not complete and waits in the offline queue."""
    id: str
    record_id: int
    payload: Dict[str, str]
    expected_version: int
    reason: QueueReason
    created_at: datetime
    attempts: int = 0
    last_error: Optional[str] = None

    @classmethod
    def create(cls, record_id: int, payload: Mapping[str, Any], expected_version: int,
               reason: QueueReason) -> 'PendingOperation':
        return cls(
            id=f"{record_id}-{uuid.uuid4().hex[:12]}",
            record_id=record_id,
            payload=fields_to_json(coerce_fields(payload)),
            expected_version=expected_version,
            reason=QueueReason(reason),
            created_at=datetime.now(),
        )

    def to_dict(self) -> Dict:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "record_id": self.record_id,
            "payload": dict(self.payload),
            "expected_version": self.expected_version,
            "reason": self.reason.value,
            "created_at": self.created_at.isoformat(),
            "attempts": self.attempts,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> 'PendingOperation':
        """Create from a persisted dictionary; raises QueueCorruptionError on bad data."""
        try:
            payload = data["payload"]
            if not isinstance(payload, Mapping) or not payload:
                raise ValueError("payload must be a non-empty mapping")
            return cls(
                id=str(data["id"]),
                record_id=int(data["record_id"]),
                payload=fields_to_json(coerce_fields(payload)),
                expected_version=int(data["expected_version"]),
                reason=QueueReason(data["reason"]),
                created_at=_parse_timestamp(data["created_at"]),
                attempts=int(data.get("attempts", 0)),
                last_error=data.get("last_error"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise QueueCorruptionError(f"Unreadable pending operation: {e}") from e


@dataclass
class DraftSnapshot:
    """Most recent unsaved working copy, kept for crash/reload recovery."""
    record_id: int
    fields: Dict[str, str]
    base_version: int
    timestamp: datetime

    def is_stale(self, ttl_sec: int, now: datetime = None) -> bool:
        return (now or datetime.now()) - self.timestamp > timedelta(seconds=ttl_sec)

    def to_dict(self) -> Dict:
        return {
            "record_id": self.record_id,
            "fields": dict(self.fields),
            "base_version": self.base_version,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> 'DraftSnapshot':
        """Raises ValueError, KeyError or TypeError on an unreadable snapshot."""
        if not isinstance(data, Mapping) or not isinstance(data.get("fields"), Mapping):
            raise ValueError("draft fields must be a mapping")
        return cls(
            record_id=int(data["record_id"]),
            fields=fields_to_json(coerce_fields(data["fields"])),
            base_version=int(data["base_version"]),
            timestamp=_parse_timestamp(data["timestamp"]),
        )


@dataclass
class EditSession:
    """The single active edit on one record."""
    record_id: int
    baseline: EditableRecord
    current: Dict[str, Enum]
    status: SaveStatus = SaveStatus.EDITING
    invalidated: bool = False

    @classmethod
    def start(cls, record: EditableRecord) -> 'EditSession':
        return cls(record_id=record.id, baseline=record, current=record.fields())

    def changed_fields(self) -> Dict[str, Enum]:
        """Fields whose working value differs from the baseline."""
        base = self.baseline.fields()
        return {name: value for name, value in self.current.items() if base[name] != value}

    @property
    def dirty(self) -> bool:
        return bool(self.changed_fields())


@dataclass
class SaveResult:
    """Outcome of any save path. ``error`` carries the failure message verbatim."""
    success: bool
    record: Optional[EditableRecord] = None
    conflict: Optional[ConflictDescriptor] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    change: Optional[FieldChange] = None
    skipped: bool = False
    queued: Optional[PendingOperation] = None

    @property
    def is_conflict(self) -> bool:
        return self.conflict is not None

    @property
    def is_network_error(self) -> bool:
        return self.error_kind == ErrorKind.NETWORK
