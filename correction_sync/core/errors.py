"""
Error taxonomy for the edit-and-sync core.

The transport raises these tagged errors itself; nothing downstream inspects
error message text to decide whether a failure is transient.
"""

from typing import Any, Optional


class CorrectionSyncError(Exception):
    """Base class for every error raised by the edit-and-sync core."""


class ValidationError(CorrectionSyncError, ValueError):
    """A field value outside its enum, or a field that is not editable.

    Raised locally, before anything touches the network.
    """

    def __init__(self, field: str, value: Any, message: str = None):
        self.field = field
        self.value = value
        super().__init__(message or f"Invalid value for {field}: {value!r}")


class VersionConflictError(CorrectionSyncError):
    """The record's server version no longer matches the expected version."""

    def __init__(self, current_record, expected_version: Optional[int] = None):
        self.current_record = current_record
        self.expected_version = expected_version
        server_version = getattr(current_record, "version", None)
        super().__init__(
            f"Version conflict on record {getattr(current_record, 'id', '?')}: "
            f"expected {expected_version}, server has {server_version}"
        )


class NetworkError(CorrectionSyncError):
    """Transient transport failure. Eligible for the offline queue."""


class UnknownServerError(CorrectionSyncError):
    """Any other server-side failure. Surfaced as-is, never auto-retried."""


class RecordNotFoundError(UnknownServerError):
    """The server does not know the record id."""

    def __init__(self, record_id: int):
        self.record_id = record_id
        super().__init__(f"Classification {record_id} not found")


class QueueCorruptionError(CorrectionSyncError):
    """A persisted pending operation could not be deserialized."""


class QueueFullError(CorrectionSyncError):
    """The offline queue already holds its maximum number of operations."""


class EditStateError(CorrectionSyncError):
    """The requested edit command is not valid in the session's current state."""
