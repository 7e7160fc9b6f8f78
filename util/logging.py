"""
Structured logging for the edit-and-sync core.
Every save, conflict, queue, undo and draft event goes through one logger so
the audit trail reads the same regardless of which component produced it.
"""

import logging
import os
from typing import Any, Dict, List


class StructuredLogger:
    """Structured logger for save/conflict/queue/undo/draft operations."""

    def __init__(self, name: str = "correction_sync"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {sanitize_payload(details)}"

        self.logger.log(level, message)

    def log_save(self, record_id: int, status: str, details: Dict[str, Any] = None):
        """Log a save attempt or outcome for a record."""
        log_details = {"record_id": record_id}
        if details:
            log_details.update(details)

        level = logging.WARNING if status in ("error", "failed") else logging.INFO
        self.log_operation("save", status, log_details, level)

    def log_conflict(self, record_id: int, expected_version: int, server_version: int):
        """Log a detected version conflict."""
        log_details = {
            "record_id": record_id,
            "expected_version": expected_version,
            "server_version": server_version
        }
        self.log_operation("save.conflict", "detected", log_details, logging.WARNING)

    def log_queue_event(self, event: str, operation_id: str, record_id: int = None, details: Dict[str, Any] = None):
        """Log an offline queue event (enqueue, merge, replay, drop)."""
        log_details = {"operation_id": operation_id}
        if record_id is not None:
            log_details["record_id"] = record_id
        if details:
            log_details.update(details)

        level = logging.WARNING if event in ("dropped", "corrupt", "retry_scheduled", "failed", "abandoned") else logging.INFO
        self.log_operation(f"queue.{event}", "recorded", log_details, level)

    def log_undo(self, entry_id: str, status: str, details: Dict[str, Any] = None):
        """Log an undo stack event."""
        log_details = {"entry_id": entry_id}
        if details:
            log_details.update(details)

        level = logging.WARNING if status in ("failed", "partial") else logging.INFO
        self.log_operation("undo", status, log_details, level)

    def log_draft(self, event: str, record_id: int = None):
        """Log a draft snapshot event."""
        self.log_operation(f"draft.{event}", "success", {"record_id": record_id})

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


def sanitize_payload(payload: Any, max_length: int = 100) -> Any:
    """Truncate long strings in nested payloads before they reach the log."""
    if isinstance(payload, dict):
        return {k: sanitize_payload(v, max_length) for k, v in payload.items()}
    elif isinstance(payload, str):
        return payload[:max_length] + "..." if len(payload) > max_length else payload
    elif isinstance(payload, (list, tuple)):
        return [sanitize_payload(item, max_length) for item in payload]
    else:
        return payload


# Global logger instance
logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None, sensitive_fields: List[str] = None):
    """General audit event logging; named fields are redacted."""
    if sensitive_fields is None:
        sensitive_fields = ['secret', 'password', 'token']

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = {
            k: ("[REDACTED]" if k in sensitive_fields else v)
            for k, v in payload.items()
        }

    logger.log_operation(event_type.replace(".", "_"), "audit", log_details)
