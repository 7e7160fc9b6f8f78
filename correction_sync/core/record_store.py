"""
SQLite-backed authoritative record store with optimistic version checks.
"""

import asyncio
from datetime import datetime
from typing import Any, List, Mapping, Optional

from .config import CORRECTED_BY
from .db import get_db, init_db
from .errors import RecordNotFoundError, ValidationError, VersionConflictError
from .schema import EditableRecord, coerce_fields

from util.logging import logger

_COLUMNS = "id, category, urgency, action, version, corrected_by, corrected_at"


def _row_to_record(row) -> EditableRecord:
    return EditableRecord.from_dict(dict(row))


class SqliteRecordStore:
    """RecordStore over the ``classifications`` table.

    Every accepted update bumps ``version`` by exactly one inside the same
    ``UPDATE`` that checks the expected version, so a stale writer can never
    slip in between the check and the write.
    """

    def __init__(self, db_path: str = None, corrected_by: str = None):
        self.db_path = db_path
        self.corrected_by = corrected_by or CORRECTED_BY
        init_db(db_path)

    # Sync API (used by the HTTP layer and for seeding)

    def insert_record(self, record: EditableRecord) -> EditableRecord:
        """Insert a new classification row as-is."""
        with get_db(self.db_path) as conn:
            conn.execute(
                f"INSERT INTO classifications ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.category.value,
                    record.urgency.value,
                    record.action.value,
                    record.version,
                    record.corrected_by,
                    record.corrected_at.isoformat() if record.corrected_at else None,
                )
            )
            conn.commit()
        return record

    def fetch(self, record_id: int) -> Optional[EditableRecord]:
        """Get a record by id, or None."""
        with get_db(self.db_path) as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM classifications WHERE id = ?", (record_id,)
            ).fetchone()
            return _row_to_record(row) if row else None

    def list_records(self) -> List[EditableRecord]:
        """All records ordered by id."""
        with get_db(self.db_path) as conn:
            rows = conn.execute(f"SELECT {_COLUMNS} FROM classifications ORDER BY id").fetchall()
            return [_row_to_record(row) for row in rows]

    def apply_update(self, record_id: int, fields: Mapping[str, Any], expected_version: int,
                     corrected_by: str = None) -> EditableRecord:
        """Version-checked update. Raises VersionConflictError or RecordNotFoundError."""
        validated = coerce_fields(fields)
        if not validated:
            raise ValidationError("fields", {}, "No fields to update")

        assignments = ", ".join(f"{name} = ?" for name in validated)
        params = [value.value for value in validated.values()]
        params += [corrected_by or self.corrected_by, datetime.now().isoformat(), record_id, expected_version]

        with get_db(self.db_path) as conn:
            cursor = conn.execute(
                f"UPDATE classifications SET {assignments}, version = version + 1, "
                f"corrected_by = ?, corrected_at = ? WHERE id = ? AND version = ?",
                params
            )
            if cursor.rowcount == 0:
                row = conn.execute(
                    f"SELECT {_COLUMNS} FROM classifications WHERE id = ?", (record_id,)
                ).fetchone()
                if row is None:
                    raise RecordNotFoundError(record_id)
                current = _row_to_record(row)
                logger.log_conflict(record_id, expected_version, current.version)
                raise VersionConflictError(current, expected_version)

            conn.commit()
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM classifications WHERE id = ?", (record_id,)
            ).fetchone()

        updated = _row_to_record(row)
        logger.log_save(record_id, "applied", {"version": updated.version, "fields": list(validated)})
        return updated

    # Async RecordStore API; the blocking sqlite3 calls run in a worker thread

    async def update(self, record_id: int, fields: Mapping[str, Any],
                     expected_version: int) -> EditableRecord:
        return await asyncio.to_thread(self.apply_update, record_id, fields, expected_version)

    async def get(self, record_id: int) -> EditableRecord:
        record = await asyncio.to_thread(self.fetch, record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record
