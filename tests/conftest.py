"""
Shared fixtures: an in-memory record store with fault injection, key/value
stores and a connectivity monitor.
"""

import asyncio
from typing import Dict, List

import pytest

from correction_sync.core.errors import RecordNotFoundError, VersionConflictError
from correction_sync.core.kv_store import MemoryKVStore
from correction_sync.core.network import ConnectivityMonitor
from correction_sync.core.save_coordinator import SaveCoordinator
from correction_sync.core.schema import EditableRecord, coerce_fields


class FakeRecordStore:
    """RecordStore double that behaves like the server, plus knobs for failures.

    - ``fail_with(exc, times=1)`` raises ``exc`` from the next update calls
    - ``bump(record_id, **fields)`` simulates a save made by someone else
    - ``hold()`` makes updates wait until ``release()`` so a save stays in flight
    """

    def __init__(self, records: List[EditableRecord] = None):
        self.records: Dict[int, EditableRecord] = {r.id: r for r in records or []}
        self.update_calls = []
        self.get_calls = []
        self._failures = []
        self._gate = None

    def fail_with(self, exc: Exception, times: int = 1):
        self._failures.extend([exc] * times)

    def bump(self, record_id: int, **fields) -> EditableRecord:
        current = self.records[record_id]
        self.records[record_id] = current.with_fields(fields, version=current.version + 1)
        return self.records[record_id]

    def hold(self):
        self._gate = asyncio.Event()

    def release(self):
        if self._gate:
            self._gate.set()

    async def update(self, record_id, fields, expected_version):
        self.update_calls.append((record_id, dict(fields), expected_version))
        if self._gate:
            await self._gate.wait()
        if self._failures:
            raise self._failures.pop(0)

        current = self.records.get(record_id)
        if current is None:
            raise RecordNotFoundError(record_id)
        if current.version != expected_version:
            raise VersionConflictError(current, expected_version)

        updated = current.with_fields(coerce_fields(fields), version=current.version + 1)
        updated.corrected_by = "inline-edit"
        self.records[record_id] = updated
        return updated

    async def get(self, record_id):
        self.get_calls.append(record_id)
        current = self.records.get(record_id)
        if current is None:
            raise RecordNotFoundError(record_id)
        return current


def make_record(record_id=42, category="WORK", urgency="LOW", action="FYI", version=3):
    return EditableRecord(id=record_id, category=category, urgency=urgency, action=action, version=version)


@pytest.fixture
def record():
    return make_record()


@pytest.fixture
def store(record):
    return FakeRecordStore([record, make_record(7, "KIDS", "MEDIUM", "TASK", 1)])


@pytest.fixture
def kv():
    return MemoryKVStore()


@pytest.fixture
def network():
    return ConnectivityMonitor(online=True)


@pytest.fixture
def coordinator(store):
    coordinator = SaveCoordinator(store)
    coordinator.load_records(store.records.values())
    return coordinator


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "corrections.db")
