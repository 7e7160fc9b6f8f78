"""
Draft recovery: keeps the in-progress edit in a single persistent slot so a
crash or reload does not lose unsaved work.

Writes are coalesced with an explicit timer (``loop.call_later``) started by
each field change. Recovery is never automatic: callers are told a draft
exists and must ask for it.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from .config import AUTOSAVE_DEBOUNCE_SEC, DRAFT_STORAGE_KEY, DRAFT_TTL_SEC
from .ports import PersistentKV
from .schema import DraftSnapshot, fields_to_json

from util.logging import logger


@dataclass
class RecoveryNotice:
    """What the UI needs to offer a recovery prompt."""
    record_id: int
    timestamp: datetime
    stale: bool


class AutoSaveRecovery:
    """Debounced single-slot draft persistence."""

    def __init__(self, kv: PersistentKV, debounce_sec: float = None, ttl_sec: int = None,
                 key: str = DRAFT_STORAGE_KEY):
        self.kv = kv
        self.debounce_sec = AUTOSAVE_DEBOUNCE_SEC if debounce_sec is None else debounce_sec
        self.ttl_sec = DRAFT_TTL_SEC if ttl_sec is None else ttl_sec
        self.key = key
        self._pending: Optional[DraftSnapshot] = None
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def has_pending_write(self) -> bool:
        return self._pending is not None

    def note_change(self, record_id: int, fields: Mapping[str, Any], base_version: int) -> None:
        """Schedule a snapshot write; a newer change replaces the pending one."""
        self._pending = DraftSnapshot(
            record_id=record_id,
            fields=fields_to_json(fields),
            base_version=base_version,
            timestamp=datetime.now(),
        )
        self._cancel_timer()

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: nothing could fire the timer later
            self.flush()
            return

        if self.debounce_sec <= 0:
            self.flush()
            return

        self._handle = loop.call_later(self.debounce_sec, self.flush)

    def flush(self) -> Optional[DraftSnapshot]:
        """Write the pending snapshot now, if there is one."""
        self._cancel_timer()
        snapshot, self._pending = self._pending, None
        if snapshot is None:
            return None

        self.kv.set(self.key, json.dumps(snapshot.to_dict()))
        logger.log_draft("saved", snapshot.record_id)
        return snapshot

    def get_saved_state(self) -> Optional[DraftSnapshot]:
        """The stored draft, or None when absent or unreadable."""
        raw = self.kv.get(self.key)
        if raw is None:
            return None

        try:
            return DraftSnapshot.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable draft snapshot: {e}")
            return None

    def check_for_recovery(self) -> Optional[RecoveryNotice]:
        """Startup check. Reports a draft without reopening anything."""
        snapshot = self.get_saved_state()
        if snapshot is None:
            return None

        logger.log_draft("found", snapshot.record_id)
        return RecoveryNotice(
            record_id=snapshot.record_id,
            timestamp=snapshot.timestamp,
            stale=snapshot.is_stale(self.ttl_sec),
        )

    def clear_saved_state(self) -> None:
        """Drop the stored draft and any write still waiting on the timer."""
        self._cancel_timer()
        self._pending = None
        self.kv.remove(self.key)
        logger.log_draft("cleared")

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
