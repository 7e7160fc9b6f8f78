"""
Persistent key/value stores used for the draft slot and the offline queue.
"""

from typing import Dict, Optional

from .db import get_db, init_db


class SqliteKVStore:
    """PersistentKV backed by the ``kv_store`` table."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path
        init_db(db_path)

    def get(self, key: str) -> Optional[str]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        with get_db(self.db_path) as conn:
            conn.execute(
                "INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP",
                (key, value)
            )
            conn.commit()

    def remove(self, key: str) -> None:
        with get_db(self.db_path) as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()


class MemoryKVStore:
    """PersistentKV held in a dict; survives nothing, used for tests and previews."""

    def __init__(self, initial: Dict[str, str] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError("PersistentKV values must be strings")
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)
