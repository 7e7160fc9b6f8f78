"""
Interfaces of the collaborators the edit-and-sync core talks to.
"""

from typing import Any, Callable, Mapping, Optional, Protocol

from .schema import EditableRecord


class PersistentKV(Protocol):
    """Synchronous string key/value storage that survives restarts."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


class NetworkSignal(Protocol):
    """Online/offline state with change notification."""

    @property
    def is_online(self) -> bool:
        ...

    def on_change(self, callback: Callable[[bool], Any]) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        ...


class RecordStore(Protocol):
    """Authoritative source of records and their versions.

    ``update`` raises VersionConflictError, NetworkError, RecordNotFoundError
    or UnknownServerError; it never signals failure through its return value.
    """

    async def update(self, record_id: int, fields: Mapping[str, Any],
                     expected_version: int) -> EditableRecord:
        ...

    async def get(self, record_id: int) -> EditableRecord:
        ...
