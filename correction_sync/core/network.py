"""
Connectivity monitor - the NetworkSignal implementation.

State changes come either from the host (``set_online``) or from an optional
probe coroutine polled through ``refresh``. Callbacks fire on transitions only.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional

from util.logging import logger


class ConnectivityMonitor:
    """Tracks online/offline state and notifies listeners on transitions."""

    def __init__(self, online: bool = True, probe: Optional[Callable[[], Awaitable[bool]]] = None):
        self._online = online
        self._probe = probe
        self._callbacks: List[Callable[[bool], Any]] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def on_change(self, callback: Callable[[bool], Any]) -> Callable[[], None]:
        """Register a transition callback; returns an unsubscribe function."""
        self._callbacks.append(callback)

        def unsubscribe():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        """Record the current state; listeners run only when it flips."""
        if online == self._online:
            return

        self._online = online
        logger.log_operation("network.state", "online" if online else "offline")

        for callback in list(self._callbacks):
            try:
                result = callback(online)
                if asyncio.iscoroutine(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                # One broken listener must not stop the others
                logger.error(f"Connectivity callback failed: {e}")

    async def refresh(self) -> bool:
        """Run the probe (if any) and update state from its answer."""
        if self._probe is None:
            return self._online

        try:
            online = bool(await self._probe())
        except Exception as e:
            logger.warning(f"Connectivity probe failed: {e}")
            online = False

        self.set_online(online)
        return online
