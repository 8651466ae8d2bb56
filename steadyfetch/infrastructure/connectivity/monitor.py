"""Connectivity monitor.

Holds the current online/offline flag and notifies listeners on transitions.
Whatever detects connectivity (a health check, an OS hook, a test) calls
`set_online()`.
"""

import logging
from typing import Callable, List

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:
    """Online/offline flag with change notifications."""

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[ConnectivityListener] = []

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception as e:
                logger.error(f"Connectivity listener {listener!r} failed: {e}", exc_info=True)

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Registers a listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
