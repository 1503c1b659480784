"""
Connectivity tracking.

Holds the current online/offline state and notifies listeners on actual
transitions. The host feeds it from platform events via ``set_online`` or
lets it probe the network with ``check``.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Callable

logger = logging.getLogger(__name__)

TransitionListener = Callable[[bool], None]


class ConnectivityMonitor:
    """Online/offline state with transition events."""

    def __init__(
        self,
        initial: bool = True,
        probe_host: str = "dns.google",
        probe_timeout: float = 5.0,
    ):
        self._is_online = initial
        self.probe_host = probe_host
        self.probe_timeout = probe_timeout
        self._listeners: list[TransitionListener] = []

    @property
    def is_online(self) -> bool:
        return self._is_online

    def on_transition(self, listener: TransitionListener) -> Callable[[], None]:
        """Register a listener called with the new state on every change.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def set_online(self, online: bool) -> bool:
        """Update state. Returns True if this was a transition."""
        if online == self._is_online:
            return False

        self._is_online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")

        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                logger.exception("Connectivity listener failed")
        return True

    async def check(self) -> bool:
        """Probe connectivity with a DNS lookup and update state.

        Returns:
            True if online, False otherwise
        """
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.getaddrinfo(self.probe_host, None, type=socket.SOCK_STREAM),
                timeout=self.probe_timeout,
            )
            online = True
        except (OSError, TimeoutError):
            online = False

        self.set_online(online)
        return online
