"""Registry of loopback servers waiting for their callback.

Starting a flow must return the authorize URL before the user has done
anything in the browser, while waiting for the code happens in a later,
separate call. The registry hands the live server from one to the other,
keyed by its port.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from forge_login.exceptions import OAuthError, ServerNotFoundError
from forge_login.logging_config import get_logger

if TYPE_CHECKING:
    from forge_login.oauth.loopback import LoopbackServer

logger = get_logger(__name__)


class PendingServerRegistry:
    """Maps bound ports to pending loopback servers.

    The lock is held only while an entry is added or removed, never while
    a server is being waited on, so one flow's wait never blocks another
    flow's start.
    """

    def __init__(self) -> None:
        self._servers: dict[int, LoopbackServer] = {}
        self._lock = threading.Lock()

    def register(self, server: LoopbackServer) -> int:
        """Store a server under its port.

        Args:
            server: Running loopback server

        Returns:
            The port the server is registered under

        Raises:
            OAuthError: If another server is already registered on that port
        """
        port = server.port
        with self._lock:
            if port in self._servers:
                msg = f"A pending server is already registered for port {port}"
                raise OAuthError(msg)
            self._servers[port] = server
        logger.debug("Registered pending OAuth server on port %d", port)
        return port

    def take(self, port: int) -> LoopbackServer:
        """Remove and return the server for a port.

        A port can be taken exactly once.

        Raises:
            ServerNotFoundError: If nothing is registered for the port
        """
        with self._lock:
            server = self._servers.pop(port, None)
        if server is None:
            raise ServerNotFoundError(port)
        logger.debug("Took pending OAuth server on port %d", port)
        return server

    def cancel(self, port: int) -> bool:
        """Shut down and forget the server for a port.

        Returns:
            True if a server was registered, False otherwise
        """
        with self._lock:
            server = self._servers.pop(port, None)
        if server is None:
            return False
        server.shutdown()
        logger.info("Cancelled pending OAuth flow on port %d", port)
        return True

    def shutdown_all(self) -> int:
        """Shut down every pending server.

        Returns:
            Number of servers shut down
        """
        with self._lock:
            servers = list(self._servers.values())
            self._servers.clear()
        for server in servers:
            server.shutdown()
        if servers:
            logger.debug("Shut down %d pending OAuth servers", len(servers))
        return len(servers)

    def ports(self) -> list[int]:
        with self._lock:
            return sorted(self._servers)

    def __contains__(self, port: object) -> bool:
        with self._lock:
            return port in self._servers

    def __len__(self) -> int:
        with self._lock:
            return len(self._servers)
