"""
Connection Pool Module

Keeps a small stack of idle connections per node so consecutive requests to
the same node can skip the TCP handshake. A connection is handed to exactly
one caller at a time. One that failed mid-exchange is closed, never pooled.
A node may close idle connections on its side at any time, so callers treat
a pooled connection that drops before replying as stale, not as a dead node.
"""

import logging
import threading
from collections import deque
from typing import Callable, Deque, Dict, Optional

from ..cluster.registry import Node
from ..config.settings import settings
from ..errors import CacheConnectionError
from .connection import Connection, SocketConnection

logger = logging.getLogger(__name__)

Connector = Callable[[Node], Optional[Connection]]


class ConnectionPool:
    """
    Thread-safe per-node pool of idle connections.

    Attributes:
        max_idle: Idle connections kept per node; 0 disables reuse
    """

    def __init__(self, connector: Connector = None, max_idle: int = None):
        """
        Initialize the pool.

        Args:
            connector: Opens a connection for a node (default SocketConnection.open).
                It may raise CacheConnectionError or OSError, or return None
                when the node is down.
            max_idle: Idle connections kept per node (default settings.POOL_SIZE)
        """
        self._connector = connector if connector is not None else SocketConnection.open
        self.max_idle = max_idle if max_idle is not None else settings.POOL_SIZE
        self._idle: Dict[str, Deque[Connection]] = {}
        self._lock = threading.Lock()

    def acquire(self, node: Node) -> Connection:
        """
        Get an exclusive connection to a node, idle or new.

        Raises:
            CacheConnectionError: No idle connection and the node is unreachable
        """
        connection = self.take_idle(node)
        if connection is not None:
            return connection
        return self.connect(node)

    def take_idle(self, node: Node) -> Optional[Connection]:
        """Pop the most recently released connection to a node, if any."""
        with self._lock:
            idle = self._idle.get(node.label)
            if idle:
                return idle.pop()
        return None

    def connect(self, node: Node) -> Connection:
        """
        Open a new connection to a node, bypassing the idle stack.

        Raises:
            CacheConnectionError: The node is unreachable
        """
        try:
            connection = self._connector(node)
        except CacheConnectionError:
            raise
        except OSError as e:
            raise CacheConnectionError(f"cannot connect to node {node.label!r}: {e}", node) from e

        if connection is None:
            raise CacheConnectionError(f"node {node.label!r} at {node.endpoint} is unreachable", node)
        return connection

    def release(self, node: Node, connection: Connection) -> None:
        """Return a healthy connection after a completed exchange."""
        with self._lock:
            idle = self._idle.setdefault(node.label, deque())
            if len(idle) < self.max_idle:
                idle.append(connection)
                return
        connection.close()

    def discard(self, connection: Connection) -> None:
        """Close a connection that must not be reused."""
        try:
            connection.close()
        except OSError as e:
            logger.debug(f"Ignoring error while closing a broken connection: {e}")

    def clear(self, label: str) -> int:
        """Close every idle connection to one node; returns how many were closed."""
        with self._lock:
            idle = self._idle.pop(label, ())
        for connection in idle:
            self.discard(connection)
        return len(idle)

    def idle_count(self, label: str) -> int:
        """Number of idle connections held for a node."""
        with self._lock:
            return len(self._idle.get(label, ()))

    def close(self) -> None:
        """Close every idle connection."""
        with self._lock:
            idle, self._idle = self._idle, {}
        for connections in idle.values():
            for connection in connections:
                self.discard(connection)
