"""
Blocking TCP Connection Module

Connection is the transport seam between the client and a cache node: one
exclusive handle that can send a framed request and receive one framed
response. SocketConnection is the default implementation over a plain TCP
socket. Tests and callers with their own transport can provide anything
with the same three methods.
"""

import logging
import socket
from typing import Optional

from ..cluster.registry import Node
from ..config.settings import settings
from ..errors import CacheConnectionError, StaleConnectionError
from ..protocol.codec import MessageCodec

logger = logging.getLogger(__name__)


class Connection:
    """
    Interface for a connection bound to one node.

    Implementations are used by one caller at a time and are never shared
    between in-flight requests.
    """

    def send(self, data: bytes) -> None:
        """Send one complete frame."""
        raise NotImplementedError

    def receive(self) -> bytes:
        """Block until one complete frame has arrived and return it."""
        raise NotImplementedError

    def close(self) -> None:
        """Release the underlying transport."""
        raise NotImplementedError


class SocketConnection(Connection):
    """
    TCP connection to a cache node.

    Usage:
        conn = SocketConnection.open(node)
        try:
            conn.send(frame)
            reply = conn.receive()
        finally:
            conn.close()

    Attributes:
        node: The node this connection talks to
    """

    def __init__(self, node: Node, sock: socket.socket, codec: MessageCodec = None):
        self.node = node
        self.codec = codec if codec is not None else MessageCodec()
        self._sock: Optional[socket.socket] = sock

    @classmethod
    def open(
            cls,
            node: Node,
            timeout: float = None,
            io_timeout: float = None,
            codec: MessageCodec = None,
    ) -> "SocketConnection":
        """
        Connect to a node.

        Args:
            node: Target node
            timeout: Connect timeout in seconds (default settings.CONNECT_TIMEOUT)
            io_timeout: Per send/receive timeout (default settings.IO_TIMEOUT)
            codec: Codec used to find frame boundaries

        Raises:
            CacheConnectionError: The node refused, timed out or is unresolvable
        """
        timeout = timeout if timeout is not None else settings.CONNECT_TIMEOUT
        io_timeout = io_timeout if io_timeout is not None else settings.IO_TIMEOUT

        try:
            sock = socket.create_connection((node.address, node.port), timeout=timeout)
        except OSError as e:
            logger.error(f"Cannot connect to node {node.label} at {node.endpoint}: {e}")
            raise CacheConnectionError(
                f"cannot connect to node {node.label!r} at {node.endpoint}: {e}", node
            ) from e

        sock.settimeout(io_timeout)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        logger.debug(f"Connected to node {node.label} at {node.endpoint}")
        return cls(node, sock, codec)

    def send(self, data: bytes) -> None:
        """
        Send one frame.

        Raises:
            StaleConnectionError: The node has dropped the connection
        """
        sock = self._require_socket()
        try:
            sock.sendall(data)
        except socket.timeout as e:
            raise CacheConnectionError(f"send to node {self.node.label!r} timed out", self.node) from e
        except OSError as e:
            raise StaleConnectionError(f"send to node {self.node.label!r} failed: {e}", self.node) from e

    def receive(self) -> bytes:
        """
        Read one frame from the socket.

        Raises:
            StaleConnectionError: The node closed or reset the connection
                before answering
            CacheConnectionError: The socket timed out or failed mid-reply
            FramingError: The node closed the connection mid-frame
        """
        self._require_socket()
        try:
            first = self._read(1)
        except socket.timeout as e:
            raise CacheConnectionError(
                f"timed out waiting for node {self.node.label!r}", self.node
            ) from e
        except OSError as e:
            raise StaleConnectionError(
                f"receive from node {self.node.label!r} failed: {e}", self.node
            ) from e
        if not first:
            raise StaleConnectionError(
                f"node {self.node.label!r} closed the connection", self.node
            )

        pending = [first]

        def read(n: int) -> bytes:
            if pending:
                return pending.pop()
            return self._read(n)

        try:
            return self.codec.read_frame(read)
        except socket.timeout as e:
            raise CacheConnectionError(
                f"timed out waiting for node {self.node.label!r}", self.node
            ) from e
        except OSError as e:
            raise CacheConnectionError(
                f"receive from node {self.node.label!r} failed: {e}", self.node
            ) from e

    def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        if self._sock is None:
            return
        try:
            self._sock.close()
        finally:
            self._sock = None

    @property
    def closed(self) -> bool:
        return self._sock is None

    def _read(self, n: int) -> bytes:
        """Read up to n bytes, returning fewer only at end of stream."""
        buf = bytearray()
        while len(buf) < n:
            chunk = self._sock.recv(n - len(buf))
            if not chunk:
                break
            buf.extend(chunk)
        return bytes(buf)

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise CacheConnectionError(f"connection to node {self.node.label!r} is closed", self.node)
        return self._sock

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"SocketConnection({self.node}, {state})"
