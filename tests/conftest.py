"""
Pytest Configuration and Fixtures

This module provides shared fixtures and configuration for all tests,
including an in-process stub cache node that speaks the binary protocol.
"""

import asyncio
import socket
import threading
from collections import Counter
from contextlib import closing
from typing import AsyncGenerator, Dict, Generator, List, Optional, Sequence

import pytest
import pytest_asyncio

from kvcache.client import CacheClient
from kvcache.cluster.registry import NodeRegistry
from kvcache.cluster.ring import ConsistentHashRing
from kvcache.errors import FramingError, StaleConnectionError
from kvcache.network.connection import Connection
from kvcache.protocol.codec import MessageCodec
from kvcache.protocol.messages import (
    MessageType,
    Request,
    Response,
    unpack_uint32,
)


def find_free_port() -> int:
    """Find a port nothing is listening on."""
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(('', 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


# ============================================================================
# Stub cache node
# ============================================================================

class StubNode:
    """
    Minimal cache node for end-to-end tests.

    Keeps values in a dict and answers every opcode the client sends.
    Persistent connections are supported: frames are served in a loop until
    the client disconnects.
    """

    def __init__(self, label: str, host: str = '127.0.0.1'):
        self.label = label
        self.host = host
        self.port = 0
        self.codec = MessageCodec()
        self.store: Dict[bytes, bytes] = {}
        self.requests: List[Request] = []
        self.counters: Counter = Counter()
        self.connections = 0
        self.migration: Optional[str] = None
        self._server: Optional[asyncio.Server] = None
        self._writers = set()

    @property
    def descriptor(self) -> str:
        return f"{self.label}:{self.host}:{self.port}"

    async def start(self) -> None:
        """Start listening on an ephemeral port."""
        self._server = await asyncio.start_server(self.handle_client, self.host, 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        """Close the listener and every open client connection."""
        if self._server is None:
            return

        self._server.close()
        for writer in list(self._writers):
            writer.close()
        await self._server.wait_closed()
        self._server = None

    async def drop_connections(self) -> None:
        """Close every client connection but keep listening, as on an idle timeout."""
        writers = list(self._writers)
        for writer in writers:
            writer.close()
        for writer in writers:
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        self.connections += 1
        try:
            while True:
                try:
                    data = await self.codec.read_frame_async(reader)
                except FramingError:
                    # Client disconnected
                    break

                request = self.codec.decode_request(data)
                self.requests.append(request)
                self.counters[request.type.name.lower()] += 1

                writer.write(self.codec.encode_response(self.execute(request)))
                await writer.drain()
        except ConnectionResetError:
            pass
        finally:
            self._writers.discard(writer)
            writer.close()

    def execute(self, request: Request) -> Response:
        """Run a request against the dict store."""
        key = request.key

        if request.type == MessageType.GET:
            value = self.store.get(key)
            return Response.ok(value) if value is not None else Response.miss()

        if request.type == MessageType.SET:
            self.store[key] = request.records[1]
            return Response.stored()

        if request.type == MessageType.ADD:
            if key in self.store:
                return Response.rejected()
            self.store[key] = request.records[1]
            return Response.stored()

        if request.type in (MessageType.DELETE, MessageType.EVICT):
            if self.store.pop(key, None) is None:
                return Response.miss()
            return Response.stored()

        if request.type == MessageType.EXISTS:
            return Response.exists_response(key in self.store)

        if request.type == MessageType.TOUCH:
            return Response.stored() if key in self.store else Response.miss()

        if request.type == MessageType.GET_RANGE:
            value = self.store.get(key)
            if value is None:
                return Response.miss()
            offset = unpack_uint32(request.records[1])
            length = unpack_uint32(request.records[2])
            return Response.ok(value[offset:offset + length])

        if request.type == MessageType.STATS:
            records = [b"keys", str(len(self.store)).encode()]
            for name, count in sorted(self.counters.items()):
                records += [name.encode(), str(count).encode()]
            return Response.ok(*records)

        if request.type == MessageType.CHECK:
            return Response.stored()

        if request.type == MessageType.GET_INDEX:
            return Response.index_response({k: len(v) for k, v in sorted(self.store.items())})

        if request.type == MessageType.MIGRATION_BEGIN:
            if self.migration is not None:
                return Response.rejected()
            self.migration = request.records[0].decode()
            return Response.stored()

        if request.type == MessageType.MIGRATION_ABORT:
            self.migration = None
            return Response.stored()

        return Response.error("invalid command")


class NodeThread:
    """Runs an event loop in a background thread so blocking clients can hit stub nodes."""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, daemon=True)

    def start(self) -> None:
        self.thread.start()

    def run(self, coro, timeout: float = 5.0):
        """Run a coroutine on the background loop and wait for its result."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout=timeout)

    def stop(self) -> None:
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=5.0)
        self.loop.close()


def cluster_descriptor(nodes: Sequence[StubNode]) -> str:
    return ",".join(node.descriptor for node in nodes)


# ============================================================================
# Scripted transport
# ============================================================================

class FakeConnection(Connection):
    """Connection that records what was sent and replays a canned reply."""

    def __init__(self, reply: Optional[bytes]):
        self.reply = reply
        self.sent: List[bytes] = []
        self.closed = False

    def send(self, data: bytes) -> None:
        self.sent.append(data)

    def receive(self) -> bytes:
        if self.reply is None:
            # Dropped by the node while idle
            raise StaleConnectionError("node closed the connection")
        return self.reply

    def close(self) -> None:
        self.closed = True


class ScriptedConnector:
    """Connector that hands out FakeConnections answering with one fixed response."""

    def __init__(self, reply: Optional[bytes]):
        self.reply = reply
        self.opened: List[FakeConnection] = []
        self.nodes = []

    def __call__(self, node):
        self.nodes.append(node)
        if self.reply is None:
            # Node down
            return None
        connection = FakeConnection(self.reply)
        self.opened.append(connection)
        return connection


# ============================================================================
# Protocol Fixtures
# ============================================================================

@pytest.fixture
def codec() -> MessageCodec:
    """Create a MessageCodec instance."""
    return MessageCodec()


@pytest.fixture
def small_codec() -> MessageCodec:
    """Create a codec with a 16 byte record limit."""
    return MessageCodec(max_record_size=16)


# ============================================================================
# Cluster Fixtures
# ============================================================================

@pytest.fixture
def registry() -> NodeRegistry:
    """Two-node registry from a descriptor string."""
    return NodeRegistry.from_descriptor("a:127.0.0.1:1,b:127.0.0.1:2")


@pytest.fixture
def ring() -> ConsistentHashRing:
    """Five-node ring with 100 points per node."""
    return ConsistentHashRing(["n1", "n2", "n3", "n4", "n5"], replicas=100)


# ============================================================================
# Client Fixtures
# ============================================================================

@pytest.fixture
def scripted_client(codec: MessageCodec):
    """
    Factory fixture for clients whose connections replay a canned response.

    Usage:
        def test_something(scripted_client):
            client, connector = scripted_client(Response.stored())
            assert client.set("k", b"v") is True
    """
    def factory(response: Optional[Response], pool_size: int = 0, raw: bytes = None):
        if raw is not None:
            reply = raw
        elif response is not None:
            reply = codec.encode_response(response)
        else:
            reply = None
        connector = ScriptedConnector(reply)
        client = CacheClient(
            "a:127.0.0.1:1,b:127.0.0.1:2",
            replicas=100,
            connector=connector,
            pool_size=pool_size,
        )
        return client, connector
    return factory


@pytest.fixture
def node_thread() -> Generator[NodeThread, None, None]:
    """Background event loop for stub nodes used by blocking clients."""
    runner = NodeThread()
    runner.start()
    yield runner
    runner.stop()


@pytest.fixture
def cluster(node_thread: NodeThread) -> Generator[List[StubNode], None, None]:
    """Three running stub nodes labelled a, b and c."""
    nodes = [StubNode(label) for label in ("a", "b", "c")]
    for node in nodes:
        node_thread.run(node.start())

    yield nodes

    for node in nodes:
        node_thread.run(node.stop())


@pytest.fixture
def cluster_client(cluster: List[StubNode]) -> Generator[CacheClient, None, None]:
    """Blocking client connected to the three-node stub cluster."""
    client = CacheClient(cluster_descriptor(cluster), replicas=100)
    yield client
    client.close()


@pytest_asyncio.fixture
async def async_cluster() -> AsyncGenerator[List[StubNode], None]:
    """Two stub nodes on the test's own event loop."""
    nodes = [StubNode(label) for label in ("a", "b")]
    for node in nodes:
        await node.start()

    yield nodes

    for node in nodes:
        await node.stop()


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
