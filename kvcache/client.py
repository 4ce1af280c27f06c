"""
Cache Client Module

Routes each key to its owning node and runs one request/response exchange
against it.

Request flow:
    key -> ring.lookup -> registry.resolve -> pool.acquire -> send/receive
        -> decode -> interpret -> result

The ring, registry and codec never change after construction, so one client
can be shared by many threads. Every call gets its own connection.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .cluster.registry import Node, NodeRegistry
from .cluster.ring import ConsistentHashRing
from .errors import (
    CacheConnectionError,
    CacheError,
    ConfigurationError,
    ProtocolError,
    RoutingError,
    StaleConnectionError,
)
from .network.connection import Connection
from .network.pool import ConnectionPool, Connector
from .protocol.codec import MessageCodec
from .protocol.messages import (
    ABSENT,
    ACK_SUCCESS,
    PRESENT,
    Key,
    Request,
    Response,
    ResponseStatus,
    unpack_uint32,
)

logger = logging.getLogger(__name__)

NodeSpec = Union[NodeRegistry, str, Sequence[Node]]


def as_registry(nodes: NodeSpec) -> NodeRegistry:
    """Accept a registry, a descriptor string or a sequence of nodes."""
    if isinstance(nodes, NodeRegistry):
        return nodes
    if isinstance(nodes, str):
        return NodeRegistry.from_descriptor(nodes)
    return NodeRegistry.from_nodes(nodes)


def read_value(response: Response, node: Node) -> Optional[bytes]:
    """
    Interpret a GET-style response.

    Returns:
        Record 0 on OK, None on MISS

    Raises:
        ProtocolError: ERROR status or OK without a value record
    """
    if response.status == ResponseStatus.MISS:
        return None
    if response.status == ResponseStatus.ERROR:
        raise ProtocolError(f"node {node.label!r} returned an error: {response.message}")
    return response.record(0)


def read_ack(response: Response, node: Node, operation: str) -> bool:
    """
    Interpret a write acknowledgement.

    Only status OK with record 0 exactly equal to ACK_SUCCESS counts as
    success. A refusal (other one-byte sentinel, MISS or ERROR) is False.

    Raises:
        ProtocolError: OK status but record 0 is missing or not one byte
    """
    if response.status == ResponseStatus.MISS:
        return False
    if response.status == ResponseStatus.ERROR:
        logger.warning(f"{operation} refused by node {node.label}: {response.message}")
        return False

    ack = response.record(0)
    if len(ack) != 1:
        raise ProtocolError(
            f"{operation} acknowledgement from node {node.label!r} must be 1 byte, got {len(ack)}"
        )
    if ack != ACK_SUCCESS:
        logger.warning(f"{operation} refused by node {node.label} (code 0x{ack[0]:02x})")
        return False
    return True


def read_exists(response: Response, node: Node) -> bool:
    """Interpret an EXISTS response."""
    if response.status == ResponseStatus.MISS:
        return False
    if response.status == ResponseStatus.ERROR:
        raise ProtocolError(f"node {node.label!r} returned an error: {response.message}")

    answer = response.record(0)
    if answer == PRESENT:
        return True
    if answer == ABSENT:
        return False
    raise ProtocolError(f"unexpected EXISTS answer from node {node.label!r}: {answer!r}")


def read_stats(response: Response, node: Node) -> Dict[str, str]:
    """Interpret a STATS response: records alternate counter name and value."""
    if not response.is_ok:
        raise ProtocolError(f"node {node.label!r} did not return stats: {response.status.name}")
    if len(response.records) % 2:
        raise ProtocolError(f"stats from node {node.label!r} have an odd number of records")

    text = [record.decode('utf-8', errors='replace') for record in response.records]
    return dict(zip(text[0::2], text[1::2]))


def read_index(response: Response, node: Node) -> Dict[bytes, int]:
    """Interpret a GET_INDEX response: records alternate key and 4-byte value size."""
    if not response.is_ok:
        raise ProtocolError(f"node {node.label!r} did not return an index: {response.status.name}")
    if len(response.records) % 2:
        raise ProtocolError(f"index from node {node.label!r} has an odd number of records")

    records = response.records
    return {key: unpack_uint32(size) for key, size in zip(records[0::2], records[1::2])}


class BaseClient:
    """
    Routing shared by the blocking and asyncio clients.

    Attributes:
        registry: The configured nodes
        ring: Consistent hashing ring over the registry labels
        codec: Wire codec
    """

    def __init__(self, nodes: NodeSpec, replicas: int = None, codec: MessageCodec = None):
        """
        Initialize routing.

        Args:
            nodes: NodeRegistry, descriptor string or sequence of Node
            replicas: Ring points per node (default settings.REPLICAS_PER_NODE)
            codec: Wire codec (default MessageCodec())

        Raises:
            ConfigurationError: Empty or malformed node list
        """
        self.registry = as_registry(nodes)
        self.ring = ConsistentHashRing(self.registry.labels, replicas)
        self.codec = codec if codec is not None else MessageCodec()

    def select_node(self, key: Key) -> Node:
        """
        Return the node owning a key.

        Raises:
            RoutingError: The ring points at a label the registry lacks
        """
        label = self.ring.lookup(key)
        node = self.registry.resolve(label)
        if node is None:
            raise RoutingError(f"ring selected unknown node {label!r}")
        logger.debug(f"Key {key!r} routed to node {node.label}")
        return node

    def node(self, label: str) -> Node:
        """
        Return a node by label.

        Raises:
            ConfigurationError: No such node
        """
        node = self.registry.resolve(label)
        if node is None:
            raise ConfigurationError(f"unknown node {label!r}")
        return node


class CacheClient(BaseClient):
    """
    Blocking client for a KV-Cache cluster.

    Usage:
        with CacheClient("a:10.0.0.1:4444,b:10.0.0.2:4444") as client:
            client.set("user:1", b"alice")
            client.get("user:1")    # b"alice"
            client.get("user:99")   # None

    Failures surface as exceptions from kvcache.errors. Nothing is retried
    and no request is sent to a different node.
    """

    def __init__(
            self,
            nodes: NodeSpec,
            replicas: int = None,
            connector: Connector = None,
            pool_size: int = None,
            codec: MessageCodec = None,
    ):
        """
        Initialize the client.

        Args:
            nodes: NodeRegistry, descriptor string or sequence of Node
            replicas: Ring points per node (default settings.REPLICAS_PER_NODE)
            connector: Opens a Connection for a Node (default SocketConnection.open)
            pool_size: Idle connections kept per node (default settings.POOL_SIZE)
            codec: Wire codec (default MessageCodec())
        """
        super().__init__(nodes, replicas, codec)
        self.pool = ConnectionPool(connector, max_idle=pool_size)

    def get(self, key: Key) -> Optional[bytes]:
        """
        Fetch a value.

        Returns:
            The value, or None if the key is not stored (an empty value
            comes back as b"")

        Raises:
            CacheConnectionError: Owning node unreachable
            ProtocolError: Node answered with an error or a malformed reply
        """
        node = self.select_node(key)
        return read_value(self._request(node, Request.get(key)), node)

    def set(self, key: Key, value: bytes, expire: int = 0) -> bool:
        """
        Store a value.

        Args:
            key: The key
            value: The value bytes
            expire: Expiry in seconds, 0 for none

        Returns:
            True if the node acknowledged the write, False if it refused

        Raises:
            CacheConnectionError: Owning node unreachable
            ProtocolError: Malformed acknowledgement
        """
        node = self.select_node(key)
        return read_ack(self._request(node, Request.set(key, value, expire)), node, "SET")

    def add(self, key: Key, value: bytes, expire: int = 0) -> bool:
        """Store a value only if the key is absent. False if it already exists."""
        node = self.select_node(key)
        return read_ack(self._request(node, Request.add(key, value, expire)), node, "ADD")

    def delete(self, key: Key) -> bool:
        """Remove a key. False if the node did not have it."""
        node = self.select_node(key)
        return read_ack(self._request(node, Request.delete(key)), node, "DELETE")

    def evict(self, key: Key) -> bool:
        """Drop a key from the node's cache layer without touching its storage."""
        node = self.select_node(key)
        return read_ack(self._request(node, Request.evict(key)), node, "EVICT")

    def touch(self, key: Key, expire: int = 0) -> bool:
        """Refresh a key's expiry."""
        node = self.select_node(key)
        return read_ack(self._request(node, Request.touch(key, expire)), node, "TOUCH")

    def exists(self, key: Key) -> bool:
        node = self.select_node(key)
        return read_exists(self._request(node, Request.exists(key)), node)

    def get_range(self, key: Key, offset: int, length: int) -> Optional[bytes]:
        """Fetch up to ``length`` bytes of a value starting at ``offset``."""
        node = self.select_node(key)
        return read_value(self._request(node, Request.get_range(key, offset, length)), node)

    def stats(self, label: str) -> Dict[str, str]:
        """Fetch the counters of one node."""
        node = self.node(label)
        return read_stats(self._request(node, Request.stats()), node)

    def check(self, label: str) -> bool:
        """Ask one node whether it is healthy."""
        node = self.node(label)
        return read_ack(self._request(node, Request.check()), node, "CHECK")

    def index(self, label: str) -> Dict[bytes, int]:
        """List the keys one node stores, mapped to the size of each value."""
        node = self.node(label)
        return read_index(self._request(node, Request.index()), node)

    def migration_begin(self, nodes: NodeSpec) -> bool:
        """
        Ask every node to start migrating data to a new topology.

        Nodes are notified in registry order and the first refusal stops the
        round. Nodes already notified keep migrating until migration_abort().

        Args:
            nodes: The target cluster, in any form the constructor accepts

        Returns:
            True once every node acknowledged, False if one refused

        Raises:
            ConfigurationError: The target node list is malformed
            CacheConnectionError: A node is unreachable
        """
        target = as_registry(nodes)
        request = Request.migration_begin(target.descriptor)
        for node in self.registry:
            if not read_ack(self._request(node, request), node, "MIGRATION_BEGIN"):
                return False
        logger.info(f"Migration to {target.descriptor} started on {len(self.registry)} node(s)")
        return True

    def migration_abort(self) -> bool:
        """Ask every node to abandon a running migration. False if one refused."""
        request = Request.migration_abort()
        for node in self.registry:
            if not read_ack(self._request(node, request), node, "MIGRATION_ABORT"):
                return False
        logger.info(f"Migration aborted on {len(self.registry)} node(s)")
        return True

    def get_multi(self, keys: Iterable[Key]) -> Dict[Key, Optional[bytes]]:
        """
        Fetch several keys, one worker thread per owning node.

        Returns:
            Mapping of each key to its value, or None for misses

        Raises:
            CacheConnectionError: Any owning node unreachable
        """
        buckets = self.ring.partition(keys)
        return self._run_buckets(buckets, self._get_bucket)

    def set_multi(self, items: Mapping[Key, Optional[bytes]], expire: int = 0) -> Dict[Key, bool]:
        """
        Store several keys, one worker thread per owning node.

        A None value deletes the key instead.

        Returns:
            Mapping of each key to whether its node acknowledged the write
        """
        buckets = self.ring.partition(items.keys())

        def store(bucket: List[Key]) -> Dict[Key, bool]:
            results = {}
            for key in bucket:
                value = items[key]
                if value is None:
                    results[key] = self.delete(key)
                else:
                    results[key] = self.set(key, value, expire)
            return results

        return self._run_buckets(buckets, store)

    def close(self) -> None:
        """Close all pooled connections."""
        self.pool.close()

    def _get_bucket(self, bucket: List[Key]) -> Dict[Key, Optional[bytes]]:
        return {key: self.get(key) for key in bucket}

    def _run_buckets(self, buckets: Dict[str, List[Key]], worker) -> dict:
        if not buckets:
            return {}

        results = {}
        with ThreadPoolExecutor(max_workers=len(buckets)) as executor:
            futures = [executor.submit(worker, bucket) for bucket in buckets.values()]
            for future in futures:
                results.update(future.result())
        return results

    def _request(self, node: Node, request: Request) -> Response:
        """
        Send one request to a node and decode the reply.

        An idle pooled connection that the node already closed is replaced
        by one new connection. Any other failure propagates.
        """
        payload = self.codec.encode_request(request)

        try:
            connection = self.pool.take_idle(node)
            if connection is None:
                response = self._exchange(node, request, self.pool.connect(node), payload)
            else:
                try:
                    response = self._exchange(node, request, connection, payload)
                except StaleConnectionError as e:
                    dropped = self.pool.clear(node.label)
                    logger.info(
                        f"Pooled connection to node {node.label} was stale ({e}), "
                        f"reconnecting; dropped {dropped} more idle"
                    )
                    response = self._exchange(node, request, self.pool.connect(node), payload)
        except CacheError as e:
            logger.error(f"{request.type.name} to node {node.label} failed: {e}")
            raise

        logger.debug(f"{request.type.name} on node {node.label} -> {response.status.name}")
        return response

    def _exchange(self, node: Node, request: Request, connection: Connection, payload: bytes) -> Response:
        """Run one send/receive on a connection; only a clean exchange returns it to the pool."""
        try:
            connection.send(payload)
            response = self.codec.decode_response(connection.receive())
        except CacheError:
            self.pool.discard(connection)
            raise
        except OSError as e:
            self.pool.discard(connection)
            raise CacheConnectionError(
                f"{request.type.name} to node {node.label!r} failed: {e}", node
            ) from e

        self.pool.release(node, connection)
        return response

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        return f"CacheClient({self.registry!r}, replicas={self.ring.replicas})"
