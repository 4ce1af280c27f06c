"""
Asyncio Cache Client Module

Same routing and reply handling as CacheClient, over asyncio streams. Each
request opens its own connection and closes it when the reply has been
read, so concurrent tasks never share a stream.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Mapping, Optional

from .client import (
    BaseClient,
    NodeSpec,
    as_registry,
    read_ack,
    read_exists,
    read_index,
    read_stats,
    read_value,
)
from .cluster.registry import Node
from .config.settings import settings
from .errors import CacheConnectionError, CacheError
from .protocol.codec import MessageCodec
from .protocol.messages import Key, Request, Response

logger = logging.getLogger(__name__)


class AsyncCacheClient(BaseClient):
    """
    Asyncio client for a KV-Cache cluster.

    Usage:
        client = AsyncCacheClient("a:10.0.0.1:4444,b:10.0.0.2:4444")
        await client.set("user:1", b"alice")
        value = await client.get("user:1")

    Attributes:
        timeout: Bound on connecting and on each send/receive, in seconds
    """

    def __init__(
            self,
            nodes: NodeSpec,
            replicas: int = None,
            timeout: float = None,
            codec: MessageCodec = None,
    ):
        super().__init__(nodes, replicas, codec)
        self.timeout = timeout if timeout is not None else settings.IO_TIMEOUT

    async def get(self, key: Key) -> Optional[bytes]:
        """Fetch a value, or None if the key is not stored."""
        node = self.select_node(key)
        return read_value(await self._request(node, Request.get(key)), node)

    async def set(self, key: Key, value: bytes, expire: int = 0) -> bool:
        """Store a value. True only when the node acknowledged the write."""
        node = self.select_node(key)
        return read_ack(await self._request(node, Request.set(key, value, expire)), node, "SET")

    async def add(self, key: Key, value: bytes, expire: int = 0) -> bool:
        node = self.select_node(key)
        return read_ack(await self._request(node, Request.add(key, value, expire)), node, "ADD")

    async def delete(self, key: Key) -> bool:
        node = self.select_node(key)
        return read_ack(await self._request(node, Request.delete(key)), node, "DELETE")

    async def evict(self, key: Key) -> bool:
        node = self.select_node(key)
        return read_ack(await self._request(node, Request.evict(key)), node, "EVICT")

    async def touch(self, key: Key, expire: int = 0) -> bool:
        node = self.select_node(key)
        return read_ack(await self._request(node, Request.touch(key, expire)), node, "TOUCH")

    async def exists(self, key: Key) -> bool:
        node = self.select_node(key)
        return read_exists(await self._request(node, Request.exists(key)), node)

    async def get_range(self, key: Key, offset: int, length: int) -> Optional[bytes]:
        """Fetch up to ``length`` bytes of a value starting at ``offset``."""
        node = self.select_node(key)
        return read_value(await self._request(node, Request.get_range(key, offset, length)), node)

    async def stats(self, label: str) -> Dict[str, str]:
        node = self.node(label)
        return read_stats(await self._request(node, Request.stats()), node)

    async def check(self, label: str) -> bool:
        node = self.node(label)
        return read_ack(await self._request(node, Request.check()), node, "CHECK")

    async def index(self, label: str) -> Dict[bytes, int]:
        node = self.node(label)
        return read_index(await self._request(node, Request.index()), node)

    async def migration_begin(self, nodes: NodeSpec) -> bool:
        """Ask every node, in registry order, to start migrating to ``nodes``."""
        request = Request.migration_begin(as_registry(nodes).descriptor)
        for node in self.registry:
            if not read_ack(await self._request(node, request), node, "MIGRATION_BEGIN"):
                return False
        return True

    async def migration_abort(self) -> bool:
        request = Request.migration_abort()
        for node in self.registry:
            if not read_ack(await self._request(node, request), node, "MIGRATION_ABORT"):
                return False
        return True

    async def get_multi(self, keys: Iterable[Key]) -> Dict[Key, Optional[bytes]]:
        """
        Fetch several keys, one task per owning node.

        Raises:
            CacheConnectionError: Any owning node unreachable
        """
        async def fetch(bucket: List[Key]) -> Dict[Key, Optional[bytes]]:
            return {key: await self.get(key) for key in bucket}

        return await self._run_buckets(self.ring.partition(keys), fetch)

    async def set_multi(self, items: Mapping[Key, Optional[bytes]], expire: int = 0) -> Dict[Key, bool]:
        """Store several keys, one task per owning node. A None value deletes the key."""
        async def store(bucket: List[Key]) -> Dict[Key, bool]:
            results = {}
            for key in bucket:
                value = items[key]
                if value is None:
                    results[key] = await self.delete(key)
                else:
                    results[key] = await self.set(key, value, expire)
            return results

        return await self._run_buckets(self.ring.partition(items.keys()), store)

    async def _run_buckets(self, buckets: Dict[str, List[Key]], worker) -> dict:
        results = {}
        for part in await asyncio.gather(*(worker(bucket) for bucket in buckets.values())):
            results.update(part)
        return results

    async def _request(self, node: Node, request: Request) -> Response:
        """
        Send a request to a node over a fresh connection.

        Raises:
            CacheConnectionError: Connect or I/O failed or timed out
            FramingError: The reply was not a valid frame
            ProtocolError: The reply had an unknown status
        """
        payload = self.codec.encode_request(request)

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(node.address, node.port),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Timeout connecting to {node.endpoint}")
            raise CacheConnectionError(f"timeout connecting to node {node.label!r}", node) from e
        except OSError as e:
            logger.error(f"Cannot connect to node {node.label} at {node.endpoint}: {e}")
            raise CacheConnectionError(f"cannot connect to node {node.label!r}: {e}", node) from e

        try:
            writer.write(payload)
            await asyncio.wait_for(writer.drain(), timeout=self.timeout)
            data = await asyncio.wait_for(self.codec.read_frame_async(reader), timeout=self.timeout)
            response = self.codec.decode_response(data)
        except asyncio.TimeoutError as e:
            logger.error(f"Timeout waiting for node {node.label} at {node.endpoint}")
            raise CacheConnectionError(f"timeout waiting for node {node.label!r}", node) from e
        except CacheError as e:
            logger.error(f"{request.type.name} to node {node.label} failed: {e}")
            raise
        except OSError as e:
            logger.error(f"{request.type.name} to node {node.label} failed: {e}")
            raise CacheConnectionError(
                f"{request.type.name} to node {node.label!r} failed: {e}", node
            ) from e
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Ignoring error while closing connection to {node.endpoint}: {e}")

        logger.debug(f"{request.type.name} on node {node.label} -> {response.status.name}")
        return response

    def __repr__(self) -> str:
        return f"AsyncCacheClient({self.registry!r}, replicas={self.ring.replicas})"
