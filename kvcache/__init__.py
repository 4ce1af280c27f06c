"""
KV-Cache Client

Client for a sharded key-value cache cluster. Keys are routed to their owning
node with consistent hashing and exchanged over a small binary protocol.
"""

from .aio import AsyncCacheClient
from .client import CacheClient
from .cluster import ConsistentHashRing, Node, NodeRegistry
from .errors import (
    CacheConnectionError,
    CacheError,
    ConfigurationError,
    FramingError,
    ProtocolError,
    RecordIndexError,
    RoutingError,
    StaleConnectionError,
)
from .protocol import MessageCodec, MessageType, Request, Response, ResponseStatus

__version__ = "1.0.0"

__all__ = [
    "AsyncCacheClient",
    "CacheClient",
    "CacheConnectionError",
    "CacheError",
    "ConfigurationError",
    "ConsistentHashRing",
    "FramingError",
    "MessageCodec",
    "MessageType",
    "Node",
    "NodeRegistry",
    "ProtocolError",
    "RecordIndexError",
    "Request",
    "Response",
    "ResponseStatus",
    "RoutingError",
    "StaleConnectionError",
]
