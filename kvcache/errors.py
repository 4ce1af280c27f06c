"""
Exception hierarchy for the KV-Cache client.

Every error raised by this package derives from CacheError so callers can
catch the whole family at once, or pick out the class they can recover from
(usually CacheConnectionError).
"""

from typing import Optional


class CacheError(Exception):
    """Base class for all client errors."""


class ConfigurationError(CacheError, ValueError):
    """Invalid node list, descriptor string, or ring parameters."""


class RoutingError(ConfigurationError):
    """No node could be selected for a key (empty ring)."""


class CacheConnectionError(CacheError):
    """
    The owning node could not be reached.

    Attributes:
        node: The node the client was talking to, if known
    """

    def __init__(self, message: str, node: Optional[object] = None):
        super().__init__(message)
        self.node = node


class StaleConnectionError(CacheConnectionError):
    """
    The connection dropped before any byte of the reply arrived.

    Nodes close idle connections, so a pooled connection can hit this while
    the node itself is up.
    """


class FramingError(CacheError):
    """Bytes on the wire do not form a valid frame."""


class ProtocolError(CacheError):
    """A well-framed message that makes no sense for the operation."""


class RecordIndexError(ProtocolError, IndexError):
    """A response record was requested past the end of the record list."""
