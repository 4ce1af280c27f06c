"""
Node Registry Module

Holds the static cluster topology the client routes against: an ordered set
of nodes, each with a unique label and a host/port address.

Descriptor format:
    label1:addr1:port1,label2:addr2:port2,...

Every entry needs exactly three non-empty fields. Whitespace is kept as-is,
and a single bad entry rejects the whole descriptor.
"""

import re
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Sequence, Tuple

from ..errors import ConfigurationError

ADDRESS_PATTERN = re.compile(r'[a-z0-9_.\-]+', re.IGNORECASE)
PORT_PATTERN = re.compile(r'[0-9]+')


@dataclass(frozen=True)
class Node:
    """
    A cache node.

    Attributes:
        label: Name used on the hash ring, unique within a registry
        address: Host name or IPv4 address
        port: TCP port (1-65535)
    """
    label: str
    address: str
    port: int

    def __post_init__(self):
        """Validate node fields."""
        if not self.label:
            raise ConfigurationError("node label must not be empty")
        if not ADDRESS_PATTERN.fullmatch(self.address or ""):
            raise ConfigurationError(f"bad address format for node {self.label!r}: {self.address!r}")
        if isinstance(self.port, bool) or not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            raise ConfigurationError(f"port for node {self.label!r} must be 1-65535, got {self.port!r}")

    @classmethod
    def parse(cls, entry: str) -> "Node":
        """
        Parse a single ``label:address:port`` entry.

        Raises:
            ConfigurationError: Wrong field count, empty field or bad port
        """
        parts = entry.split(":")
        if len(parts) != 3 or not all(parts):
            raise ConfigurationError(
                f"node entry must be of the form <label>:<address>:<port>, got {entry!r}"
            )

        label, address, port = parts
        if not PORT_PATTERN.fullmatch(port):
            raise ConfigurationError(f"port for node {label!r} is not a number: {port!r}")
        return cls(label=label, address=address, port=int(port))

    @property
    def endpoint(self) -> str:
        """The node address as ``host:port``."""
        return f"{self.address}:{self.port}"

    def __str__(self) -> str:
        return f"{self.label}:{self.endpoint}"


class NodeRegistry:
    """
    Ordered, read-only collection of cluster nodes.

    Label lookups go through a dict, so resolve() is O(1). Nothing here opens
    a connection.
    """

    def __init__(self, nodes: Sequence[Node]):
        """
        Initialize the registry.

        Args:
            nodes: The nodes, in ring order

        Raises:
            ConfigurationError: Empty node list or duplicate labels
        """
        nodes = tuple(nodes)
        if not nodes:
            raise ConfigurationError("a cluster needs at least one node")

        by_label: Dict[str, Node] = {}
        for node in nodes:
            if node.label in by_label:
                raise ConfigurationError(f"duplicate node label: {node.label!r}")
            by_label[node.label] = node

        self._nodes = nodes
        self._by_label = by_label

    @classmethod
    def from_nodes(cls, nodes: Sequence[Node]) -> "NodeRegistry":
        """Build a registry from Node objects."""
        return cls(nodes)

    @classmethod
    def from_descriptor(cls, descriptor: str) -> "NodeRegistry":
        """
        Build a registry from a comma-separated descriptor string.

        Examples:
            >>> registry = NodeRegistry.from_descriptor("a:127.0.0.1:7001,b:127.0.0.1:7002")
            >>> registry.labels
            ('a', 'b')
        """
        if not descriptor:
            raise ConfigurationError("empty node descriptor")
        return cls([Node.parse(entry) for entry in descriptor.split(",")])

    @property
    def labels(self) -> Tuple[str, ...]:
        """Node labels in registry order."""
        return tuple(node.label for node in self._nodes)

    @property
    def nodes(self) -> Tuple[Node, ...]:
        return self._nodes

    @property
    def descriptor(self) -> str:
        """The registry as a descriptor string; from_descriptor() reads it back."""
        return ",".join(str(node) for node in self._nodes)

    def resolve(self, label: str) -> Optional[Node]:
        """Return the node with the given label, or None if unknown."""
        return self._by_label.get(label)

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, label: object) -> bool:
        return label in self._by_label

    def __repr__(self) -> str:
        return f"NodeRegistry({self.descriptor})"
