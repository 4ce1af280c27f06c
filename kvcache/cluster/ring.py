"""
Consistent Hashing Ring

Maps keys onto node labels so that adding or removing a node only moves the
keys that node owned (about 1/N of them) instead of reshuffling everything
the way ``hash(key) % N`` would.

Each label is placed on the ring ``replicas`` times. Every point is the
SHA-256 of ``"<label>-<replica index>"`` truncated to 64 bits, so two rings
built from the same labels agree in every process and on every host.
"""

import bisect
import hashlib
from typing import Dict, Iterable, List, Sequence, Tuple, Union

from ..config.settings import settings
from ..errors import ConfigurationError, RoutingError

Key = Union[str, bytes]


def hash_key(key: Key) -> int:
    """
    Hash a key onto the 64-bit ring space.

    Args:
        key: A string (hashed as UTF-8) or raw bytes

    Returns:
        Unsigned 64-bit integer taken from the first 8 bytes of SHA-256
    """
    if isinstance(key, str):
        key = key.encode('utf-8')
    hash_digest = hashlib.sha256(key).digest()
    return int.from_bytes(hash_digest[:8], byteorder='big')


class ConsistentHashRing:
    """
    Immutable consistent hashing ring over a set of node labels.

    The ring only knows labels. Turning a label into an address is the
    NodeRegistry's job.

    Usage:
        ring = ConsistentHashRing(["a", "b", "c"], replicas=100)
        ring.lookup("user:42")  # -> "b"

    Attributes:
        replicas: Number of points placed on the ring per label
    """

    def __init__(self, labels: Sequence[str], replicas: int = None):
        """
        Build the ring.

        Args:
            labels: Unique node labels
            replicas: Points per label (default from settings.REPLICAS_PER_NODE)

        Raises:
            ConfigurationError: replicas < 1 or duplicate labels
        """
        self.replicas = replicas if replicas is not None else settings.REPLICAS_PER_NODE
        if self.replicas < 1:
            raise ConfigurationError(f"replicas must be >= 1, got {self.replicas}")

        labels = tuple(labels)
        if len(set(labels)) != len(labels):
            duplicates = sorted({label for label in labels if labels.count(label) > 1})
            raise ConfigurationError(f"duplicate node labels: {', '.join(duplicates)}")
        self._labels = labels

        # Sorting on (hash, label) keeps the order total when two points collide
        entries: List[Tuple[int, str]] = sorted(
            (hash_key(f"{label}-{i}"), label)
            for label in labels
            for i in range(self.replicas)
        )
        self._hashes = [point for point, _ in entries]
        self._owners = [label for _, label in entries]

    @classmethod
    def build(cls, labels: Sequence[str], replicas: int = None) -> "ConsistentHashRing":
        """Build a ring from labels and a replica count."""
        return cls(labels, replicas)

    @property
    def labels(self) -> Tuple[str, ...]:
        """The labels placed on the ring, in construction order."""
        return self._labels

    def lookup(self, key: Key) -> str:
        """
        Find the label owning a key.

        The owner is the first point clockwise from the key's hash, wrapping
        back to the first point past the end of the ring.

        Raises:
            RoutingError: The ring has no nodes
        """
        if not self._hashes:
            raise RoutingError("cannot route key: the ring has no nodes")

        index = bisect.bisect_left(self._hashes, hash_key(key))
        if index == len(self._hashes):
            index = 0
        return self._owners[index]

    def partition(self, keys: Iterable[Key]) -> Dict[str, List[Key]]:
        """
        Group keys by owning label.

        Keys keep their input order inside each group.
        """
        buckets: Dict[str, List[Key]] = {}
        for key in keys:
            buckets.setdefault(self.lookup(key), []).append(key)
        return buckets

    def __len__(self) -> int:
        return len(self._hashes)

    def __contains__(self, label: object) -> bool:
        return label in self._labels

    def __repr__(self) -> str:
        return f"ConsistentHashRing(labels={list(self._labels)}, replicas={self.replicas})"
