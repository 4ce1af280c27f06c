"""
Cluster module for the KV-Cache client.

This module provides:
- Cluster topology (nodes and the registry that holds them)
- Key ownership through a consistent hashing ring
"""

from .registry import Node, NodeRegistry
from .ring import ConsistentHashRing, hash_key

__all__ = ['Node', 'NodeRegistry', 'ConsistentHashRing', 'hash_key']
