"""Network module for the KV-Cache client."""

from .connection import Connection, SocketConnection
from .pool import ConnectionPool, Connector

__all__ = ["Connection", "SocketConnection", "ConnectionPool", "Connector"]
