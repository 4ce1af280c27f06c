"""
KV-Cache Client Configuration Settings

Defaults for routing, transport and framing. Every value can be overridden
through a KV_CACHE_* environment variable or per client instance.
"""

import os
from dataclasses import dataclass


@dataclass
class Settings:
    """Client configuration settings."""

    # Cluster settings
    NODES: str = os.environ.get("KV_CACHE_NODES", "")
    REPLICAS_PER_NODE: int = int(os.environ.get("KV_CACHE_REPLICAS", "100"))

    # Connection settings
    CONNECT_TIMEOUT: float = float(os.environ.get("KV_CACHE_CONNECT_TIMEOUT", "5.0"))
    IO_TIMEOUT: float = float(os.environ.get("KV_CACHE_IO_TIMEOUT", "5.0"))
    POOL_SIZE: int = int(os.environ.get("KV_CACHE_POOL_SIZE", "30"))  # Idle connections kept per node

    # Protocol settings
    MAX_RECORD_SIZE: int = int(os.environ.get("KV_CACHE_MAX_RECORD_SIZE", str(64 * 1024 * 1024)))

    # Logging settings
    DEBUG: bool = os.environ.get("KV_CACHE_DEBUG", "false").lower() == "true"
    LOG_LEVEL: str = os.environ.get("KV_CACHE_LOG_LEVEL", "INFO")


# Global settings instance
settings = Settings()
