"""Configuration module for the KV-Cache client."""

from .settings import Settings, settings

__all__ = ["Settings", "settings"]
