"""Presence module: user -> live connection handle, shared across instances."""

from .registry import InMemoryPresenceRegistry, PresenceRegistry, RedisPresenceRegistry

__all__ = ["InMemoryPresenceRegistry", "PresenceRegistry", "RedisPresenceRegistry"]
