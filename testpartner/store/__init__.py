"""Durable shared store package.

The store is the single source of truth for session status and content.
Contexts subscribe to its change notifications instead of messaging each
other directly.

Usage:
    from testpartner.store import create_store

    store = create_store("memory")
    subscription = await store.subscribe(on_change, keys=[SESSION_KEY])
"""

import logging
from typing import Any

from .base import (
    SharedStore,
    StoreChange,
    Subscription,
    ChangeCallback,
    NO_CHANGE,
    SESSION_KEY,
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    PENDING_UPLOADS_KEY,
    LEGACY_LOGS_KEY,
)
from .file_backend import FileSharedStore
from .memory import InMemorySharedStore

logger = logging.getLogger(__name__)

__all__ = [
    "SharedStore",
    "StoreChange",
    "Subscription",
    "ChangeCallback",
    "NO_CHANGE",
    "SESSION_KEY",
    "ACCESS_TOKEN_KEY",
    "REFRESH_TOKEN_KEY",
    "PENDING_UPLOADS_KEY",
    "LEGACY_LOGS_KEY",
    "InMemorySharedStore",
    "FileSharedStore",
    "create_store",
]


def create_store(backend: str = "memory", **kwargs: Any) -> SharedStore:
    """Create a shared store backend.

    Args:
        backend: ``memory``, ``file`` or ``redis``
        **kwargs: Backend-specific options

    Returns:
        Configured shared store
    """
    if backend == "memory":
        return InMemorySharedStore(**kwargs)
    if backend == "file":
        return FileSharedStore(**kwargs)
    if backend == "redis":
        from .redis_backend import RedisSharedStore
        return RedisSharedStore(**kwargs)
    raise ValueError(f"Unknown store backend: {backend}")
