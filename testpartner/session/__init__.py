"""Session lifecycle package."""

from .manager import SessionManager, DEFAULT_USER_AGENT

__all__ = [
    "SessionManager",
    "DEFAULT_USER_AGENT",
]
