"""Backend API client."""

from .client import DEFAULT_BASE_URL, BackendClient

__all__ = ["BackendClient", "DEFAULT_BASE_URL"]
