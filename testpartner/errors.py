"""Error taxonomy for session coordination and telemetry capture.

Lifecycle errors (conflict, not-found, invalid-state) are surfaced to the
caller. Store errors raised while appending telemetry are recovered by the
collector. Remote sync errors are logged and queued by the coordinator.
"""

from typing import Optional


class PartnerError(Exception):
    """Base error for all testpartner failures."""

    code = "error"

    def __init__(self, message: str = "", details: Optional[dict] = None):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Serialize error for command responses."""
        return {
            'code': self.code,
            'message': self.message,
            'details': self.details,
        }


class SessionError(PartnerError):
    """Illegal session lifecycle operation."""

    code = "session_error"


class ConflictError(SessionError):
    """A session is already open."""

    code = "conflict"


class NotFoundError(SessionError):
    """No open session to operate on."""

    code = "not_found"


class InvalidStateError(SessionError):
    """Session is not in a state that allows this transition."""

    code = "invalid_state"


class StoreError(PartnerError):
    """Shared store read or write failed."""

    code = "store_error"


class BackendError(PartnerError):
    """Backend API request failed."""

    code = "backend_error"

    def __init__(
        self,
        message: str = "",
        status_code: Optional[int] = None,
        details: Optional[dict] = None
    ):
        self.status_code = status_code
        super().__init__(message, details)


class AuthenticationError(BackendError):
    """Backend rejected the stored credentials."""

    code = "authentication_failed"


class RemoteSyncError(BackendError):
    """Completed session could not be handed off to the backend."""

    code = "remote_sync_failed"
