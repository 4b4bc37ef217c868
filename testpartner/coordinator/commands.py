"""Typed request/response pairs of the coordinator command surface."""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..errors import PartnerError


class CommandType(str, Enum):
    """Commands served by the background coordinator."""
    START_SESSION = "START_SESSION"
    STOP_SESSION = "STOP_SESSION"
    TOGGLE_SESSION = "TOGGLE_SESSION"
    PAUSE_SESSION = "PAUSE_SESSION"
    RESUME_SESSION = "RESUME_SESSION"
    CANCEL_SESSION = "CANCEL_SESSION"
    GET_SESSION_STATUS = "GET_SESSION_STATUS"
    GET_STATS = "GET_STATS"
    EXPORT_REPORT = "EXPORT_REPORT"
    TAKE_SCREENSHOT = "TAKE_SCREENSHOT"
    FLAG_EVENT = "FLAG_EVENT"
    ADD_LOG = "ADD_LOG"
    ADD_EVENT = "ADD_EVENT"
    CLEAR_SESSION = "CLEAR_SESSION"
    RETRY_PENDING_UPLOADS = "RETRY_PENDING_UPLOADS"


class CommandRequest(BaseModel):
    """A command sent to the coordinator.

    ``type`` is kept as a plain string so that unknown commands reach the
    coordinator and get a proper error response instead of failing
    validation at the caller.
    """

    model_config = ConfigDict(extra='allow')

    type: str = Field(description="Command type")
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('type', mode='before')
    @classmethod
    def coerce_type(cls, v):
        return v.value if isinstance(v, CommandType) else str(v)

    @property
    def command(self) -> Optional[CommandType]:
        try:
            return CommandType(self.type)
        except ValueError:
            return None

    def get(self, name: str, default: Any = None) -> Any:
        return self.payload.get(name, default)

    @classmethod
    def of(cls, command: CommandType, **payload: Any) -> 'CommandRequest':
        return cls(type=command, payload=payload)


class CommandResponse(BaseModel):
    """Response envelope ``{success, error?, ...payload}``."""

    model_config = ConfigDict(extra='allow')

    success: bool
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def ok(cls, **payload: Any) -> 'CommandResponse':
        return cls(success=True, **payload)

    @classmethod
    def fail(cls, error: str, code: Optional[str] = None, **payload: Any) -> 'CommandResponse':
        return cls(success=False, error=error, code=code, **payload)

    @classmethod
    def from_error(cls, error: PartnerError) -> 'CommandResponse':
        return cls(success=False, error=error.message, code=error.code, details=error.details)

    def extras(self) -> Dict[str, Any]:
        """Extra payload fields of the response."""
        return dict(self.model_extra or {})

    def __getitem__(self, name: str) -> Any:
        if name in type(self).model_fields:
            return getattr(self, name)
        return self.extras()[name]

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
