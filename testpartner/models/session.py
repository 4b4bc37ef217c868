"""Pydantic models for exploratory testing sessions and captured telemetry.

This module defines the records that travel through the shared store:
the session record itself, the events, screenshots and flags appended to it,
and the log records a collector buffers before flushing them into a session.
"""

import random
import string
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_id(prefix: str, suffix_length: int = 9) -> str:
    """Generate a time-ordered identifier with a random suffix.

    Args:
        prefix: Identifier prefix such as ``session`` or ``event``
        suffix_length: Number of random base36 characters

    Returns:
        Identifier of the form ``<prefix>_<epoch-ms>_<suffix>``
    """
    suffix = ''.join(random.choices(_ID_ALPHABET, k=suffix_length))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def iso_now() -> str:
    """Current time as an ISO-8601 string."""
    return utc_now().isoformat()


def coerce_timestamp(value: Any) -> Optional[datetime]:
    """Parse a persisted timestamp, returning None when it is unusable.

    Accepts datetimes, ISO-8601 strings (including a trailing ``Z``) and
    epoch milliseconds. Anything else, or anything that fails to parse,
    becomes None so that long-running readers never crash on bad state.
    """
    if value is None or value == "":
        return None

    try:
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, bool):
            return None
        elif isinstance(value, (int, float)):
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        elif isinstance(value, str):
            text = value.strip()
            if text.endswith('Z'):
                text = text[:-1] + '+00:00'
            parsed = datetime.fromisoformat(text)
        else:
            return None
    except (ValueError, OverflowError, OSError):
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SessionStatus(str, Enum):
    """Lifecycle status of a testing session."""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_open(self) -> bool:
        """Whether the session can still change."""
        return self in (SessionStatus.ACTIVE, SessionStatus.PAUSED)

    @property
    def is_terminal(self) -> bool:
        return not self.is_open


class EventType(str, Enum):
    """Kinds of observations recorded in a session."""
    CLICK = "click"
    KEYDOWN = "keydown"
    MOUSE_MOVE = "mouse_move"
    FOCUS = "focus"
    CONSOLE_LOG = "console_log"
    NETWORK = "network"
    NETWORK_ERROR = "network_error"
    PAGE_ERROR = "page_error"
    PAGE_LOAD = "page_load"
    PAGE_UNLOAD = "page_unload"
    FLAG = "flag"
    SCREENSHOT = "screenshot"
    CUSTOM = "custom"


class LogLevel(str, Enum):
    """Console log levels."""
    ERROR = "error"
    WARN = "warn"
    INFO = "info"
    LOG = "log"
    DEBUG = "debug"


class LogKind(str, Enum):
    """Source of a buffered log record."""
    CONSOLE = "console"
    NETWORK = "network"
    ERROR = "error"


class EventRecord(BaseModel):
    """A single observation owned by a session."""

    id: str = Field(
        default_factory=lambda: generate_id("event"),
        description="Unique, time-ordered event identifier"
    )
    type: EventType = Field(description="Event variant")
    timestamp: str = Field(
        default_factory=iso_now,
        description="Capture-side ISO-8601 timestamp"
    )
    data: Dict[str, Any] = Field(
        default_factory=dict,
        description="Variant-specific payload"
    )

    @field_validator('type', mode='before')
    @classmethod
    def coerce_unknown_type(cls, v):
        """Map unknown persisted event types to CUSTOM."""
        if isinstance(v, EventType):
            return v
        try:
            return EventType(v)
        except ValueError:
            return EventType.CUSTOM

    @property
    def level(self) -> Optional[str]:
        """Log level carried by the payload, if any."""
        return self.data.get('level')

    @property
    def is_error(self) -> bool:
        """Whether this event represents a failure observed on the page."""
        if self.type in (EventType.NETWORK_ERROR, EventType.PAGE_ERROR):
            return True
        return self.level == LogLevel.ERROR.value


class LogRecord(BaseModel):
    """Console, network or error observation waiting in a collector buffer."""

    id: str = Field(default_factory=lambda: generate_id("log"))
    level: LogLevel = Field(default=LogLevel.LOG)
    message: str = Field(default="")
    args: List[Any] = Field(default_factory=list)
    timestamp: str = Field(default_factory=iso_now)
    url: str = Field(default="")
    stack: str = Field(default="")
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Kind-specific details (method, status, duration, filename...)"
    )

    @property
    def kind(self) -> LogKind:
        try:
            return LogKind(self.metadata.get('kind', LogKind.CONSOLE.value))
        except ValueError:
            return LogKind.CONSOLE

    def to_event(self) -> EventRecord:
        """Convert to the event that will be stored in the session."""
        kind = self.kind
        if kind == LogKind.NETWORK:
            event_type = (
                EventType.NETWORK if self.metadata.get('success', False)
                else EventType.NETWORK_ERROR
            )
        elif kind == LogKind.ERROR:
            event_type = EventType.PAGE_ERROR
        else:
            event_type = EventType.CONSOLE_LOG

        return EventRecord(
            id=self.id,
            type=event_type,
            timestamp=self.timestamp,
            data=self.model_dump(mode="json", exclude={'id', 'timestamp'}),
        )


class ScreenshotRecord(BaseModel):
    """Screenshot attached to a session."""

    id: str = Field(default_factory=lambda: generate_id("screenshot"))
    data: str = Field(description="Encoded image data (usually a data URL)")
    timestamp: str = Field(default_factory=iso_now)
    url: str = Field(default="")


class FlagRecord(BaseModel):
    """User annotation pointing at a previously captured event."""

    id: str = Field(default_factory=lambda: generate_id("flag"))
    event_id: str = Field(description="Identifier of the flagged event")
    note: str = Field(default="")
    timestamp: str = Field(default_factory=iso_now)


class SessionMetadata(BaseModel):
    """Environment captured when a session is created."""

    model_config = ConfigDict(extra='allow')

    user_agent: str = Field(default="")
    url: str = Field(default="")
    timestamp: str = Field(default_factory=iso_now)


class SessionStats(BaseModel):
    """Aggregated counters derived from a session record."""

    event_count: int = 0
    error_count: int = 0
    screenshot_count: int = 0
    flag_count: int = 0
    duration_ms: int = 0


class SessionRecord(BaseModel):
    """Unit of an exploratory testing session."""

    id: str = Field(default_factory=lambda: generate_id("session"))
    name: str = Field(default="", validate_default=True)
    description: str = Field(default="")
    status: SessionStatus = Field(default=SessionStatus.ACTIVE)
    start_time: Optional[datetime] = Field(default_factory=utc_now)
    end_time: Optional[datetime] = Field(default=None)
    events: List[EventRecord] = Field(default_factory=list)
    screenshots: List[ScreenshotRecord] = Field(default_factory=list)
    flags: List[FlagRecord] = Field(default_factory=list)
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)

    @field_validator('start_time', 'end_time', mode='before')
    @classmethod
    def coerce_dates(cls, v):
        """Malformed persisted dates become None."""
        return coerce_timestamp(v)

    @field_validator('name')
    @classmethod
    def default_name(cls, v):
        if not v:
            return f"Session {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        return v

    @property
    def is_open(self) -> bool:
        return self.status.is_open

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def error_count(self) -> int:
        return sum(1 for event in self.events if event.is_error)

    def duration_ms(self, now: Optional[datetime] = None) -> int:
        """Elapsed milliseconds from start to end (or to ``now`` while open)."""
        if self.start_time is None:
            return 0
        end = self.end_time or now or utc_now()
        return max(0, int((end - self.start_time).total_seconds() * 1000))

    def stats(self, now: Optional[datetime] = None) -> SessionStats:
        """Compute aggregated counters."""
        return SessionStats(
            event_count=len(self.events),
            error_count=self.error_count,
            screenshot_count=len(self.screenshots),
            flag_count=len(self.flags),
            duration_ms=self.duration_ms(now),
        )

    def find_event(self, event_id: str) -> Optional[EventRecord]:
        for event in self.events:
            if event.id == event_id:
                return event
        return None

    def to_store(self) -> Dict[str, Any]:
        """Serialize to the JSON-compatible form kept in the shared store."""
        return self.model_dump(mode="json")

    @classmethod
    def from_store(cls, data: Dict[str, Any]) -> 'SessionRecord':
        """Rebuild a record from its stored form."""
        return cls.model_validate(data)
