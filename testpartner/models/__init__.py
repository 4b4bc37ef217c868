"""Session and telemetry data models package."""

from .session import (
    SessionStatus,
    EventType,
    LogLevel,
    LogKind,
    EventRecord,
    LogRecord,
    ScreenshotRecord,
    FlagRecord,
    SessionMetadata,
    SessionStats,
    SessionRecord,
    generate_id,
    coerce_timestamp,
    iso_now,
    utc_now,
)

__all__ = [
    # Enums
    'SessionStatus',
    'EventType',
    'LogLevel',
    'LogKind',

    # Records
    'EventRecord',
    'LogRecord',
    'ScreenshotRecord',
    'FlagRecord',
    'SessionMetadata',
    'SessionStats',
    'SessionRecord',

    # Helpers
    'generate_id',
    'coerce_timestamp',
    'iso_now',
    'utc_now',
]
