"""Session state machine backed by the shared store.

The store is the authority for session state. Every query re-reads it, and
every mutation is an atomic read-modify-write through ``SharedStore.update``
so that a context appending telemetry can never resurrect a session another
context has just stopped.

Transitions:
    active  -> paused, completed, cancelled
    paused  -> active, completed, cancelled
    completed, cancelled: terminal (retained until cleared)
"""

import logging
import platform
from typing import Any, Callable, Dict, Iterable, Optional, Union

from pydantic import ValidationError

from ..errors import ConflictError, InvalidStateError, NotFoundError
from ..models.session import (
    EventRecord,
    FlagRecord,
    LogRecord,
    ScreenshotRecord,
    SessionMetadata,
    SessionRecord,
    SessionStats,
    SessionStatus,
    generate_id,
    iso_now,
    utc_now,
)
from ..store.base import LEGACY_LOGS_KEY, NO_CHANGE, SESSION_KEY, SharedStore

logger = logging.getLogger(__name__)


DEFAULT_USER_AGENT = f"testpartner (Python {platform.python_version()})"

EventLike = Union[EventRecord, Dict[str, Any]]


class SessionManager:
    """Owns the current session record of one execution context."""

    def __init__(
        self,
        store: SharedStore,
        session_key: str = SESSION_KEY,
        context_name: str = "background",
        user_agent: str = DEFAULT_USER_AGENT,
        origin_url: str = "",
    ):
        """Initialize session manager.

        Args:
            store: Shared store holding the session record
            session_key: Key of the current-session record
            context_name: Label of the owning context, used in logs
            user_agent: User agent recorded in new session metadata
            origin_url: Origin recorded in new session metadata
        """
        self.store = store
        self.session_key = session_key
        self.context_name = context_name
        self.user_agent = user_agent
        self.origin_url = origin_url

        # Local copy of the last record this context read or wrote
        self._current: Optional[SessionRecord] = None

    # Lifecycle

    async def start(self, name: Optional[str] = None, description: Optional[str] = None) -> str:
        """Start a new session.

        Args:
            name: Session name (defaults to a timestamped name)
            description: Free-text description

        Returns:
            Identifier of the new session

        Raises:
            ConflictError: If an active or paused session already exists
        """
        now = utc_now()
        record = SessionRecord(
            name=name or "",
            description=description or "",
            status=SessionStatus.ACTIVE,
            start_time=now,
            metadata=SessionMetadata(
                user_agent=self.user_agent,
                url=self.origin_url,
                timestamp=now.isoformat(),
            ),
        )

        def mutator(current):
            existing = self._parse_record(current)
            if existing is not None and existing.is_open:
                raise ConflictError(
                    f"Session {existing.id} is already {existing.status.value}",
                    details={'session_id': existing.id, 'status': existing.status.value}
                )
            return record.to_store()

        stored = await self.store.update(self.session_key, mutator)
        self._current = SessionRecord.from_store(stored)
        logger.info(f"[{self.context_name}] Session started: {record.id}")
        return record.id

    async def stop(self) -> SessionRecord:
        """Complete the open session.

        Stopping is legal from both active and paused sessions.

        Returns:
            Detached copy of the completed record

        Raises:
            NotFoundError: If no open session exists
        """
        completed = await self._finish(SessionStatus.COMPLETED, "stop")
        logger.info(f"[{self.context_name}] Session stopped: {completed.id} ({len(completed.events)} events)")
        return completed

    async def cancel(self) -> SessionRecord:
        """Cancel the open session.

        Raises:
            NotFoundError: If no open session exists
        """
        cancelled = await self._finish(SessionStatus.CANCELLED, "cancel")
        logger.info(f"[{self.context_name}] Session cancelled: {cancelled.id}")
        return cancelled

    async def pause(self) -> None:
        """Pause the active session.

        Raises:
            InvalidStateError: If there is no active session
        """
        await self._transition(SessionStatus.ACTIVE, SessionStatus.PAUSED, "No active session to pause")
        logger.info(f"[{self.context_name}] Session paused")

    async def resume(self) -> None:
        """Resume the paused session.

        Raises:
            InvalidStateError: If there is no paused session
        """
        await self._transition(SessionStatus.PAUSED, SessionStatus.ACTIVE, "No paused session to resume")
        logger.info(f"[{self.context_name}] Session resumed")

    async def rename(self, name: Optional[str] = None, description: Optional[str] = None) -> SessionRecord:
        """Change name or description of the open session.

        Raises:
            NotFoundError: If no session exists
            InvalidStateError: If the session is already completed or cancelled
        """
        def mutator(current):
            record = self._parse_record(current)
            if record is None:
                raise NotFoundError("No session to rename")
            if not record.is_open:
                raise InvalidStateError(
                    f"Session {record.id} is {record.status.value} and can no longer be renamed",
                    details={'status': record.status.value}
                )
            if name is not None:
                record.name = name
            if description is not None:
                record.description = description
            return record.to_store()

        stored = await self.store.update(self.session_key, mutator)
        self._current = SessionRecord.from_store(stored)
        return self._current.model_copy(deep=True)

    async def _finish(self, status: SessionStatus, verb: str) -> SessionRecord:
        def mutator(current):
            record = self._parse_record(current)
            if record is None or not record.is_open:
                raise NotFoundError(
                    f"No active session to {verb}",
                    details={'status': record.status.value if record else None}
                )
            record.status = status
            record.end_time = utc_now()
            return record.to_store()

        stored = await self.store.update(self.session_key, mutator)
        finished = SessionRecord.from_store(stored)
        self._current = None
        return finished

    async def _transition(self, required: SessionStatus, target: SessionStatus, message: str) -> None:
        def mutator(current):
            record = self._parse_record(current)
            if record is None or record.status != required:
                raise InvalidStateError(
                    message,
                    details={'status': record.status.value if record else None}
                )
            record.status = target
            return record.to_store()

        stored = await self.store.update(self.session_key, mutator)
        self._current = SessionRecord.from_store(stored)

    # Queries

    async def is_active(self) -> bool:
        """Check whether the stored session is active, re-reading the store."""
        record = await self._load()
        return record is not None and record.is_active

    async def get_current_session(self) -> Optional[SessionRecord]:
        """Get a detached copy of the stored session, if any."""
        record = await self._load()
        return record.model_copy(deep=True) if record else None

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        """Get the stored session if it has the given identifier."""
        record = await self.get_current_session()
        if record is not None and record.id == session_id:
            return record
        return None

    async def get_stats(self) -> SessionStats:
        """Compute statistics for the stored session (zeros when absent)."""
        record = await self._load()
        if record is None:
            return SessionStats()
        return record.stats()

    @property
    def cached_session(self) -> Optional[SessionRecord]:
        """Last record seen by this context, without touching the store."""
        return self._current

    # Appends

    async def add_event(self, event: EventLike) -> Optional[str]:
        """Append one event to the active session.

        Silently dropped when no session is active.

        Returns:
            Event identifier, or None when dropped
        """
        record = self._coerce_event(event)
        appended = await self.add_events([record])
        return record.id if appended else None

    async def add_events(self, events: Iterable[EventLike]) -> int:
        """Append events in order with a single store write.

        Silently dropped when no session is active.

        Returns:
            Number of events appended (0 when dropped)

        Raises:
            StoreError: If the store write fails
        """
        records = [self._coerce_event(event) for event in events]
        if not records:
            return 0

        def append(record: SessionRecord) -> None:
            record.events.extend(records)

        if await self._append(append):
            logger.debug(f"[{self.context_name}] Appended {len(records)} events")
            return len(records)

        logger.debug(f"[{self.context_name}] Session not active, dropped {len(records)} events")
        return 0

    async def add_log(self, log: Union[LogRecord, Dict[str, Any]]) -> Optional[str]:
        """Append a collector log record as an event."""
        if isinstance(log, dict):
            log = LogRecord.model_validate(log)
        return await self.add_event(log.to_event())

    async def add_screenshot(self, data: str, url: Optional[str] = None) -> Optional[str]:
        """Attach a screenshot to the active session.

        Returns:
            Screenshot identifier, or None when no session is active
        """
        screenshot = ScreenshotRecord(data=data, url=url or self.origin_url)

        def append(record: SessionRecord) -> None:
            record.screenshots.append(screenshot)

        return screenshot.id if await self._append(append) else None

    async def add_flag(self, event_id: str, note: str = "") -> Optional[str]:
        """Flag a previously captured event.

        Returns:
            Flag identifier, or None when no session is active
        """
        flag = FlagRecord(event_id=event_id, note=note)

        def append(record: SessionRecord) -> None:
            record.flags.append(flag)

        return flag.id if await self._append(append) else None

    async def _append(self, apply: Callable[[SessionRecord], None]) -> bool:
        appended = False

        def mutator(current):
            nonlocal appended
            record = self._parse_record(current)
            if record is None or not record.is_active:
                return NO_CHANGE
            apply(record)
            appended = True
            return record.to_store()

        stored = await self.store.update(self.session_key, mutator)
        if appended:
            self._current = SessionRecord.from_store(stored)
        return appended

    # Clearing

    async def clear_session(self) -> None:
        """Remove the session record from the store."""
        self._current = None
        await self.store.remove(self.session_key)
        logger.info(f"[{self.context_name}] Session cleared")

    async def clear_all_data(self) -> None:
        """Remove the session record and legacy log data."""
        self._current = None
        await self.store.remove([self.session_key, LEGACY_LOGS_KEY])
        logger.info(f"[{self.context_name}] All data cleared")

    # Helpers

    async def _load(self) -> Optional[SessionRecord]:
        raw = await self.store.get(self.session_key)
        self._current = self._parse_record(raw)
        return self._current

    def _parse_record(self, raw: Any) -> Optional[SessionRecord]:
        if raw is None:
            return None
        try:
            return SessionRecord.from_store(raw)
        except ValidationError as e:
            logger.error(f"[{self.context_name}] Ignoring malformed session record: {e}")
            return None

    @staticmethod
    def _coerce_event(event: EventLike) -> EventRecord:
        if isinstance(event, EventRecord):
            return event
        data = dict(event)
        data.setdefault('id', generate_id("event"))
        data.setdefault('timestamp', iso_now())
        return EventRecord.model_validate(data)

    def __repr__(self) -> str:
        current = self._current
        status = current.status.value if current else "none"
        return f"SessionManager(context={self.context_name}, status={status})"
