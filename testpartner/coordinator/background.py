"""Background coordinator: the privileged context owning session lifecycle.

The coordinator is the only component that starts, stops, pauses or resumes
sessions. Every other context reaches it through ``handle(request)`` and
receives a ``CommandResponse``. Domain errors never escape ``handle``; they
become ``success=False`` responses carrying the error code.

Completed sessions are handed to the backend. A failed hand-off never rolls
back the local stop: the record is appended to a pending-upload backlog in
the shared store and can be resent with ``retry_pending_uploads``.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from ..errors import BackendError, NotFoundError, PartnerError, RemoteSyncError, StoreError
from ..models.session import SessionRecord, coerce_timestamp, utc_now
from ..store.base import PENDING_UPLOADS_KEY
from .commands import CommandRequest, CommandResponse, CommandType
from .report import render_markdown_report

logger = logging.getLogger(__name__)


ScreenshotProvider = Callable[[], Union[str, Awaitable[str]]]
Handler = Callable[[CommandRequest], Awaitable[CommandResponse]]


def format_timestamp(value: Any) -> Optional[str]:
    """Normalise a persisted timestamp to ISO-8601, or None when unusable."""
    parsed = coerce_timestamp(value)
    return parsed.isoformat() if parsed else None


class BackgroundCoordinator:
    """Serves lifecycle, query and capture commands for all contexts."""

    def __init__(
        self,
        session_manager: Any,
        backend: Any = None,
        screenshot_provider: Optional[ScreenshotProvider] = None,
        pending_store_key: str = PENDING_UPLOADS_KEY,
        max_pending_uploads: int = 50,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize coordinator.

        Args:
            session_manager: Session state machine
            backend: Client with an async ``save_session(record)`` method
            screenshot_provider: Callable returning encoded screenshot data
            pending_store_key: Store key of the pending-upload backlog
            max_pending_uploads: Backlog size before the oldest entries are dropped
            clock: Time source used for reports
        """
        self.session_manager = session_manager
        self.backend = backend
        self.screenshot_provider = screenshot_provider
        self.pending_store_key = pending_store_key
        self.max_pending_uploads = max_pending_uploads
        self.clock = clock

        self._handlers: Dict[CommandType, Handler] = {
            CommandType.START_SESSION: self._handle_start,
            CommandType.STOP_SESSION: self._handle_stop,
            CommandType.TOGGLE_SESSION: self._handle_toggle,
            CommandType.PAUSE_SESSION: self._handle_pause,
            CommandType.RESUME_SESSION: self._handle_resume,
            CommandType.CANCEL_SESSION: self._handle_cancel,
            CommandType.GET_SESSION_STATUS: self._handle_status,
            CommandType.GET_STATS: self._handle_stats,
            CommandType.EXPORT_REPORT: self._handle_export_report,
            CommandType.TAKE_SCREENSHOT: self._handle_screenshot,
            CommandType.FLAG_EVENT: self._handle_flag_event,
            CommandType.ADD_LOG: self._handle_add_log,
            CommandType.ADD_EVENT: self._handle_add_event,
            CommandType.CLEAR_SESSION: self._handle_clear,
            CommandType.RETRY_PENDING_UPLOADS: self._handle_retry_uploads,
        }

    @property
    def store(self):
        return self.session_manager.store

    async def handle(self, request: Union[CommandRequest, Dict[str, Any]]) -> CommandResponse:
        """Dispatch a command.

        Args:
            request: CommandRequest, or a mapping with a ``type`` key and
                either a ``payload`` mapping or top-level payload fields

        Returns:
            Command response; never raises for domain errors
        """
        if isinstance(request, dict):
            request = self._parse_request(request)

        handler = self._handlers.get(request.command)
        if handler is None:
            logger.warning(f"Unknown message type: {request.type}")
            return CommandResponse.fail("Unknown message type", code="unknown_command")

        logger.debug(f"Handling {request.type}")
        try:
            return await handler(request)
        except PartnerError as e:
            logger.warning(f"{request.type} failed: {e.message}")
            return CommandResponse.from_error(e)
        except ValidationError as e:
            logger.warning(f"{request.type} rejected invalid payload: {e}")
            return CommandResponse.fail(f"Invalid payload: {e.error_count()} validation errors", code="invalid_request")

    @staticmethod
    def _parse_request(data: Dict[str, Any]) -> CommandRequest:
        payload = dict(data.get('payload') or {})
        payload.update({k: v for k, v in data.items() if k not in ('type', 'payload')})
        return CommandRequest(type=data.get('type', ''), payload=payload)

    # Lifecycle

    async def _handle_start(self, request: CommandRequest) -> CommandResponse:
        session_id = await self.session_manager.start(
            name=request.get('name'),
            description=request.get('description'),
        )
        return CommandResponse.ok(session_id=session_id, is_active=True)

    async def _handle_stop(self, request: CommandRequest) -> CommandResponse:
        return await self._stop()

    async def _stop(self) -> CommandResponse:
        record = await self.session_manager.stop()
        synced = await self.sync_completed(record)
        return CommandResponse.ok(
            session_data=self._format_session(record),
            is_active=False,
            synced=synced,
        )

    async def _handle_toggle(self, request: CommandRequest) -> CommandResponse:
        current = await self.session_manager.get_current_session()
        if current is not None and current.is_open:
            return await self._stop()
        return await self._handle_start(request)

    async def _handle_pause(self, request: CommandRequest) -> CommandResponse:
        await self.session_manager.pause()
        return CommandResponse.ok(is_active=False, status="paused")

    async def _handle_resume(self, request: CommandRequest) -> CommandResponse:
        await self.session_manager.resume()
        return CommandResponse.ok(is_active=True, status="active")

    async def _handle_cancel(self, request: CommandRequest) -> CommandResponse:
        record = await self.session_manager.cancel()
        return CommandResponse.ok(session_data=self._format_session(record), is_active=False)

    # Queries

    async def _handle_status(self, request: CommandRequest) -> CommandResponse:
        record = await self.session_manager.get_current_session()
        return CommandResponse.ok(
            is_active=bool(record and record.is_active),
            status=record.status.value if record else None,
            session_data=self._format_session(record),
        )

    async def _handle_stats(self, request: CommandRequest) -> CommandResponse:
        record = await self.session_manager.get_current_session()
        if record is None:
            stats = self._empty_stats()
        else:
            stats = record.stats(now=self.clock()).model_dump()
            stats.update({
                'session_id': record.id,
                'session_name': record.name,
                'session_status': record.status.value,
                'start_time': format_timestamp(record.start_time),
            })
        return CommandResponse.ok(stats=stats)

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            'event_count': 0,
            'error_count': 0,
            'screenshot_count': 0,
            'flag_count': 0,
            'duration_ms': 0,
        }

    async def _handle_export_report(self, request: CommandRequest) -> CommandResponse:
        record = await self.session_manager.get_current_session()
        if record is None:
            raise NotFoundError("No session to report on")
        report = render_markdown_report(record, generated_at=self.clock())
        return CommandResponse.ok(report=report, filename=f"report_{record.id}.md")

    def _format_session(self, record: Optional[SessionRecord]) -> Optional[Dict[str, Any]]:
        """Serialize a session with every timestamp normalised."""
        if record is None:
            return None
        data = record.to_store()
        for name in ('start_time', 'end_time', 'created_at', 'updated_at'):
            if name in data:
                data[name] = format_timestamp(data[name])
        metadata = data.get('metadata') or {}
        if 'timestamp' in metadata:
            metadata['timestamp'] = format_timestamp(metadata['timestamp'])
        return data

    # Capture

    async def _handle_screenshot(self, request: CommandRequest) -> CommandResponse:
        if self.screenshot_provider is None:
            return CommandResponse.fail("Screenshots are not available", code="unsupported")

        try:
            data = self.screenshot_provider()
            if asyncio.iscoroutine(data):
                data = await data
        except PartnerError:
            raise
        except Exception as e:
            logger.error(f"Screenshot provider failed: {e}")
            return CommandResponse.fail(f"Screenshot failed: {e}", code="screenshot_failed")

        screenshot_id = await self.session_manager.add_screenshot(data, url=request.get('url'))
        if screenshot_id is None:
            raise NotFoundError("No active session to attach the screenshot to")
        return CommandResponse.ok(screenshot_id=screenshot_id, data_url=data)

    async def _handle_flag_event(self, request: CommandRequest) -> CommandResponse:
        event_id = request.get('event_id')
        if not event_id:
            return CommandResponse.fail("event_id is required", code="invalid_request")
        flag_id = await self.session_manager.add_flag(event_id, request.get('note', ''))
        if flag_id is None:
            raise NotFoundError("No active session to flag")
        return CommandResponse.ok(flag_id=flag_id)

    async def _handle_add_log(self, request: CommandRequest) -> CommandResponse:
        log = request.get('log')
        if not isinstance(log, dict):
            return CommandResponse.fail("log is required", code="invalid_request")
        event_id = await self.session_manager.add_log(log)
        return CommandResponse.ok(event_id=event_id, recorded=event_id is not None)

    async def _handle_add_event(self, request: CommandRequest) -> CommandResponse:
        event = request.get('event')
        if not isinstance(event, dict):
            return CommandResponse.fail("event is required", code="invalid_request")
        event_id = await self.session_manager.add_event(event)
        return CommandResponse.ok(event_id=event_id, recorded=event_id is not None)

    async def _handle_clear(self, request: CommandRequest) -> CommandResponse:
        if request.get('all'):
            await self.session_manager.clear_all_data()
        else:
            await self.session_manager.clear_session()
        return CommandResponse.ok()

    # Backend hand-off

    async def sync_completed(self, record: SessionRecord) -> bool:
        """Hand a completed session to the backend, queueing it on failure.

        Returns:
            True when the backend accepted the session
        """
        if self.backend is None:
            return False
        try:
            await self._upload(record)
        except RemoteSyncError as e:
            logger.error(f"Session {record.id} not synced, queued for retry: {e.message}")
            await self._enqueue_pending(record)
            return False
        logger.info(f"Session {record.id} saved to backend")
        return True

    async def _upload(self, record: SessionRecord) -> None:
        try:
            await self.backend.save_session(record)
        except BackendError as e:
            raise RemoteSyncError(
                f"Failed to hand off session {record.id}: {e.message}",
                status_code=e.status_code,
                details={'session_id': record.id},
            ) from e

    async def _enqueue_pending(self, record: SessionRecord) -> None:
        entry = record.to_store()

        def mutator(current):
            pending = [
                item for item in (current or [])
                if isinstance(item, dict) and item.get('id') != record.id
            ]
            pending.append(entry)
            overflow = len(pending) - self.max_pending_uploads
            if overflow > 0:
                logger.warning(f"Pending upload backlog full, dropping {overflow} oldest sessions")
                pending = pending[overflow:]
            return pending

        try:
            await self.store.update(self.pending_store_key, mutator)
        except StoreError as e:
            logger.error(f"Failed to queue session {record.id} for upload: {e}")

    async def get_pending_uploads(self) -> List[Dict[str, Any]]:
        return list(await self.store.get(self.pending_store_key) or [])

    async def retry_pending_uploads(self) -> Dict[str, Any]:
        """Resend every queued session.

        Returns:
            Dictionary with ``sent`` and ``remaining`` counts
        """
        pending = await self.get_pending_uploads()
        if not pending or self.backend is None:
            return {'sent': 0, 'remaining': len(pending)}

        sent_ids = set()
        dropped_ids = set()
        for item in pending:
            if not isinstance(item, dict):
                logger.error(f"Dropping malformed pending upload: {item!r}")
                continue
            try:
                record = SessionRecord.from_store(item)
            except ValidationError as e:
                logger.error(f"Dropping malformed pending upload: {e}")
                dropped_ids.add(item.get('id'))
                continue
            try:
                await self._upload(record)
            except RemoteSyncError as e:
                logger.warning(f"Retry failed: {e.message}")
                continue
            sent_ids.add(record.id)

        def mutator(current):
            return [
                item for item in (current or [])
                if isinstance(item, dict) and item.get('id') not in sent_ids | dropped_ids
            ]

        remaining = await self.store.update(self.pending_store_key, mutator)
        sent = len(sent_ids)
        logger.info(f"Pending uploads retried: {sent} sent, {len(remaining)} remaining")
        return {'sent': sent, 'remaining': len(remaining)}

    async def _handle_retry_uploads(self, request: CommandRequest) -> CommandResponse:
        result = await self.retry_pending_uploads()
        return CommandResponse.ok(**result)

    def __repr__(self) -> str:
        return f"BackgroundCoordinator(backend={self.backend is not None})"
