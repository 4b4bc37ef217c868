"""Buffered event and log collector for one page context.

The collector admits DOM events and intercepted console, network and error
observations into a bounded in-memory buffer and pushes them to the session
state machine in batches: when the buffer reaches capacity, on a periodic
timer, on page unload and when collection stops.

Tracking and ``record_*`` calls are synchronous and never block beyond a
buffer append, so they are safe to call from hooks running inside host code
(including other threads).
"""

import asyncio
import logging
import random
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from ..errors import StoreError
from ..models.session import (
    EventRecord,
    EventType,
    LogKind,
    LogLevel,
    LogRecord,
)
from .hooks import InterceptionHook
from .policy import CapturePolicy, get_policy, is_important_element, is_important_key

logger = logging.getLogger(__name__)


BufferedRecord = Union[EventRecord, LogRecord]


def generate_selector(target: Dict[str, Any]) -> str:
    """Build a short CSS selector for an element descriptor."""
    if target.get('id'):
        return f"#{target['id']}"
    class_name = str(target.get('className') or '').strip()
    if class_name:
        return '.' + '.'.join(class_name.split())
    return str(target.get('tagName') or 'unknown').lower()


def describe_element(target: Optional[Dict[str, Any]], text_limit: int = 100) -> Dict[str, Any]:
    """Reduce a DOM element descriptor to the fields kept in an event."""
    if not target:
        return {}
    text = str(target.get('textContent') or '').strip()
    description = {
        'tagName': target.get('tagName'),
        'id': target.get('id') or None,
        'className': target.get('className') or None,
        'textContent': text[:text_limit] or None,
        'selector': generate_selector(target),
    }
    for name in ('href', 'type', 'name', 'role'):
        if target.get(name):
            description[name] = target[name]
    if target.get('value') is not None:
        description['value'] = str(target['value'])[:50]
    return description


def _stringify(arg: Any) -> str:
    if isinstance(arg, BaseException):
        return f"{arg.__class__.__name__}: {arg}"
    if isinstance(arg, str):
        return arg
    try:
        return repr(arg)
    except Exception:
        return f"<{type(arg).__name__}>"


class Collector:
    """Buffers captured observations and flushes them into the session."""

    def __init__(
        self,
        session_manager: Any,
        policy: Optional[CapturePolicy] = None,
        hooks: Optional[Iterable[InterceptionHook]] = None,
        page_url: Union[str, Callable[[], str]] = "",
        rng: Optional[random.Random] = None,
    ):
        """Initialize collector.

        Args:
            session_manager: Session state machine receiving flushed batches
            policy: Capture policy (``full`` preset when omitted)
            hooks: Interception hooks installed while collecting
            page_url: Current page URL, or a callable returning it
            rng: Random source for mouse-move sampling
        """
        self.session_manager = session_manager
        self.policy = policy or get_policy("full")
        self.hooks: List[InterceptionHook] = list(hooks or [])
        self._page_url = page_url
        self._rng = rng or random.Random()

        self._buffer: List[BufferedRecord] = []
        self._buffer_lock = threading.Lock()
        self._collecting = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._push_lock: Optional[asyncio.Lock] = None
        self._flush_timer: Optional[asyncio.Task] = None
        self._flush_tasks: Set[asyncio.Task] = set()
        self._last_click_ms = 0.0

        self.last_event: Optional[BufferedRecord] = None

        # Statistics
        self.admitted_count = 0
        self.filtered_count = 0
        self.flushed_count = 0
        self.flush_count = 0
        self.failed_flush_count = 0
        self.dropped_count = 0

    # Lifecycle

    @property
    def is_collecting(self) -> bool:
        return self._collecting

    async def start_collecting(self) -> None:
        """Install hooks and start the periodic flush timer. Idempotent."""
        if self._collecting:
            return

        self._loop = asyncio.get_running_loop()
        self._push_lock = asyncio.Lock()
        self._collecting = True

        for hook in self.hooks:
            try:
                hook.install(self)
            except Exception as e:
                logger.error(f"Failed to install {hook.name} hook: {e}")

        self._flush_timer = self._loop.create_task(self._flush_loop())
        logger.info(f"Collector started with '{self.policy.name}' policy")

    async def stop_collecting(self) -> None:
        """Stop admission, restore hooks and flush whatever is buffered.

        Safe to call at any time, including while a flush is in flight.
        """
        if not self._collecting and self._flush_timer is None:
            return

        self._collecting = False

        for hook in reversed(self.hooks):
            try:
                hook.restore()
            except Exception as e:
                logger.error(f"Failed to restore {hook.name} hook: {e}")

        if self._flush_timer is not None:
            self._flush_timer.cancel()
            try:
                await self._flush_timer
            except asyncio.CancelledError:
                pass
            self._flush_timer = None

        if self._flush_tasks:
            results = await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Background flush failed: {result}")

        await self.flush()
        logger.info(f"Collector stopped ({self.flushed_count} records flushed)")

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.policy.flush_interval)
            if self.buffered_count:
                # The flush runs as its own task so that cancelling the
                # timer never interrupts a push half way through
                await asyncio.shield(self._spawn(self.flush()))

    # Flushing

    async def flush(self) -> int:
        """Push everything buffered to the session.

        Returns:
            Number of records pushed (0 when empty or when the push failed)
        """
        batch = self._swap()
        if not batch:
            return 0
        return await self._push(batch)

    def _swap(self) -> List[BufferedRecord]:
        with self._buffer_lock:
            batch, self._buffer = self._buffer, []
        return batch

    async def _push(self, batch: List[BufferedRecord]) -> int:
        events = [
            record.to_event() if isinstance(record, LogRecord) else record
            for record in batch
        ]
        lock = self._push_lock or asyncio.Lock()
        async with lock:
            try:
                appended = await self.session_manager.add_events(events)
            except StoreError as e:
                self.failed_flush_count += 1
                self._rebuffer(batch)
                logger.warning(f"Flush of {len(batch)} records failed, kept for retry: {e}")
                return 0

        # Appends are dropped while the session is paused or closed
        rejected = len(batch) - appended
        if rejected > 0:
            self.dropped_count += rejected
            logger.warning(f"Session not active, dropped {rejected} of {len(batch)} flushed records")
        if appended:
            self.flush_count += 1
            self.flushed_count += appended
            logger.debug(f"Flushed {appended} records")
        return appended

    def _rebuffer(self, batch: List[BufferedRecord]) -> None:
        """Put a failed batch back in front of newer records, within capacity."""
        with self._buffer_lock:
            combined = batch + self._buffer
            overflow = len(combined) - self.policy.buffer_capacity
            if overflow > 0:
                combined = combined[overflow:]
                self.dropped_count += overflow
            self._buffer = combined
        if overflow > 0:
            logger.warning(f"Buffer over capacity after failed flush, dropped {overflow} oldest records")

    def _spawn(self, coro) -> asyncio.Task:
        task = self._loop.create_task(coro)
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)
        return task

    def _schedule_push(self, batch: List[BufferedRecord]) -> None:
        if self._loop is None or self._loop.is_closed():
            self._rebuffer(batch)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._spawn(self._push(batch))
        else:
            self._loop.call_soon_threadsafe(lambda: self._spawn(self._push(batch)))

    def _schedule_flush(self) -> None:
        batch = self._swap()
        if batch:
            self._schedule_push(batch)

    # Admission

    def _admit(self, record: BufferedRecord) -> Optional[BufferedRecord]:
        if not self._collecting:
            return None

        batch = None
        with self._buffer_lock:
            self._buffer.append(record)
            self.admitted_count += 1
            self.last_event = record
            if len(self._buffer) >= self.policy.buffer_capacity:
                batch, self._buffer = self._buffer, []

        if batch:
            self._schedule_push(batch)
        return record

    def _filtered(self) -> None:
        self.filtered_count += 1
        return None

    @property
    def page_url(self) -> str:
        return self._page_url() if callable(self._page_url) else self._page_url

    def _event(self, event_type: EventType, data: Dict[str, Any]) -> EventRecord:
        data.setdefault('url', self.page_url)
        return EventRecord(type=event_type, data=data)

    # DOM tracking

    def track_click(
        self,
        x: int,
        y: int,
        target: Optional[Dict[str, Any]] = None,
        button: int = 0,
        viewport: Optional[Dict[str, int]] = None,
    ) -> Optional[EventRecord]:
        """Record a click; returns the event or None when not admitted."""
        if not self._collecting or not self.policy.capture_dom_events:
            return None

        if self.policy.click_throttle_ms:
            now_ms = time.monotonic() * 1000
            if now_ms - self._last_click_ms < self.policy.click_throttle_ms:
                return self._filtered()
            self._last_click_ms = now_ms

        if self.policy.important_targets_only and not is_important_element(target):
            return self._filtered()

        data = {
            'x': x,
            'y': y,
            'button': button,
            'target': describe_element(target, self.policy.text_limit),
        }
        if viewport:
            data['viewport'] = viewport
        return self._admit(self._event(EventType.CLICK, data))

    def track_keydown(
        self,
        key: str,
        code: str = "",
        ctrl_key: bool = False,
        shift_key: bool = False,
        alt_key: bool = False,
        meta_key: bool = False,
        target: Optional[Dict[str, Any]] = None,
    ) -> Optional[EventRecord]:
        if not self._collecting or not self.policy.capture_dom_events:
            return None
        if self.policy.important_keys_only and not is_important_key(key, ctrl_key, shift_key, alt_key, meta_key):
            return self._filtered()

        data = {
            'key': key,
            'code': code,
            'ctrlKey': ctrl_key,
            'shiftKey': shift_key,
            'altKey': alt_key,
            'metaKey': meta_key,
            'target': describe_element(target, self.policy.text_limit),
        }
        return self._admit(self._event(EventType.KEYDOWN, data))

    def track_mouse_move(self, x: int, y: int) -> Optional[EventRecord]:
        """Record a pointer position, sampled at the policy's rate."""
        if not self._collecting or not self.policy.capture_dom_events:
            return None
        if self._rng.random() >= self.policy.mouse_move_sample_rate:
            return self._filtered()
        return self._admit(self._event(EventType.MOUSE_MOVE, {'x': x, 'y': y}))

    def track_focus(self, target: Optional[Dict[str, Any]] = None) -> Optional[EventRecord]:
        if not self._collecting or not self.policy.capture_dom_events:
            return None
        data = {'target': describe_element(target, self.policy.text_limit)}
        return self._admit(self._event(EventType.FOCUS, data))

    def track_page_load(self, title: str = "", referrer: str = "", load_time_ms: Optional[float] = None) -> Optional[EventRecord]:
        if not self._collecting:
            return None
        data = {'title': title, 'referrer': referrer, 'loadTime': load_time_ms}
        return self._admit(self._event(EventType.PAGE_LOAD, data))

    def track_page_unload(self) -> Optional[EventRecord]:
        """Record the page going away and flush immediately."""
        if not self._collecting:
            return None
        event = self._admit(self._event(EventType.PAGE_UNLOAD, {}))
        self._schedule_flush()
        return event

    def track_custom(self, name: str, data: Optional[Dict[str, Any]] = None) -> Optional[EventRecord]:
        if not self._collecting:
            return None
        payload = dict(data or {})
        payload['name'] = name
        return self._admit(self._event(EventType.CUSTOM, payload))

    # Intercepted observations

    def record_console(self, level: Union[LogLevel, str], args: Iterable[Any], stack: Optional[str] = None) -> Optional[LogRecord]:
        """Record a console call observed by a hook."""
        if not self._collecting:
            return None
        try:
            level = LogLevel(getattr(level, 'value', level))
        except ValueError:
            level = LogLevel.WARN if str(level).lower() == 'warning' else LogLevel.LOG
        if not self.policy.admits_console(level):
            return self._filtered()

        rendered = [_stringify(arg) for arg in args]
        record = LogRecord(
            level=level,
            message=' '.join(rendered),
            args=rendered,
            url=self.page_url,
            stack=stack or "",
            metadata={'kind': LogKind.CONSOLE.value},
        )
        return self._admit(record)

    def record_network(
        self,
        method: str,
        url: str,
        status: int,
        status_text: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> Optional[LogRecord]:
        """Record an outbound request observed by a hook."""
        if not self._collecting:
            return None
        if not self.policy.admits_network(success):
            return self._filtered()

        metadata = {
            'kind': LogKind.NETWORK.value,
            'method': method,
            'requestUrl': url,
            'status': status,
            'statusText': status_text,
            'duration': round(duration_ms, 2),
            'success': success,
        }
        if error:
            metadata['error'] = error
            message = f"{method} {url} - Network Error: {error}"
        else:
            message = f"{method} {url} - {status} {status_text}".rstrip()

        record = LogRecord(
            level=LogLevel.INFO if success else LogLevel.ERROR,
            message=message,
            url=self.page_url,
            metadata=metadata,
        )
        return self._admit(record)

    def record_error(
        self,
        message: str,
        error_type: str = "Uncaught Exception",
        filename: Optional[str] = None,
        lineno: Optional[int] = None,
        colno: Optional[int] = None,
        stack: str = "",
    ) -> Optional[LogRecord]:
        """Record an uncaught error observed by a hook."""
        if not self._collecting:
            return None
        if not self.policy.capture_errors:
            return self._filtered()

        record = LogRecord(
            level=LogLevel.ERROR,
            message=f"{error_type}: {message}",
            url=self.page_url,
            stack=stack or "",
            metadata={
                'kind': LogKind.ERROR.value,
                'type': error_type,
                'filename': filename,
                'lineno': lineno,
                'colno': colno,
            },
        )
        return self._admit(record)

    # Flags and buffer access

    async def flag_event(self, event_id: str, note: str = "") -> Optional[str]:
        """Flag an event of the current session."""
        return await self.session_manager.add_flag(event_id, note)

    async def flag_last_event(self, note: str = "") -> Optional[str]:
        """Flag the most recently admitted record, if any."""
        if self.last_event is None:
            logger.debug("No captured event to flag")
            return None
        return await self.flag_event(self.last_event.id, note)

    @property
    def buffered_count(self) -> int:
        return len(self._buffer)

    def get_buffer(self) -> List[BufferedRecord]:
        """Snapshot of the records waiting to be flushed."""
        with self._buffer_lock:
            return list(self._buffer)

    def clear_buffer(self) -> int:
        """Discard buffered records without flushing them."""
        discarded = len(self._swap())
        if discarded:
            logger.debug(f"Discarded {discarded} buffered records")
        return discarded

    def get_stats(self) -> Dict[str, Any]:
        """Get collector statistics."""
        return {
            'policy': self.policy.name,
            'collecting': self._collecting,
            'buffered': self.buffered_count,
            'admitted': self.admitted_count,
            'filtered': self.filtered_count,
            'flushed': self.flushed_count,
            'flushes': self.flush_count,
            'failed_flushes': self.failed_flush_count,
            'dropped': self.dropped_count,
            'in_flight': len(self._flush_tasks),
        }

    def __repr__(self) -> str:
        return (
            f"Collector(policy={self.policy.name}, collecting={self._collecting}, "
            f"buffered={self.buffered_count})"
        )
