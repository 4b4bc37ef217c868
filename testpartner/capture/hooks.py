"""Interception hooks installed by a collector.

Each hook is an explicit install/restore pair over something the host
provides: a console-like object, a logger, an outbound request callable, or
the process-wide error handlers. The original behavior is always forwarded
unchanged; the hook only reports what it saw to a capture sink.
"""

import asyncio
import inspect
import logging
import sys
import threading
import time
import traceback
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from ..models.session import LogLevel

logger = logging.getLogger(__name__)


class CaptureSink(Protocol):
    """Receiver of intercepted observations (implemented by Collector)."""

    def record_console(self, level: Any, args: Iterable[Any], stack: Optional[str] = None) -> Any: ...

    def record_network(
        self,
        method: str,
        url: str,
        status: int,
        status_text: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> Any: ...

    def record_error(
        self,
        message: str,
        error_type: str = "Uncaught Exception",
        filename: Optional[str] = None,
        lineno: Optional[int] = None,
        colno: Optional[int] = None,
        stack: str = "",
    ) -> Any: ...


class InterceptionHook(ABC):
    """Base class for install/restore interception points."""

    name = "hook"

    def __init__(self):
        self.installed = False
        self._sink: Optional[CaptureSink] = None

    @abstractmethod
    def install(self, sink: CaptureSink) -> None:
        """Start forwarding observations to ``sink``."""
        pass

    @abstractmethod
    def restore(self) -> None:
        """Put the original behavior back."""
        pass

    def _report(self, method: str, *args, **kwargs) -> None:
        """Forward to the sink without ever disturbing the host call."""
        if self._sink is None:
            return
        try:
            getattr(self._sink, method)(*args, **kwargs)
        except Exception as e:
            logger.debug(f"{self.name} hook failed to record observation: {e}")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(installed={self.installed})"


class ConsoleHook(InterceptionHook):
    """Wraps console-style methods (``log``, ``error``, ...) of a host object."""

    name = "console"

    def __init__(
        self,
        target: Any,
        levels: Optional[Iterable[LogLevel]] = None,
        method_names: Optional[Dict[LogLevel, str]] = None,
    ):
        """Initialize console hook.

        Args:
            target: Object exposing console methods
            levels: Levels to intercept (all when omitted)
            method_names: Method name per level when it differs from the level
        """
        super().__init__()
        self.target = target
        self.levels = list(levels) if levels is not None else list(LogLevel)
        self.method_names = method_names or {}
        self._originals: Dict[str, Any] = {}
        self._owned: Dict[str, bool] = {}

    def install(self, sink: CaptureSink) -> None:
        if self.installed:
            return
        self._sink = sink

        for level in self.levels:
            method_name = self.method_names.get(level, level.value)
            original = getattr(self.target, method_name, None)
            if original is None:
                continue
            self._originals[method_name] = original
            self._owned[method_name] = self._is_own_attribute(method_name)
            setattr(self.target, method_name, self._wrap(level, original))

        self.installed = True
        logger.debug(f"Console hook installed for {sorted(self._originals)}")

    def _wrap(self, level: LogLevel, original: Callable) -> Callable:
        def wrapper(*args, **kwargs):
            self._report('record_console', level, args)
            return original(*args, **kwargs)

        wrapper.__wrapped__ = original
        return wrapper

    def _is_own_attribute(self, name: str) -> bool:
        try:
            return name in vars(self.target)
        except TypeError:
            return True

    def restore(self) -> None:
        if not self.installed:
            return
        for method_name, original in self._originals.items():
            if self._owned.get(method_name, True):
                setattr(self.target, method_name, original)
            else:
                delattr(self.target, method_name)
        self._originals.clear()
        self._owned.clear()
        self._sink = None
        self.installed = False
        logger.debug("Console hook restored")


class _CaptureHandler(logging.Handler):
    """Logging handler forwarding records to a LoggingHook."""

    def __init__(self, hook: 'LoggingHook'):
        super().__init__(level=logging.NOTSET)
        self.hook = hook

    def emit(self, record: logging.LogRecord) -> None:
        self.hook._on_record(record)


class LoggingHook(InterceptionHook):
    """Observes a host ``logging.Logger`` as its console."""

    name = "logging"

    def __init__(self, target_logger: Optional[logging.Logger] = None, levels: Optional[Iterable[LogLevel]] = None):
        """Initialize logging hook.

        Args:
            target_logger: Logger to observe (root logger when omitted)
            levels: Console levels to report (all when omitted)
        """
        super().__init__()
        self.target_logger = target_logger or logging.getLogger()
        self.levels = set(levels) if levels is not None else set(LogLevel)
        self._handler = _CaptureHandler(self)
        self._local = threading.local()

    @staticmethod
    def to_console_level(levelno: int) -> LogLevel:
        if levelno >= logging.ERROR:
            return LogLevel.ERROR
        if levelno >= logging.WARNING:
            return LogLevel.WARN
        if levelno >= logging.INFO:
            return LogLevel.INFO
        return LogLevel.DEBUG

    def _on_record(self, record: logging.LogRecord) -> None:
        # Never observe our own diagnostics
        if record.name.startswith('testpartner') or getattr(self._local, 'busy', False):
            return

        level = self.to_console_level(record.levelno)
        if level not in self.levels:
            return

        self._local.busy = True
        try:
            stack = ""
            if record.exc_info:
                stack = ''.join(traceback.format_exception(*record.exc_info))
            self._report('record_console', level, [record.getMessage()], stack=stack)
        finally:
            self._local.busy = False

    def install(self, sink: CaptureSink) -> None:
        if self.installed:
            return
        self._sink = sink
        self.target_logger.addHandler(self._handler)
        self.installed = True
        logger.debug(f"Logging hook installed on '{self.target_logger.name}'")

    def restore(self) -> None:
        if not self.installed:
            return
        self.target_logger.removeHandler(self._handler)
        self._sink = None
        self.installed = False


class RequestHook(InterceptionHook):
    """Wraps an outbound request callable such as ``httpx.AsyncClient.send``."""

    name = "network"

    def __init__(self, target: Any, attribute: str = "send"):
        """Initialize request hook.

        Args:
            target: Object owning the request callable
            attribute: Name of the request callable on ``target``
        """
        super().__init__()
        self.target = target
        self.attribute = attribute
        self._original: Optional[Callable] = None
        self._owned = True

    @staticmethod
    def describe_request(request: Any) -> Dict[str, str]:
        return {
            'method': str(getattr(request, 'method', 'GET')).upper(),
            'url': str(getattr(request, 'url', request)),
        }

    @staticmethod
    def describe_response(response: Any) -> Dict[str, Any]:
        status = getattr(response, 'status_code', None)
        if status is None:
            status = getattr(response, 'status', 0) or 0
        status_text = getattr(response, 'reason_phrase', None) or getattr(response, 'reason', '') or ''
        return {
            'status': int(status),
            'status_text': str(status_text),
            'success': 200 <= int(status) < 400,
        }

    def _record(self, request: Any, started: float, response: Any = None, error: Optional[BaseException] = None) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        request_info = self.describe_request(request)
        if error is not None:
            self._report(
                'record_network',
                request_info['method'], request_info['url'],
                0, 'Network Error', duration_ms, False,
                error=str(error) or error.__class__.__name__,
            )
            return
        response_info = self.describe_response(response)
        self._report(
            'record_network',
            request_info['method'], request_info['url'],
            response_info['status'], response_info['status_text'],
            duration_ms, response_info['success'],
        )

    def install(self, sink: CaptureSink) -> None:
        if self.installed:
            return
        original = getattr(self.target, self.attribute)
        self._sink = sink
        self._original = original
        try:
            self._owned = self.attribute in vars(self.target)
        except TypeError:
            self._owned = True

        if inspect.iscoroutinefunction(original):
            async def wrapper(request, *args, **kwargs):
                started = time.perf_counter()
                try:
                    response = await original(request, *args, **kwargs)
                except Exception as e:
                    self._record(request, started, error=e)
                    raise
                self._record(request, started, response=response)
                return response
        else:
            def wrapper(request, *args, **kwargs):
                started = time.perf_counter()
                try:
                    response = original(request, *args, **kwargs)
                except Exception as e:
                    self._record(request, started, error=e)
                    raise
                self._record(request, started, response=response)
                return response

        wrapper.__wrapped__ = original
        setattr(self.target, self.attribute, wrapper)
        self.installed = True
        logger.debug(f"Request hook installed on '{self.attribute}'")

    def restore(self) -> None:
        if not self.installed:
            return
        if self._owned:
            setattr(self.target, self.attribute, self._original)
        else:
            delattr(self.target, self.attribute)
        self._original = None
        self._sink = None
        self.installed = False


class ErrorHook(InterceptionHook):
    """Chains the global uncaught-exception handlers.

    Covers ``sys.excepthook``, ``threading.excepthook`` and the event loop
    exception handler (exceptions of tasks nobody awaited).
    """

    name = "errors"

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        super().__init__()
        self.loop = loop
        self._original_excepthook = None
        self._original_thread_hook = None
        self._original_loop_handler = None

    @staticmethod
    def _location(tb) -> Dict[str, Any]:
        frames = traceback.extract_tb(tb) if tb is not None else []
        if not frames:
            return {'filename': None, 'lineno': None, 'colno': None}
        last = frames[-1]
        return {'filename': last.filename, 'lineno': last.lineno, 'colno': getattr(last, 'colno', None)}

    def _record_exception(self, exc_type, exc, tb, error_type: str) -> None:
        stack = ''.join(traceback.format_exception(exc_type, exc, tb))
        message = str(exc) or getattr(exc_type, '__name__', 'Exception')
        self._report('record_error', message, error_type=error_type, stack=stack, **self._location(tb))

    def install(self, sink: CaptureSink) -> None:
        if self.installed:
            return
        self._sink = sink
        if self.loop is None:
            self.loop = asyncio.get_running_loop()

        self._original_excepthook = sys.excepthook
        original_excepthook = self._original_excepthook

        def excepthook(exc_type, exc, tb):
            self._record_exception(exc_type, exc, tb, "Uncaught Exception")
            original_excepthook(exc_type, exc, tb)

        sys.excepthook = excepthook

        self._original_thread_hook = threading.excepthook
        original_thread_hook = self._original_thread_hook

        def thread_excepthook(args):
            self._record_exception(args.exc_type, args.exc_value, args.exc_traceback, "Uncaught Thread Exception")
            original_thread_hook(args)

        threading.excepthook = thread_excepthook

        self._original_loop_handler = self.loop.get_exception_handler()
        original_loop_handler = self._original_loop_handler

        def loop_handler(loop, context):
            exc = context.get('exception')
            if exc is not None:
                self._record_exception(type(exc), exc, exc.__traceback__, "Unhandled Task Exception")
            else:
                self._report('record_error', context.get('message', 'Unhandled event loop error'),
                             error_type="Unhandled Task Exception")
            if original_loop_handler is not None:
                original_loop_handler(loop, context)
            else:
                loop.default_exception_handler(context)

        self.loop.set_exception_handler(loop_handler)
        self.installed = True
        logger.debug("Error hook installed")

    def restore(self) -> None:
        if not self.installed:
            return
        sys.excepthook = self._original_excepthook
        threading.excepthook = self._original_thread_hook
        if self.loop is not None and not self.loop.is_closed():
            self.loop.set_exception_handler(self._original_loop_handler)
        self._original_excepthook = None
        self._original_thread_hook = None
        self._original_loop_handler = None
        self._sink = None
        self.installed = False


def build_hooks(
    policy: Any,
    console: Any = None,
    log_target: Optional[logging.Logger] = None,
    http_client: Any = None,
    capture_errors: Optional[bool] = None,
) -> List[InterceptionHook]:
    """Build the hooks a policy needs from what the host provides.

    Args:
        policy: CapturePolicy deciding which signal classes are intercepted
        console: Console-like object to wrap
        log_target: Logger to observe
        http_client: Object with a ``send`` request callable
        capture_errors: Override for the policy's error interception

    Returns:
        Hooks ready to be handed to a Collector
    """
    hooks: List[InterceptionHook] = []
    if policy.captures_console:
        if console is not None:
            hooks.append(ConsoleHook(console, levels=policy.console_levels))
        if log_target is not None:
            hooks.append(LoggingHook(log_target, levels=policy.console_levels))
    if policy.capture_network and http_client is not None:
        hooks.append(RequestHook(http_client))
    if policy.capture_errors if capture_errors is None else capture_errors:
        hooks.append(ErrorHook())
    return hooks
