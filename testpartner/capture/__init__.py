"""Event and log capture for a page context.

Usage:
    from testpartner.capture import Collector, ConsoleHook, get_policy

    collector = Collector(session_manager, policy=get_policy("lightweight"),
                          hooks=[ConsoleHook(console)])
    await collector.start_collecting()
"""

from .collector import Collector, describe_element, generate_selector
from .hooks import (
    CaptureSink,
    ConsoleHook,
    ErrorHook,
    InterceptionHook,
    LoggingHook,
    RequestHook,
    build_hooks,
)
from .policy import (
    FULL,
    LIGHTWEIGHT,
    MINIMAL,
    OPTIMIZED,
    PRESETS,
    CapturePolicy,
    get_policy,
    is_important_element,
    is_important_key,
)

__all__ = [
    "Collector",
    "describe_element",
    "generate_selector",
    "CaptureSink",
    "InterceptionHook",
    "ConsoleHook",
    "LoggingHook",
    "RequestHook",
    "ErrorHook",
    "build_hooks",
    "CapturePolicy",
    "FULL",
    "OPTIMIZED",
    "LIGHTWEIGHT",
    "MINIMAL",
    "PRESETS",
    "get_policy",
    "is_important_element",
    "is_important_key",
]
