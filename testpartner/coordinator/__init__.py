"""Background coordinator and its command surface."""

from .background import BackgroundCoordinator, format_timestamp
from .commands import CommandRequest, CommandResponse, CommandType
from .report import render_markdown_report

__all__ = [
    "BackgroundCoordinator",
    "CommandRequest",
    "CommandResponse",
    "CommandType",
    "format_timestamp",
    "render_markdown_report",
]
