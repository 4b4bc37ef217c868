"""Page-context capture agent."""

from .controller import AgentCommand, CaptureAgent, IndicatorState, StatusIndicator, status_from_value

__all__ = [
    "AgentCommand",
    "CaptureAgent",
    "IndicatorState",
    "StatusIndicator",
    "status_from_value",
]
