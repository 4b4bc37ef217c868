"""Capture policies trading fidelity for overhead.

A single collector is parameterised by a ``CapturePolicy``. Four presets
cover the usual deployments:

- ``full``: every DOM event (mouse moves sampled), all console levels,
  every network call
- ``optimized``: only clicks on interactive targets and important keys,
  clicks throttled
- ``lightweight``: console errors/warnings and failed network calls only
- ``minimal``: console errors and uncaught errors only
"""

from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from ..models.session import LogLevel


IMPORTANT_TAGS = {'BUTTON', 'A', 'INPUT', 'SELECT', 'TEXTAREA', 'FORM'}
IMPORTANT_ROLES = {'button', 'link', 'textbox', 'combobox', 'checkbox', 'radio'}
IMPORTANT_KEYS = {
    'Enter', 'Escape', 'Tab', 'ArrowUp', 'ArrowDown', 'ArrowLeft', 'ArrowRight',
    'Space', ' ', 'Backspace', 'Delete',
    'F1', 'F2', 'F3', 'F4', 'F5', 'F6', 'F7', 'F8', 'F9', 'F10', 'F11', 'F12',
}
TEST_HOOK_ATTRIBUTES = ('data-testid', 'data-test', 'data-qa')


def is_important_element(target: Optional[Mapping[str, Any]]) -> bool:
    """Check whether a DOM target is an interactive element worth recording.

    Args:
        target: Element descriptor with ``tagName``, ``role``, ``attributes``
            and ``hasClickHandler`` keys (all optional)

    Returns:
        True for buttons, links, form controls, ARIA widgets, elements with
        click handlers and elements carrying explicit test hooks
    """
    if not target:
        return False

    if str(target.get('tagName', '')).upper() in IMPORTANT_TAGS:
        return True

    attributes = target.get('attributes') or {}
    role = target.get('role') or attributes.get('role')
    if role in IMPORTANT_ROLES:
        return True

    if target.get('hasClickHandler'):
        return True

    return any(target.get(name) or attributes.get(name) for name in TEST_HOOK_ATTRIBUTES)


def is_important_key(
    key: str,
    ctrl_key: bool = False,
    shift_key: bool = False,
    alt_key: bool = False,
    meta_key: bool = False,
) -> bool:
    """Check whether a keystroke is a navigation, function or modified key."""
    if key in IMPORTANT_KEYS:
        return True
    return ctrl_key or shift_key or alt_key or meta_key


class CapturePolicy(BaseModel):
    """Admission and flush policy of a collector."""

    name: str = Field(default="custom", description="Preset name")

    # Buffering
    buffer_capacity: int = Field(default=100, ge=1, description="Records held before an automatic flush")
    flush_interval: float = Field(default=5.0, gt=0, description="Seconds between timer flushes")

    # DOM events
    capture_dom_events: bool = Field(default=True)
    mouse_move_sample_rate: float = Field(default=0.1, ge=0.0, le=1.0)
    click_throttle_ms: int = Field(default=0, ge=0)
    important_targets_only: bool = Field(default=False)
    important_keys_only: bool = Field(default=False)
    text_limit: int = Field(default=100, ge=0, description="Maximum target text captured")

    # Console, network and errors
    console_levels: List[LogLevel] = Field(default_factory=lambda: list(LogLevel))
    capture_network: bool = Field(default=True)
    network_failures_only: bool = Field(default=False)
    capture_errors: bool = Field(default=True)

    @field_validator('console_levels', mode='before')
    @classmethod
    def normalize_levels(cls, v):
        aliases = {'warning': 'warn', 'critical': 'error', 'exception': 'error'}
        normalized = []
        for level in v:
            name = str(getattr(level, 'value', level)).lower()
            normalized.append(aliases.get(name, name))
        return normalized

    def admits_console(self, level: LogLevel) -> bool:
        return level in self.console_levels

    def admits_network(self, success: bool) -> bool:
        if not self.capture_network:
            return False
        return not (self.network_failures_only and success)

    @property
    def captures_console(self) -> bool:
        return bool(self.console_levels)

    def with_overrides(self, **overrides: Any) -> 'CapturePolicy':
        """Copy of this policy with selected fields replaced (validated)."""
        data = self.model_dump()
        data.update(overrides)
        return CapturePolicy(**data)

    def describe(self) -> Dict[str, Any]:
        """Summary of the active policy for logs and status responses."""
        return {
            'name': self.name,
            'buffer_capacity': self.buffer_capacity,
            'flush_interval': self.flush_interval,
            'dom_events': self.capture_dom_events,
            'console_levels': [level.value for level in self.console_levels],
            'network': 'failures' if self.network_failures_only else self.capture_network,
            'errors': self.capture_errors,
        }


FULL = CapturePolicy(
    name="full",
    buffer_capacity=100,
    flush_interval=5.0,
    mouse_move_sample_rate=0.1,
)

OPTIMIZED = CapturePolicy(
    name="optimized",
    buffer_capacity=50,
    flush_interval=10.0,
    mouse_move_sample_rate=0.1,
    click_throttle_ms=100,
    important_targets_only=True,
    important_keys_only=True,
    text_limit=50,
)

LIGHTWEIGHT = CapturePolicy(
    name="lightweight",
    buffer_capacity=50,
    flush_interval=10.0,
    capture_dom_events=False,
    console_levels=[LogLevel.ERROR, LogLevel.WARN],
    network_failures_only=True,
)

MINIMAL = CapturePolicy(
    name="minimal",
    buffer_capacity=20,
    flush_interval=15.0,
    capture_dom_events=False,
    console_levels=[LogLevel.ERROR],
    capture_network=False,
)

PRESETS: Dict[str, CapturePolicy] = {
    policy.name: policy for policy in (FULL, OPTIMIZED, LIGHTWEIGHT, MINIMAL)
}


def get_policy(name: str = "full", **overrides: Any) -> CapturePolicy:
    """Get a preset policy, optionally with overrides.

    Args:
        name: Preset name (full, optimized, lightweight, minimal)
        **overrides: Field overrides

    Returns:
        Capture policy

    Raises:
        ValueError: If the preset is unknown
    """
    if name not in PRESETS:
        raise ValueError(f"Unknown capture policy '{name}'. Available: {sorted(PRESETS)}")
    policy = PRESETS[name]
    return policy.with_overrides(**overrides) if overrides else policy.model_copy(deep=True)
