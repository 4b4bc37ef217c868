"""Capture agent controller for a page context.

The agent keeps a local "session active" flag in sync with the shared store
and turns its collector and status indicator on and off to match. The store
subscription is the authoritative path; direct commands are best-effort
hints that are always reconciled against the store afterwards.

The agent never writes lifecycle status. Sync failures are logged and
swallowed so that capture never degrades the host page.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from ..capture.collector import Collector
from ..coordinator.commands import CommandRequest, CommandType
from ..errors import PartnerError
from ..models.session import SessionStatus
from ..store.base import SESSION_KEY, SharedStore, StoreChange, Subscription

logger = logging.getLogger(__name__)


class IndicatorState(str, Enum):
    """Visual state of the page status indicator."""
    ACTIVE = "active"
    PAUSED = "paused"
    INACTIVE = "inactive"


class AgentCommand(str, Enum):
    """Direct commands accepted by the agent."""
    SESSION_STARTED = "SESSION_STARTED"
    SESSION_STOPPED = "SESSION_STOPPED"
    TOGGLE_SESSION = "TOGGLE_SESSION"
    TAKE_SCREENSHOT = "TAKE_SCREENSHOT"
    FLAG_CURRENT_EVENT = "FLAG_CURRENT_EVENT"


class StatusIndicator:
    """Status indicator shown on the page while capturing."""

    LABELS = {
        IndicatorState.ACTIVE: "Recording",
        IndicatorState.PAUSED: "Paused",
        IndicatorState.INACTIVE: "Start Testing",
    }

    def __init__(self, on_change: Optional[Callable[[IndicatorState], None]] = None):
        self.state = IndicatorState.INACTIVE
        self.history: List[IndicatorState] = []
        self.on_change = on_change

    @property
    def label(self) -> str:
        return self.LABELS[self.state]

    def set_state(self, state: IndicatorState) -> None:
        if state == self.state:
            return
        logger.debug(f"Indicator {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)
        if self.on_change:
            try:
                self.on_change(state)
            except Exception as e:
                logger.error(f"Error in indicator callback: {e}")

    def __repr__(self) -> str:
        return f"StatusIndicator(state={self.state.value})"


def status_from_value(value: Any) -> IndicatorState:
    """Derive the indicator state from a stored session record."""
    if not isinstance(value, dict):
        return IndicatorState.INACTIVE
    status = value.get('status')
    if status == SessionStatus.ACTIVE.value:
        return IndicatorState.ACTIVE
    if status == SessionStatus.PAUSED.value:
        return IndicatorState.PAUSED
    return IndicatorState.INACTIVE


class CaptureAgent:
    """Reflects the shared session status in one page context."""

    def __init__(
        self,
        store: SharedStore,
        collector: Collector,
        indicator: Optional[StatusIndicator] = None,
        channel: Any = None,
        session_key: str = SESSION_KEY,
    ):
        """Initialize capture agent.

        Args:
            store: Shared store (read and subscribed to, never written)
            collector: Collector owned by this agent
            indicator: Status indicator (a fresh one when omitted)
            channel: Coordinator-like object with an async ``handle(request)``,
                used for commands the page cannot perform itself
            session_key: Store key of the current-session record
        """
        self.store = store
        self.collector = collector
        self.indicator = indicator or StatusIndicator()
        self.channel = channel
        self.session_key = session_key

        self.state = IndicatorState.INACTIVE
        self._lock = asyncio.Lock()
        self._subscription: Optional[Subscription] = None
        self._initialized = False

    @property
    def is_active(self) -> bool:
        return self.state == IndicatorState.ACTIVE

    async def initialize(self) -> None:
        """Read the session status once and subscribe to its changes."""
        if self._initialized:
            return
        self._subscription = await self.store.subscribe(self._on_store_change, keys=[self.session_key])
        self._initialized = True
        await self.reconcile()
        logger.info(f"Capture agent initialized (state={self.state.value})")

    async def _on_store_change(self, change: StoreChange) -> None:
        if change.key != self.session_key:
            return
        await self._apply(status_from_value(change.new_value))

    async def reconcile(self) -> IndicatorState:
        """Re-read the store and apply the authoritative state."""
        try:
            value = await self.store.get(self.session_key)
        except PartnerError as e:
            logger.warning(f"Session status read failed, keeping {self.state.value}: {e.message}")
            return self.state
        await self._apply(status_from_value(value))
        return self.state

    async def _apply(self, state: IndicatorState) -> None:
        async with self._lock:
            previous = self.state
            self.state = state
            if state == IndicatorState.ACTIVE:
                await self.collector.start_collecting()
            else:
                await self.collector.stop_collecting()
            self.indicator.set_state(state)
        if previous != state:
            logger.info(f"Session state {previous.value} -> {state.value}")

    async def handle_command(self, command: Union[AgentCommand, str], **payload: Any) -> Dict[str, Any]:
        """Handle a direct command (best-effort synchronization path).

        Returns:
            Response dictionary with a ``success`` flag
        """
        try:
            command = AgentCommand(getattr(command, 'value', command))
        except ValueError:
            logger.debug(f"Ignoring unknown agent command: {command}")
            return {'success': False, 'error': 'Unknown message type'}

        try:
            if command == AgentCommand.SESSION_STARTED:
                await self._apply(IndicatorState.ACTIVE)
                await self.reconcile()
                return {'success': True, 'is_active': self.is_active}

            if command == AgentCommand.SESSION_STOPPED:
                await self._apply(IndicatorState.INACTIVE)
                await self.reconcile()
                return {'success': True, 'is_active': self.is_active}

            if command == AgentCommand.FLAG_CURRENT_EVENT:
                flag_id = await self.collector.flag_last_event(payload.get('note', ''))
                return {'success': flag_id is not None, 'flag_id': flag_id}

            request_type = (
                CommandType.TOGGLE_SESSION if command == AgentCommand.TOGGLE_SESSION
                else CommandType.TAKE_SCREENSHOT
            )
            return await self._forward(request_type, payload)
        except PartnerError as e:
            logger.warning(f"Agent command {command.value} failed: {e.message}")
            return {'success': False, 'error': e.message}

    async def _forward(self, command: CommandType, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.channel is None:
            return {'success': False, 'error': 'No coordinator channel'}
        response = await self.channel.handle(CommandRequest.of(command, **payload))
        if command == CommandType.TOGGLE_SESSION:
            await self.reconcile()
        return response.to_dict()

    def track(self, event: str, *args: Any, **kwargs: Any) -> Any:
        """Forward a DOM event to the collector while the session is active.

        Args:
            event: Event name (click, keydown, mouse_move, focus, page_load,
                page_unload, custom)
        """
        if not self.is_active:
            return None
        tracker = getattr(self.collector, f"track_{event}", None)
        if tracker is None:
            raise ValueError(f"Unknown DOM event: {event}")
        return tracker(*args, **kwargs)

    async def shutdown(self) -> None:
        """Unsubscribe and stop collecting."""
        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None
        async with self._lock:
            await self.collector.stop_collecting()
            self.state = IndicatorState.INACTIVE
            self.indicator.set_state(IndicatorState.INACTIVE)
        self._initialized = False
        logger.info("Capture agent shut down")

    def __repr__(self) -> str:
        return f"CaptureAgent(state={self.state.value}, collector={self.collector!r})"
