"""Unit tests for the page-context capture agent."""

from unittest.mock import MagicMock

import pytest

from testpartner.agent import AgentCommand, CaptureAgent, IndicatorState, StatusIndicator, status_from_value
from testpartner.capture.collector import Collector
from testpartner.capture.policy import get_policy
from testpartner.coordinator import BackgroundCoordinator
from testpartner.errors import StoreError

pytestmark = pytest.mark.unit


@pytest.fixture
def collector(page_manager):
    return Collector(page_manager, policy=get_policy("full"), page_url="https://example.com/app")


@pytest.fixture
async def agent(store, collector):
    capture_agent = CaptureAgent(store, collector)
    await capture_agent.initialize()
    yield capture_agent
    await capture_agent.shutdown()


class TestStatusIndicator:
    """Test indicator state handling."""

    def test_labels(self):
        indicator = StatusIndicator()
        assert indicator.label == "Start Testing"
        indicator.set_state(IndicatorState.ACTIVE)
        assert indicator.label == "Recording"
        indicator.set_state(IndicatorState.PAUSED)
        assert indicator.label == "Paused"

    def test_history_skips_repeats(self):
        changes = []
        indicator = StatusIndicator(on_change=changes.append)
        indicator.set_state(IndicatorState.ACTIVE)
        indicator.set_state(IndicatorState.ACTIVE)
        indicator.set_state(IndicatorState.INACTIVE)
        assert indicator.history == [IndicatorState.ACTIVE, IndicatorState.INACTIVE]
        assert changes == indicator.history

    def test_failing_callback_is_contained(self):
        indicator = StatusIndicator(on_change=MagicMock(side_effect=RuntimeError("render failed")))
        indicator.set_state(IndicatorState.ACTIVE)
        assert indicator.state == IndicatorState.ACTIVE

    @pytest.mark.parametrize("value,expected", [
        ({'status': 'active'}, IndicatorState.ACTIVE),
        ({'status': 'paused'}, IndicatorState.PAUSED),
        ({'status': 'completed'}, IndicatorState.INACTIVE),
        (None, IndicatorState.INACTIVE),
        ("garbage", IndicatorState.INACTIVE),
    ])
    def test_status_from_value(self, value, expected):
        assert status_from_value(value) == expected


class TestStoreSynchronization:
    """Test that the agent follows the shared store."""

    @pytest.mark.asyncio
    async def test_initial_state_without_session(self, agent, collector):
        assert agent.state == IndicatorState.INACTIVE
        assert not collector.is_collecting

    @pytest.mark.asyncio
    async def test_initialize_picks_up_existing_session(self, store, session_manager, collector):
        await session_manager.start("already running")
        late_agent = CaptureAgent(store, collector)

        await late_agent.initialize()

        assert late_agent.is_active
        assert collector.is_collecting
        await late_agent.shutdown()

    @pytest.mark.asyncio
    async def test_follows_lifecycle_changes(self, agent, store, session_manager, collector):
        await session_manager.start("T1")
        await store.drain()
        assert agent.is_active
        assert collector.is_collecting
        assert agent.indicator.label == "Recording"

        await session_manager.pause()
        await store.drain()
        assert agent.state == IndicatorState.PAUSED
        assert not collector.is_collecting
        assert agent.indicator.label == "Paused"

        await session_manager.resume()
        await store.drain()
        assert collector.is_collecting

        await session_manager.stop()
        await store.drain()
        assert agent.state == IndicatorState.INACTIVE
        assert not collector.is_collecting

    @pytest.mark.asyncio
    async def test_captured_events_reach_session(self, agent, store, session_manager, button_target):
        await session_manager.start("T1")
        await store.drain()

        agent.track("click", 10, 20, button_target)
        agent.track("keydown", "Enter")
        await agent.collector.flush()

        stats = await session_manager.get_stats()
        assert stats.event_count == 2

    @pytest.mark.asyncio
    async def test_clearing_the_record_stops_capture(self, agent, store, session_manager):
        await session_manager.start()
        await store.drain()

        await session_manager.clear_session()
        await store.drain()

        assert agent.state == IndicatorState.INACTIVE

    @pytest.mark.asyncio
    async def test_reconcile_keeps_state_when_store_fails(self, agent, store, session_manager, monkeypatch):
        await session_manager.start()
        await store.drain()

        async def failing_get(key):
            raise StoreError("store unavailable")

        monkeypatch.setattr(store, "get", failing_get)
        assert await agent.reconcile() == IndicatorState.ACTIVE
        assert agent.is_active

    @pytest.mark.asyncio
    async def test_shutdown_unsubscribes(self, store, session_manager, collector):
        capture_agent = CaptureAgent(store, collector)
        await capture_agent.initialize()
        await capture_agent.shutdown()

        await session_manager.start()
        await store.drain()

        assert capture_agent.state == IndicatorState.INACTIVE
        assert not collector.is_collecting


class TestCommands:
    """Test direct command handling."""

    @pytest.mark.asyncio
    async def test_started_hint_is_reconciled_against_store(self, agent):
        response = await agent.handle_command(AgentCommand.SESSION_STARTED)
        assert response == {'success': True, 'is_active': False}
        assert agent.indicator.history == [IndicatorState.ACTIVE, IndicatorState.INACTIVE]

    @pytest.mark.asyncio
    async def test_stopped_hint_with_active_session(self, agent, store, session_manager):
        await session_manager.start()
        await store.drain()

        response = await agent.handle_command("SESSION_STOPPED")

        assert response['is_active'] is True

    @pytest.mark.asyncio
    async def test_unknown_command(self, agent):
        response = await agent.handle_command("MAKE_COFFEE")
        assert response == {'success': False, 'error': 'Unknown message type'}

    @pytest.mark.asyncio
    async def test_flag_current_event(self, agent, store, session_manager, button_target):
        await session_manager.start()
        await store.drain()
        agent.track("click", 1, 1, button_target)
        await agent.collector.flush()

        response = await agent.handle_command(AgentCommand.FLAG_CURRENT_EVENT, note="wrong total")

        assert response['success']
        assert (await session_manager.get_stats()).flag_count == 1

    @pytest.mark.asyncio
    async def test_toggle_without_channel(self, agent):
        response = await agent.handle_command(AgentCommand.TOGGLE_SESSION)
        assert response == {'success': False, 'error': 'No coordinator channel'}

    @pytest.mark.asyncio
    async def test_toggle_through_coordinator(self, store, session_manager, collector):
        coordinator = BackgroundCoordinator(session_manager)
        capture_agent = CaptureAgent(store, collector, channel=coordinator)
        await capture_agent.initialize()

        started = await capture_agent.handle_command(AgentCommand.TOGGLE_SESSION, name="from page")
        assert started['success']
        assert capture_agent.is_active

        stopped = await capture_agent.handle_command(AgentCommand.TOGGLE_SESSION)
        assert stopped['success']
        assert stopped['session_data']['status'] == "completed"
        assert not capture_agent.is_active
        await capture_agent.shutdown()

    @pytest.mark.asyncio
    async def test_screenshot_failure_is_reported(self, store, session_manager, collector):
        capture_agent = CaptureAgent(store, collector, channel=BackgroundCoordinator(session_manager))

        response = await capture_agent.handle_command(AgentCommand.TAKE_SCREENSHOT)

        assert response['success'] is False
        assert response['code'] == "unsupported"

    @pytest.mark.asyncio
    async def test_track_requires_active_session(self, agent, store, session_manager):
        assert agent.track("click", 1, 1) is None

        await session_manager.start()
        await store.drain()
        with pytest.raises(ValueError):
            agent.track("scroll", 0, 100)
