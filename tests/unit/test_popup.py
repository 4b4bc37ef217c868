"""Unit tests for the popup controller."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from testpartner.coordinator import BackgroundCoordinator
from testpartner.popup import PopupController

pytestmark = pytest.mark.unit


@pytest.fixture
def coordinator(session_manager):
    return BackgroundCoordinator(
        session_manager,
        screenshot_provider=AsyncMock(return_value="data:image/png;base64,AAAA"),
    )


@pytest.fixture
async def popup(coordinator):
    controller = PopupController(coordinator, refresh_interval=0.02)
    yield controller
    await controller.close()


class TestPopupController:
    """Test popup rendering state and button handlers."""

    @pytest.mark.asyncio
    async def test_open_without_session(self, popup):
        await popup.open()

        assert popup.is_open
        assert popup.is_active is False
        assert popup.session is None
        assert popup.stats['event_count'] == 0

    @pytest.mark.asyncio
    async def test_toggle_starts_and_stops(self, popup):
        await popup.open()

        assert await popup.toggle_session()
        assert popup.is_active
        assert popup.status == "active"
        assert popup.last_notification == "Session started"

        assert await popup.toggle_session()
        assert not popup.is_active
        assert popup.status == "completed"
        assert popup.last_notification == "Session stopped"

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_stats_refresh_periodically(self, popup, session_manager):
        await popup.open()
        await popup.toggle_session()

        await session_manager.add_event({'type': 'click', 'data': {}})
        await asyncio.sleep(0.1)

        assert popup.stats['event_count'] == 1

    @pytest.mark.asyncio
    async def test_close_cancels_refresh(self, popup):
        await popup.open()
        task = popup._refresh_task

        await popup.close()

        assert task.cancelled()
        assert not popup.is_open

    @pytest.mark.asyncio
    async def test_reopen_does_not_leak_tasks(self, popup):
        await popup.open()
        first = popup._refresh_task
        await popup.open()
        assert popup._refresh_task is first

    @pytest.mark.asyncio
    async def test_screenshot_and_report(self, popup):
        await popup.toggle_session()

        assert await popup.take_screenshot()
        assert popup.last_notification == "Screenshot saved"
        assert popup.stats['screenshot_count'] == 1

        report = await popup.export_report()
        assert report.startswith("# Exploratory Testing Report")
        assert popup.last_notification == "Report exported"

    @pytest.mark.asyncio
    async def test_errors_are_notified(self, popup):
        assert await popup.export_report() is None
        assert popup.last_notification == "Error: No session to report on"

        assert not await popup.take_screenshot()
        assert popup.last_notification.startswith("Error:")

    @pytest.mark.asyncio
    async def test_clear_session(self, popup):
        await popup.toggle_session()

        assert await popup.clear_session()

        assert popup.last_notification == "Session cleared"
        assert popup.session is None
        assert popup.is_active is False
