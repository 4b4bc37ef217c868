"""Thin popup controller issuing commands to the background coordinator."""

import asyncio
import logging
from typing import Any, Dict, Optional

from ..coordinator.commands import CommandRequest, CommandResponse, CommandType

logger = logging.getLogger(__name__)


class PopupController:
    """Transient UI surface: renders status and stats, forwards button presses.

    The stats refresh task is owned by the controller and cancelled on
    ``close()`` so repeated open/close cycles never leak timers.
    """

    def __init__(self, coordinator: Any, refresh_interval: float = 1.0):
        self.coordinator = coordinator
        self.refresh_interval = refresh_interval

        self.is_active = False
        self.status: Optional[str] = None
        self.session: Optional[Dict[str, Any]] = None
        self.stats: Dict[str, Any] = {}
        self.last_report: Optional[str] = None
        self.last_notification: Optional[str] = None

        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    async def open(self) -> None:
        """Load status and stats, then start periodic stats refresh."""
        await self.refresh_status()
        await self.refresh_stats()
        if not self.is_open:
            self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_loop())

    async def close(self) -> None:
        """Cancel the refresh task."""
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            await self.refresh_stats()

    async def _send(self, command: CommandType, **payload: Any) -> CommandResponse:
        response = await self.coordinator.handle(CommandRequest.of(command, **payload))
        if not response.success:
            self.notify(f"Error: {response.error}")
        return response

    def notify(self, message: str) -> None:
        logger.info(f"Popup notification: {message}")
        self.last_notification = message

    async def refresh_status(self) -> None:
        response = await self._send(CommandType.GET_SESSION_STATUS)
        if response.success:
            self.is_active = response.is_active
            self.status = response.status
            self.session = response.session_data

    async def refresh_stats(self) -> None:
        response = await self._send(CommandType.GET_STATS)
        if response.success:
            self.stats = response.stats

    async def toggle_session(self) -> bool:
        """Start or stop the session; returns whether it succeeded."""
        response = await self._send(CommandType.TOGGLE_SESSION)
        if response.success:
            self.is_active = response.is_active
            self.notify("Session started" if self.is_active else "Session stopped")
            await self.refresh_status()
            await self.refresh_stats()
        return response.success

    async def take_screenshot(self) -> bool:
        response = await self._send(CommandType.TAKE_SCREENSHOT)
        if response.success:
            self.notify("Screenshot saved")
            await self.refresh_stats()
        return response.success

    async def export_report(self) -> Optional[str]:
        response = await self._send(CommandType.EXPORT_REPORT)
        if not response.success:
            return None
        self.last_report = response.report
        self.notify("Report exported")
        return self.last_report

    async def clear_session(self) -> bool:
        response = await self._send(CommandType.CLEAR_SESSION)
        if response.success:
            self.notify("Session cleared")
            await self.refresh_status()
            await self.refresh_stats()
        return response.success

    def __repr__(self) -> str:
        return f"PopupController(open={self.is_open}, active={self.is_active})"
