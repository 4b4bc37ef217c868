"""In-process shared store.

Values are held in their JSON-encoded form so every reader gets an isolated
copy, as with a real cross-context store. Change notifications are queued
and delivered by a dispatcher task, never inline with the write, so a writer
observes its own write before any subscriber does.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from ..errors import StoreError
from .base import NO_CHANGE, Mutator, SharedStore, StoreChange

logger = logging.getLogger(__name__)


class InMemorySharedStore(SharedStore):
    """Shared store for contexts living in the same process."""

    def __init__(self, delivery_delay: float = 0.0):
        """Initialize in-memory store.

        Args:
            delivery_delay: Seconds to wait before delivering each change,
                used to simulate cross-context propagation lag
        """
        super().__init__()
        self.delivery_delay = delivery_delay
        self._data: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._queue: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._closed = False

    def _encode(self, key: str, value: Any) -> str:
        try:
            return json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Value for '{key}' is not JSON serializable: {e}")

    def _decode(self, raw: Optional[str]) -> Any:
        if raw is None:
            return None
        return json.loads(raw)

    async def get(self, key: str) -> Any:
        self._ensure_open()
        await self._sync_in()
        return self._decode(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._ensure_open()
        async with self._lock:
            await self._sync_in()
            snapshot = dict(self._data)
            change = self._write(key, value)
            await self._commit(snapshot, [change])

    async def remove(self, keys: Union[str, Iterable[str]]) -> None:
        self._ensure_open()
        async with self._lock:
            await self._sync_in()
            snapshot = dict(self._data)
            changes = []
            for key in self._normalize_keys(keys):
                raw = self._data.pop(key, None)
                if raw is not None:
                    changes.append(StoreChange(key, self._decode(raw), None))
            await self._commit(snapshot, changes)

    async def update(self, key: str, mutator: Mutator) -> Any:
        self._ensure_open()
        async with self._lock:
            await self._sync_in()
            current = self._decode(self._data.get(key))
            new_value = mutator(current)
            if new_value is NO_CHANGE:
                return self._decode(self._data.get(key))
            snapshot = dict(self._data)
            change = self._write(key, new_value)
            await self._commit(snapshot, [change])
            return self._decode(self._data[key])

    async def _sync_in(self) -> None:
        """Refresh local data from durable storage (no-op in memory)."""

    async def _sync_out(self) -> None:
        """Persist local data to durable storage (no-op in memory)."""

    def _write(self, key: str, value: Any) -> StoreChange:
        encoded = self._encode(key, value)
        old_raw = self._data.get(key)
        self._data[key] = encoded
        return StoreChange(key, self._decode(old_raw), json.loads(encoded))

    async def _commit(self, snapshot: Dict[str, str], changes: List[StoreChange]) -> None:
        """Persist staged writes, then notify; a failed persist is rolled back."""
        try:
            await self._sync_out()
        except StoreError:
            self._data = snapshot
            raise
        for change in changes:
            self._enqueue(change)

    def _enqueue(self, change: StoreChange) -> None:
        if not self._subscriptions:
            return

        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch_loop())

        self._queue.put_nowait(change)

    async def _dispatch_loop(self) -> None:
        """Deliver queued changes in write order."""
        assert self._queue is not None
        while True:
            change = await self._queue.get()
            try:
                if self.delivery_delay:
                    await asyncio.sleep(self.delivery_delay)
                await self._deliver(change)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued notification has been delivered."""
        if self._queue is not None:
            await self._queue.join()

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreError("Store is closed")

    def keys(self):
        """Keys currently present."""
        return list(self._data.keys())

    async def health_check(self) -> Dict[str, Any]:
        health = await super().health_check()
        health.update({
            'backend': 'in_memory',
            'keys': len(self._data),
            'pending_notifications': self._queue.qsize() if self._queue else 0,
        })
        return health

    async def close(self) -> None:
        """Stop the dispatcher and drop subscriptions."""
        self._closed = True
        if self._dispatcher and not self._dispatcher.done():
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
        self._dispatcher = None
        await super().close()
