"""Durable shared store contract.

Execution contexts never call each other; they agree on session state by
reading and writing named records in a shared key-value store and by
subscribing to its change notifications. Delivery of notifications is
asynchronous and eventual, so subscribers must tolerate lag and duplicates.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

logger = logging.getLogger(__name__)


# Well-known keys
SESSION_KEY = "current_session"
ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
PENDING_UPLOADS_KEY = "pending_uploads"
LEGACY_LOGS_KEY = "test_logs"


class _NoChange:
    """Sentinel returned by an update mutator that decides not to write."""

    def __repr__(self) -> str:
        return "NO_CHANGE"


NO_CHANGE = _NoChange()


@dataclass(frozen=True)
class StoreChange:
    """A single key modification delivered to subscribers."""

    key: str
    old_value: Any
    new_value: Any

    @property
    def removed(self) -> bool:
        """Whether the key was removed rather than written."""
        return self.new_value is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'old_value': self.old_value,
            'new_value': self.new_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StoreChange':
        return cls(
            key=data['key'],
            old_value=data.get('old_value'),
            new_value=data.get('new_value'),
        )


ChangeCallback = Callable[[StoreChange], Union[None, Awaitable[None]]]
Mutator = Callable[[Any], Any]


class Subscription:
    """Handle returned by ``SharedStore.subscribe``."""

    def __init__(self, store: 'SharedStore', callback: ChangeCallback, keys: Optional[Set[str]] = None):
        self.store = store
        self.callback = callback
        self.keys = keys
        self.active = True

    def matches(self, key: str) -> bool:
        """Check whether a change to ``key`` should be delivered."""
        return self.active and (self.keys is None or key in self.keys)

    async def unsubscribe(self) -> None:
        """Stop receiving notifications."""
        await self.store.unsubscribe(self)

    def __repr__(self) -> str:
        keys = sorted(self.keys) if self.keys else "*"
        return f"Subscription(keys={keys}, active={self.active})"


class SharedStore(ABC):
    """Abstract base class for shared store backends."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []

    @abstractmethod
    async def get(self, key: str) -> Any:
        """Read a record.

        Args:
            key: Record key

        Returns:
            Detached copy of the stored value, or None when absent

        Raises:
            StoreError: If the backend read fails
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Write a record and notify subscribers.

        Args:
            key: Record key
            value: JSON-compatible value

        Raises:
            StoreError: If the backend write fails
        """
        pass

    @abstractmethod
    async def remove(self, keys: Union[str, Iterable[str]]) -> None:
        """Remove one or more records and notify subscribers.

        Args:
            keys: Key or keys to remove
        """
        pass

    @abstractmethod
    async def update(self, key: str, mutator: Mutator) -> Any:
        """Atomically read, modify and write a record.

        The mutator receives a detached copy of the current value (None when
        absent) and returns the new value, or ``NO_CHANGE`` to skip the write.
        Exceptions raised by the mutator abort the update and propagate.

        Args:
            key: Record key
            mutator: Function computing the new value

        Returns:
            The value stored after the update
        """
        pass

    async def subscribe(
        self,
        callback: ChangeCallback,
        keys: Optional[Iterable[str]] = None
    ) -> Subscription:
        """Subscribe to change notifications.

        Args:
            callback: Function (sync or async) receiving each StoreChange
            keys: Optional key filter; all keys when omitted

        Returns:
            Subscription handle
        """
        subscription = Subscription(self, callback, set(keys) if keys is not None else None)
        self._subscriptions.append(subscription)
        logger.debug(f"Added store subscription {subscription}")
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscription."""
        subscription.active = False
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def _deliver(self, change: StoreChange) -> None:
        """Deliver a change to every matching subscriber."""
        for subscription in list(self._subscriptions):
            if not subscription.matches(change.key):
                continue
            try:
                result = subscription.callback(change)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in store change callback for '{change.key}': {e}")

    @staticmethod
    def _detach(value: Any) -> Any:
        return copy.deepcopy(value)

    @staticmethod
    def _normalize_keys(keys: Union[str, Iterable[str]]) -> List[str]:
        if isinstance(keys, str):
            return [keys]
        return list(keys)

    async def health_check(self) -> Dict[str, Any]:
        """Report backend health."""
        return {
            'backend_type': self.__class__.__name__,
            'status': 'healthy',
            'subscribers': self.subscriber_count,
        }

    async def close(self) -> None:
        """Release backend resources."""
        self._subscriptions.clear()
