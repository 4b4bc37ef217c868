"""Redis-backed shared store for contexts running in separate processes.

Records are stored as JSON strings under a key prefix. Every write publishes
a change message on a pub/sub channel; each process runs one listener task
that fans messages out to its local subscribers. Atomic updates use
optimistic WATCH/MULTI transactions.
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, Iterable, Optional, Union

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from ..errors import StoreError
from .base import NO_CHANGE, ChangeCallback, Mutator, SharedStore, StoreChange, Subscription

logger = logging.getLogger(__name__)


class RedisSharedStore(SharedStore):
    """Shared store backed by Redis with pub/sub change notification."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "testpartner:store:",
        max_update_retries: int = 10,
        client: Optional[redis.Redis] = None,
        **redis_kwargs
    ):
        """Initialize Redis store.

        Args:
            redis_url: Redis connection URL
            key_prefix: Prefix for record keys and the change channel
            max_update_retries: Optimistic transaction retries before failing
            client: Pre-built Redis client (takes precedence over redis_url)
            **redis_kwargs: Additional Redis connection parameters
        """
        super().__init__()
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.channel = f"{key_prefix}changes"
        self.max_update_retries = max_update_retries
        self.redis_kwargs = redis_kwargs
        self._redis = client
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection, creating if necessary."""
        if self._redis is None:
            try:
                self._redis = redis.from_url(self.redis_url, decode_responses=True, **self.redis_kwargs)
                await self._redis.ping()
            except RedisError as e:
                self._redis = None
                raise StoreError(f"Failed to connect to Redis: {e}")
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    @staticmethod
    def _loads(raw: Optional[str]) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Discarding undecodable store value: {e}")
            return None

    @staticmethod
    def _dumps(key: str, value: Any) -> str:
        try:
            return json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Value for '{key}' is not JSON serializable: {e}")

    async def _publish(self, client: redis.Redis, change: StoreChange) -> None:
        await client.publish(self.channel, json.dumps(change.to_dict()))

    async def get(self, key: str) -> Any:
        try:
            client = await self._get_redis()
            return self._loads(await client.get(self._make_key(key)))
        except RedisError as e:
            raise StoreError(f"Failed to read '{key}': {e}")

    async def set(self, key: str, value: Any) -> None:
        payload = self._dumps(key, value)
        try:
            client = await self._get_redis()
            old_raw = await client.set(self._make_key(key), payload, get=True)
            await self._publish(client, StoreChange(key, self._loads(old_raw), json.loads(payload)))
        except RedisError as e:
            raise StoreError(f"Failed to write '{key}': {e}")

    async def remove(self, keys: Union[str, Iterable[str]]) -> None:
        try:
            client = await self._get_redis()
            for key in self._normalize_keys(keys):
                old_raw = await client.getdel(self._make_key(key))
                if old_raw is not None:
                    await self._publish(client, StoreChange(key, self._loads(old_raw), None))
        except RedisError as e:
            raise StoreError(f"Failed to remove {keys}: {e}")

    async def update(self, key: str, mutator: Mutator) -> Any:
        redis_key = self._make_key(key)
        try:
            client = await self._get_redis()
            for attempt in range(self.max_update_retries):
                async with client.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(redis_key)
                        current = self._loads(await pipe.get(redis_key))
                        new_value = mutator(current)
                        if new_value is NO_CHANGE:
                            await pipe.unwatch()
                            return current

                        payload = self._dumps(key, new_value)
                        pipe.multi()
                        pipe.set(redis_key, payload)
                        await pipe.execute()
                    except WatchError:
                        logger.debug(f"Concurrent write on '{key}', retrying update (attempt {attempt + 1})")
                        continue

                stored = json.loads(payload)
                await self._publish(client, StoreChange(key, current, stored))
                return stored
        except RedisError as e:
            raise StoreError(f"Failed to update '{key}': {e}")

        raise StoreError(f"Update of '{key}' lost {self.max_update_retries} races in a row")

    async def subscribe(
        self,
        callback: ChangeCallback,
        keys: Optional[Iterable[str]] = None
    ) -> Subscription:
        subscription = await super().subscribe(callback, keys)
        await self._ensure_listener()
        return subscription

    async def _ensure_listener(self) -> None:
        if self._listener is not None and not self._listener.done():
            return
        try:
            client = await self._get_redis()
            self._pubsub = client.pubsub(ignore_subscribe_messages=True)
            await self._pubsub.subscribe(self.channel)
        except RedisError as e:
            raise StoreError(f"Failed to subscribe to store changes: {e}")
        self._listener = asyncio.get_running_loop().create_task(self._listen())

    async def _listen(self) -> None:
        """Fan pub/sub change messages out to local subscribers."""
        try:
            async for message in self._pubsub.listen():
                if message.get('type') != 'message':
                    continue
                try:
                    change = StoreChange.from_dict(json.loads(message['data']))
                except (KeyError, TypeError, json.JSONDecodeError) as e:
                    logger.warning(f"Ignoring malformed change message: {e}")
                    continue
                await self._deliver(change)
        except RedisError as e:
            logger.error(f"Store change listener stopped: {e}")

    async def health_check(self) -> Dict[str, Any]:
        try:
            client = await self._get_redis()
            start_time = time.time()
            await client.ping()
            ping_time = time.time() - start_time
            return {
                'backend_type': 'RedisSharedStore',
                'backend': 'redis',
                'status': 'healthy',
                'ping_time_ms': round(ping_time * 1000, 2),
                'subscribers': self.subscriber_count,
                'url': self.redis_url,
            }
        except (RedisError, StoreError) as e:
            return {
                'backend_type': 'RedisSharedStore',
                'backend': 'redis',
                'status': 'unhealthy',
                'error': str(e),
                'url': self.redis_url,
            }

    async def close(self) -> None:
        """Stop the listener and close connections."""
        if self._listener and not self._listener.done():
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
        self._listener = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        await super().close()
