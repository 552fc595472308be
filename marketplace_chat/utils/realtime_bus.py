import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, Optional, Set

import redis.asyncio as redis

from marketplace_chat.core.config import get_settings

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], Awaitable[None]]


def user_channel(user_id: str) -> str:
    return f"messages:user:{user_id}"


class LocalSubscription:

    def __init__(self, bus: "LocalBus", channel: str, queue: "asyncio.Queue[Optional[str]]", on_message: MessageHandler) -> None:
        self._bus = bus
        self._channel = channel
        self._queue = queue
        self._on_message = on_message
        self._running = True

    async def run(self) -> None:
        while self._running:
            data = await self._queue.get()
            if data is None:
                break
            try:
                await self._on_message(data)
            except Exception:
                logger.exception("Subscriber for %s failed to handle a message", self._channel)

    async def cancel(self) -> None:
        self._running = False
        self._bus._detach(self._channel, self._queue)
        self._queue.put_nowait(None)


class LocalBus:
    """In-process fan-out used when no Redis is configured."""

    enabled = True

    def __init__(self) -> None:
        self._queues: Dict[str, Set["asyncio.Queue[Optional[str]]"]] = defaultdict(set)

    async def publish(self, channel: str, message: str) -> None:
        for queue in list(self._queues.get(channel, ())):
            queue.put_nowait(message)

    async def subscribe(self, channel: str, on_message: MessageHandler) -> LocalSubscription:
        # registered before run() so nothing published in between is lost
        queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._queues[channel].add(queue)
        return LocalSubscription(self, channel, queue, on_message)

    def _detach(self, channel: str, queue: "asyncio.Queue[Optional[str]]") -> None:
        queues = self._queues.get(channel)
        if queues is None:
            return
        queues.discard(queue)
        if not queues:
            del self._queues[channel]

    async def close(self) -> None:
        self._queues.clear()


class RedisSubscription:

    def __init__(self, pubsub, channel: str, on_message: MessageHandler) -> None:
        self._pubsub = pubsub
        self._channel = channel
        self._on_message = on_message
        self._running = True

    async def run(self) -> None:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if msg and msg.get("type") == "message":
                    data = msg.get("data")
                    if isinstance(data, bytes):
                        data = data.decode("utf-8")
                    await self._on_message(data)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Redis subscription on %s failed, retrying", self._channel, exc_info=True)
                await asyncio.sleep(0.5)

    async def cancel(self) -> None:
        self._running = False
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except redis.RedisError:
            logger.warning("Failed to unsubscribe from %s", self._channel, exc_info=True)


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: MessageHandler) -> RedisSubscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return RedisSubscription(pubsub, channel, on_message)

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url = get_settings().REDIS_URL
    _bus = RedisBus(url) if url else LocalBus()
    return _bus


def set_bus(bus) -> None:
    global _bus
    _bus = bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
        _bus = None
