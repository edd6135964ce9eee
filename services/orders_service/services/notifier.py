"""Realtime order notifications.

Every committed order change is published to two channels: the
organization's feed (``org:<id>``, owner board) and the order's public feed
(``track:<token>``, tracking page). Payloads are deliberately partial; a
subscriber re-fetches the order when one arrives. Delivery is at-least-once
and best-effort: a publish failure is logged, never raised into the request
that committed the change.

Two backends share one interface: an in-process hub for a single worker
(local runs and tests) and Redis pub/sub when several processes serve
websockets.
"""

import asyncio
import json
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Optional, Set

from libs.common.config import get_settings
from libs.common.datetime_utils import ensure_aware, utc_now
from libs.common.logging import get_logger
from redis import asyncio as aioredis
from redis.exceptions import RedisError

logger = get_logger(__name__)

ORDER_CREATED = "order.created"
ORDER_UPDATED = "order.updated"
DELIVERY_UPDATED = "delivery.updated"

SUBSCRIBER_QUEUE_SIZE = 100


def org_channel(organization_id) -> str:
    return f"org:{organization_id}"


def track_channel(public_token: str) -> str:
    return f"track:{public_token}"


def order_payload(order, event: str = ORDER_UPDATED) -> dict:
    updated_at: Optional[datetime] = order.updated_at
    return {
        "event": event,
        "order_id": str(order.id),
        "order_number": order.order_number,
        "status": order.status.value if order.status else None,
        "updated_at": ensure_aware(updated_at or utc_now()).isoformat(),
    }


class Subscription:
    """Messages for one subscriber, consumed with ``async for``."""

    def __init__(self, queue: asyncio.Queue):
        self._queue = queue

    async def get(self) -> dict:
        return await self._queue.get()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> dict:
        return await self._queue.get()


class RealtimeNotifier:
    """Publishing/subscribing interface shared by both backends."""

    async def publish(self, channel: str, payload: dict) -> None:
        raise NotImplementedError

    def subscribe(self, *channels: str):
        raise NotImplementedError

    async def close(self) -> None:
        return None

    async def publish_order(self, order, event: str = ORDER_UPDATED) -> None:
        """Fan an order change out to its organization and tracking feeds."""
        payload = order_payload(order, event)
        await self.publish(org_channel(order.organization_id), payload)
        await self.publish(track_channel(order.public_token), payload)

    async def publish_delivery(self, order, delivery_job) -> None:
        payload = order_payload(order, DELIVERY_UPDATED)
        payload["delivery_state"] = delivery_job.state.value
        payload["courier_status"] = delivery_job.courier_status
        await self.publish(org_channel(order.organization_id), payload)
        await self.publish(track_channel(order.public_token), payload)


class InMemoryNotifier(RealtimeNotifier):
    """Single-process hub built on asyncio queues."""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self._queue_size = queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    async def publish(self, channel: str, payload: dict) -> None:
        for queue in list(self._subscribers.get(channel, ())):
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:
                logger.warning(
                    "Dropping realtime event for slow subscriber on %s", channel
                )

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    @asynccontextmanager
    async def subscribe(self, *channels: str) -> AsyncIterator[Subscription]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        for channel in channels:
            self._subscribers[channel].add(queue)
        try:
            yield Subscription(queue)
        finally:
            for channel in channels:
                subscribers = self._subscribers.get(channel)
                if subscribers is None:
                    continue
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[channel]


class RedisNotifier(RealtimeNotifier):
    """Cross-process fan-out over Redis pub/sub."""

    def __init__(self, url: str, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self._redis = aioredis.from_url(url, decode_responses=True)
        self._queue_size = queue_size

    async def publish(self, channel: str, payload: dict) -> None:
        try:
            await self._redis.publish(channel, json.dumps(payload))
        except (RedisError, OSError) as exc:
            logger.warning("Realtime publish to %s failed: %s", channel, exc)

    @asynccontextmanager
    async def subscribe(self, *channels: str) -> AsyncIterator[Subscription]:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(*channels)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async def pump() -> None:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    queue.put_nowait(json.loads(message["data"]))
                except asyncio.QueueFull:
                    logger.warning(
                        "Dropping realtime event for slow subscriber on %s",
                        message.get("channel"),
                    )

        task = asyncio.create_task(pump())
        try:
            yield Subscription(queue)
        finally:
            task.cancel()
            await pubsub.unsubscribe(*channels)
            await pubsub.aclose()

    async def close(self) -> None:
        await self._redis.aclose()


_notifier: Optional[RealtimeNotifier] = None


def get_notifier() -> RealtimeNotifier:
    """Process-wide notifier; Redis-backed when ``REDIS_URL`` is a Redis URL."""
    global _notifier
    if _notifier is None:
        url = get_settings().REDIS_URL
        if url.startswith(("redis://", "rediss://")):
            _notifier = RedisNotifier(url)
        else:
            _notifier = InMemoryNotifier()
    return _notifier
