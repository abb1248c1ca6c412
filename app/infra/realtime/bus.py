import asyncio
from collections import defaultdict

import structlog

from app.infra.realtime.publisher import Envelope

logger = structlog.get_logger(__name__)


class Subscription:
    """A live feed of envelopes for one topic.

    Iterate with ``async for``; iteration stops once the subscription is
    cancelled, either by its owner or by the bus dropping a consumer that
    fell too far behind.
    """

    def __init__(self, bus: "EventBus", topic: str, max_pending: int) -> None:
        self.topic = topic
        self._bus = bus
        self._queue: asyncio.Queue[Envelope | None] = asyncio.Queue(maxsize=max_pending + 1)
        self._max_pending = max_pending
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def pending(self) -> int:
        return self._queue.qsize()

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._bus._remove(self)
        while not self._queue.empty():
            self._queue.get_nowait()
        # Wake a reader blocked in get().
        self._queue.put_nowait(None)

    async def get(self) -> Envelope | None:
        if self._cancelled and self._queue.empty():
            return None
        envelope = await self._queue.get()
        if envelope is None or self._cancelled:
            return None
        return envelope

    def _deliver(self, envelope: Envelope) -> bool:
        if self._cancelled:
            return False
        if self._queue.qsize() >= self._max_pending:
            return False
        self._queue.put_nowait(envelope)
        return True

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Envelope:
        envelope = await self.get()
        if envelope is None:
            raise StopAsyncIteration
        return envelope


class EventBus:
    """In-process topic fan-out with per-topic FIFO delivery and no replay."""

    def __init__(self, max_pending: int = 1000) -> None:
        self._max_pending = max_pending
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)

    def subscribe(self, topic: str) -> Subscription:
        subscription = Subscription(self, topic, self._max_pending)
        self._subscribers[topic].append(subscription)
        return subscription

    def subscriber_count(self, topic: str) -> int:
        subscribers = self._subscribers.get(topic)
        if subscribers is None:
            return 0
        return len(subscribers)

    async def publish(self, topic: str, envelope: Envelope) -> int:
        # Delivery never suspends, so concurrent publishers cannot interleave
        # within one topic.
        subscribers = list(self._subscribers.get(topic, ()))
        delivered = 0
        for subscription in subscribers:
            if subscription._deliver(envelope):
                delivered += 1
                continue
            if not subscription.cancelled:
                logger.warning(
                    "subscriber_dropped",
                    topic=topic,
                    pending=subscription.pending(),
                    event_type=envelope.type.value,
                )
                subscription.cancel()
        return delivered

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.topic)
        if subscribers is None:
            return
        try:
            subscribers.remove(subscription)
        except ValueError:
            return
        if not subscribers:
            self._subscribers.pop(subscription.topic, None)
