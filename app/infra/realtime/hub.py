import asyncio
from collections import defaultdict
from typing import Any

import structlog
from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from app.infra.realtime.bus import EventBus, Subscription

logger = structlog.get_logger(__name__)


class WebSocketTransport:
    """Pumps event bus topics into websocket connections.

    Each (socket, topic) pair owns one bus subscription and one forwarding
    task. A failed send tears down every subscription of that socket so the
    bus never keeps delivering to a dead connection.
    """

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._feeds: dict[WebSocket, dict[str, tuple[Subscription, asyncio.Task[None]]]] = (
            defaultdict(dict)
        )
        self._send_locks: dict[WebSocket, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._send_locks[websocket] = asyncio.Lock()

    def topics(self, websocket: WebSocket) -> list[str]:
        return list(self._feeds.get(websocket, {}))

    def subscriber_count(self, topic: str) -> int:
        return self._bus.subscriber_count(topic)

    async def subscribe(self, websocket: WebSocket, topic: str) -> None:
        async with self._lock:
            feeds = self._feeds[websocket]
            if topic in feeds:
                return
            subscription = self._bus.subscribe(topic)
            task = asyncio.create_task(self._pump(websocket, subscription))
            feeds[topic] = (subscription, task)

    async def unsubscribe(self, websocket: WebSocket, topic: str) -> None:
        async with self._lock:
            feeds = self._feeds.get(websocket)
            if feeds is None:
                return
            entry = feeds.pop(topic, None)
            if not feeds:
                self._feeds.pop(websocket, None)
        if entry is not None:
            self._stop(*entry)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            feeds = self._feeds.pop(websocket, {})
            self._send_locks.pop(websocket, None)
        for subscription, task in feeds.values():
            self._stop(subscription, task)

    async def send(self, websocket: WebSocket, message: dict[str, Any]) -> bool:
        lock = self._send_locks.get(websocket)
        if lock is None:
            return False
        async with lock:
            try:
                await websocket.send_json(message)
            except (RuntimeError, WebSocketDisconnect):
                return False
        return True

    async def _pump(self, websocket: WebSocket, subscription: Subscription) -> None:
        async for envelope in subscription:
            delivered = await self.send(websocket, envelope.to_wire())
            if not delivered:
                logger.info("websocket_send_failed", topic=subscription.topic)
                await self.disconnect(websocket)
                return

    @staticmethod
    def _stop(subscription: Subscription, task: asyncio.Task[None]) -> None:
        subscription.cancel()
        if task is not asyncio.current_task():
            task.cancel()
