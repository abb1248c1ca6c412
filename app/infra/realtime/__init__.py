"""Realtime event fan-out and its websocket transport."""

from app.infra.realtime.bus import EventBus, Subscription
from app.infra.realtime.hub import WebSocketTransport

__all__ = ["EventBus", "Subscription", "WebSocketTransport"]
