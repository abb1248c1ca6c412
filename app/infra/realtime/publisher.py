from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from app.domain.entities import utc_now
from app.infra.realtime.events import RealtimeEvent


@dataclass(frozen=True, slots=True)
class Envelope:
    type: RealtimeEvent
    conversation_id: int | None
    payload: Mapping[str, Any]
    timestamp: datetime = field(default_factory=utc_now)

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "conversationId": self.conversation_id,
            "payload": dict(self.payload),
            "timestamp": self.timestamp.isoformat(),
        }


class EventPublisher(Protocol):
    async def publish(self, topic: str, envelope: Envelope) -> int: ...
