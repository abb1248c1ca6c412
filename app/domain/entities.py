from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from app.domain.enums import (
    CallEndReason,
    CallParty,
    CallStatus,
    ConversationStatus,
    MessageKind,
    SenderKind,
)


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class VisitorSession:
    id: str
    display_name: str = "Visitor"
    locale: str = "en"
    last_seen_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class Conversation:
    id: int
    session_id: str
    status: ConversationStatus = ConversationStatus.PENDING
    assigned_agent_id: str | None = None
    slot_time: datetime | None = None
    closed_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class FileDescriptor:
    file_id: str
    filename: str
    content_type: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_id": self.file_id,
            "filename": self.filename,
            "content_type": self.content_type,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileDescriptor":
        return cls(
            file_id=data["file_id"],
            filename=data["filename"],
            content_type=data["content_type"],
            size=int(data["size"]),
        )


@dataclass(slots=True)
class Message:
    conversation_id: int
    id: int
    sender_kind: SenderKind
    body: str
    kind: MessageKind = MessageKind.TEXT
    sender_id: str | None = None
    file: FileDescriptor | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class MediaOptions:
    audio: bool = True
    video: bool = False
    screen: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {"audio": self.audio, "video": self.video, "screen": self.screen}


@dataclass(slots=True)
class CallState:
    status: CallStatus = CallStatus.IDLE
    call_id: str | None = None
    initiator: CallParty | None = None
    started_at: datetime | None = None
    connected_at: datetime | None = None
    ended_at: datetime | None = None
    end_reason: CallEndReason | None = None
    media: dict[CallParty, MediaOptions] = field(default_factory=dict)
    established_by: set[CallParty] = field(default_factory=set)

    def begin(self, initiator: CallParty, media: MediaOptions) -> None:
        self.call_id = uuid4().hex
        self.initiator = initiator
        self.started_at = utc_now()
        self.connected_at = None
        self.ended_at = None
        self.end_reason = None
        self.media = {initiator: media}
        self.established_by = set()

    def reset(self) -> None:
        self.status = CallStatus.IDLE
        self.call_id = None
        self.initiator = None
        self.started_at = None
        self.connected_at = None
        self.ended_at = None
        self.end_reason = None
        self.media = {}
        self.established_by = set()

    def copy(self) -> "CallState":
        return CallState(
            status=self.status,
            call_id=self.call_id,
            initiator=self.initiator,
            started_at=self.started_at,
            connected_at=self.connected_at,
            ended_at=self.ended_at,
            end_reason=self.end_reason,
            media=dict(self.media),
            established_by=set(self.established_by),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "call_id": self.call_id,
            "initiator": self.initiator.value if self.initiator is not None else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "end_reason": self.end_reason.value if self.end_reason else None,
            "media": {party.value: options.to_dict() for party, options in self.media.items()},
        }
