from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.domain.entities import MediaOptions
from app.domain.enums import CallEndReason, CallParty, CallStatus


class MediaOptionsPayload(BaseModel):
    audio: bool = True
    video: bool = False
    screen: bool = False

    def to_options(self) -> MediaOptions:
        return MediaOptions(audio=self.audio, video=self.video, screen=self.screen)


class CallStateResponse(BaseModel):
    status: CallStatus
    call_id: str | None
    initiator: CallParty | None
    started_at: datetime | None
    connected_at: datetime | None
    ended_at: datetime | None
    end_reason: CallEndReason | None
    media: dict[CallParty, MediaOptionsPayload] = Field(default_factory=dict)


class CallCommand(BaseModel):
    """One call action received over the realtime socket."""

    action: str
    conversation_id: int
    media: MediaOptionsPayload | None = None
    signal: dict[str, Any] = Field(default_factory=dict)
    detail: str = Field(default="", max_length=500)
