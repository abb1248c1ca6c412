from datetime import datetime

from pydantic import BaseModel

from app.schemas.conversation import ConversationResponse


class SlotListResponse(BaseModel):
    slots: list[datetime]
    slot_minutes: int
    timezone: str


class ReserveSlotRequest(BaseModel):
    slot_time: datetime


class SlotReservationResponse(BaseModel):
    conversation: ConversationResponse
    slot_time: datetime | None


class SlotReleaseResponse(BaseModel):
    conversation: ConversationResponse
    position: int
