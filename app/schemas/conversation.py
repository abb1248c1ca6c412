from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.domain.enums import ConversationStatus
from app.schemas.call import CallStateResponse
from app.schemas.common import Page
from app.schemas.message import MessageResponse


class StartConversationRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)
    display_name: str | None = Field(default=None, max_length=120)
    locale: str | None = Field(default=None, max_length=16)
    slot_time: datetime | None = None


class ConversationResponse(BaseModel):
    id: int
    session_id: str
    status: ConversationStatus
    assigned_agent_id: str | None
    slot_time: datetime | None
    closed_at: datetime | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConversationStartResponse(BaseModel):
    conversation: ConversationResponse
    messages: list[MessageResponse]
    position: int | None
    online_agents: int
    available_slots: list[datetime]
    slot_rejected_reason: str | None = None


class ConversationOverviewResponse(BaseModel):
    conversation: ConversationResponse
    messages: Page[MessageResponse]
    position: int | None
    online_agents: int
    available_slots: list[datetime]
    call: CallStateResponse


class QueuePositionResponse(BaseModel):
    conversation_id: int
    status: ConversationStatus
    position: int | None


class CloseConversationRequest(BaseModel):
    closed_by: str | None = Field(default=None, max_length=120)
