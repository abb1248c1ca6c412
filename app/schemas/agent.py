from datetime import datetime

from pydantic import BaseModel, Field

from app.schemas.conversation import ConversationResponse
from app.schemas.message import MessageResponse


class HeartbeatResponse(BaseModel):
    agent_id: str
    online: bool
    came_online: bool
    active_conversations: list[int]


class ClaimNextRequest(BaseModel):
    agent_name: str | None = Field(default=None, max_length=120)


class ClaimNextResponse(BaseModel):
    conversation: ConversationResponse | None
    message: MessageResponse | None
    pending: int


class AgentPresenceResponse(BaseModel):
    agent_id: str
    online: bool
    last_heartbeat_at: datetime


class PresenceOverviewResponse(BaseModel):
    online_agents: list[str]
    online_count: int
    pending: int
