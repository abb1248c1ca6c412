from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.domain.enums import MessageKind, SenderKind


class SendMessageRequest(BaseModel):
    body: str = Field(min_length=1, max_length=4000)


class FileResponse(BaseModel):
    file_id: str
    filename: str
    content_type: str
    size: int

    model_config = ConfigDict(from_attributes=True)


class MessageResponse(BaseModel):
    id: int
    conversation_id: int
    sender_kind: SenderKind
    sender_id: str | None
    kind: MessageKind
    body: str
    file: FileResponse | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MessageListResponse(BaseModel):
    data: list[MessageResponse]
    next_cursor: int | None
