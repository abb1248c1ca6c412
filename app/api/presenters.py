from app.domain.entities import CallState, Conversation, Message
from app.schemas.call import CallStateResponse
from app.schemas.conversation import ConversationResponse
from app.schemas.message import MessageListResponse, MessageResponse


def to_conversation_response(conversation: Conversation) -> ConversationResponse:
    return ConversationResponse.model_validate(conversation)


def to_message_response(message: Message) -> MessageResponse:
    return MessageResponse.model_validate(message)


def to_message_list(messages: list[Message], limit: int) -> MessageListResponse:
    # A short page means the start of the log was reached.
    next_cursor = messages[-1].id if messages and len(messages) == limit else None
    return MessageListResponse(
        data=[to_message_response(message) for message in messages],
        next_cursor=next_cursor,
    )


def to_call_response(state: CallState) -> CallStateResponse:
    return CallStateResponse.model_validate(state.to_dict())
