from enum import Enum


class RealtimeEvent(str, Enum):
    CONVERSATION_CREATED = "conversation.created"
    CONVERSATION_UPDATED = "conversation.updated"
    CONVERSATION_CLOSED = "conversation.closed"
    MESSAGE_SENT = "message.sent"
    CALL_INVITED = "call.invited"
    CALL_SIGNAL = "call.signal"
    CALL_ACCEPTED = "call.accepted"
    CALL_CONNECTED = "call.connected"
    CALL_ENDED = "call.ended"
    CALL_MISSED = "call.missed"
    QUEUE_UPDATED = "queue.updated"
    PRESENCE_UPDATED = "presence.updated"
