from enum import Enum


class ConversationStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SLOT = "slot"
    CLOSED = "closed"


class SenderKind(str, Enum):
    VISITOR = "visitor"
    AGENT = "agent"
    SYSTEM = "system"


class MessageKind(str, Enum):
    TEXT = "text"
    FILE = "file"
    EVENT = "event"


class TransitionAction(str, Enum):
    ASSIGN_AGENT = "assign_agent"
    SCHEDULE = "schedule"
    UNSCHEDULE = "unschedule"
    CLOSE = "close"


class CallParty(str, Enum):
    VISITOR = "visitor"
    AGENT = "agent"

    @property
    def other(self) -> "CallParty":
        if self is CallParty.VISITOR:
            return CallParty.AGENT
        return CallParty.VISITOR


class CallStatus(str, Enum):
    IDLE = "idle"
    RINGING = "ringing"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDED = "ended"
    FAILED = "failed"


class CallAction(str, Enum):
    INITIATE = "initiate"
    ACCEPT = "accept"
    DECLINE = "decline"
    RING_TIMEOUT = "ring_timeout"
    SIGNAL = "signal"
    MEDIA_ESTABLISHED = "media_established"
    NEGOTIATION_FAILED = "negotiation_failed"
    RENEGOTIATE = "renegotiate"
    HANGUP = "hangup"
    ACKNOWLEDGE = "acknowledge"


class CallEndReason(str, Enum):
    NORMAL = "normal"
    DECLINED = "declined"
    TIMEOUT = "timeout"
    ERROR = "error"
    DISCONNECT = "disconnect"
