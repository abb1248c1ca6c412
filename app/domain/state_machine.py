from app.domain.enums import (
    CallAction,
    CallStatus,
    ConversationStatus,
    TransitionAction,
)
from app.domain.exceptions import InvalidConversationTransition, StaleCallSignal


class ConversationLifecycle:
    """State machine for conversation lifecycle: pending -> active -> closed, pending <-> slot."""

    _allowed_transitions: dict[tuple[ConversationStatus, TransitionAction], ConversationStatus] = {
        (ConversationStatus.PENDING, TransitionAction.ASSIGN_AGENT): ConversationStatus.ACTIVE,
        (ConversationStatus.PENDING, TransitionAction.SCHEDULE): ConversationStatus.SLOT,
        (ConversationStatus.SLOT, TransitionAction.UNSCHEDULE): ConversationStatus.PENDING,
        (ConversationStatus.PENDING, TransitionAction.CLOSE): ConversationStatus.CLOSED,
        (ConversationStatus.ACTIVE, TransitionAction.CLOSE): ConversationStatus.CLOSED,
        (ConversationStatus.SLOT, TransitionAction.CLOSE): ConversationStatus.CLOSED,
    }

    @classmethod
    def transition(cls, current: ConversationStatus, action: TransitionAction) -> ConversationStatus:
        # Repeated close requests from either side are harmless.
        if current == ConversationStatus.CLOSED and action == TransitionAction.CLOSE:
            return ConversationStatus.CLOSED

        next_state = cls._allowed_transitions.get((current, action))
        if not next_state:
            raise InvalidConversationTransition(current=current, action=action)
        return next_state

    @staticmethod
    def is_read_only(status: ConversationStatus) -> bool:
        return status == ConversationStatus.CLOSED

    @staticmethod
    def is_waiting(status: ConversationStatus) -> bool:
        return status == ConversationStatus.PENDING


class CallLifecycle:
    """State machine for the call attached to a conversation.

    idle -> ringing -> connecting -> active -> ended -> idle, with
    ringing -> idle on decline/timeout and connecting -> failed -> idle
    when negotiation fails. Every edge not listed here is stale.
    """

    _allowed_transitions: dict[tuple[CallStatus, CallAction], CallStatus] = {
        (CallStatus.IDLE, CallAction.INITIATE): CallStatus.RINGING,
        (CallStatus.RINGING, CallAction.ACCEPT): CallStatus.CONNECTING,
        (CallStatus.RINGING, CallAction.DECLINE): CallStatus.IDLE,
        (CallStatus.RINGING, CallAction.RING_TIMEOUT): CallStatus.IDLE,
        (CallStatus.RINGING, CallAction.SIGNAL): CallStatus.RINGING,
        (CallStatus.CONNECTING, CallAction.SIGNAL): CallStatus.CONNECTING,
        (CallStatus.ACTIVE, CallAction.SIGNAL): CallStatus.ACTIVE,
        (CallStatus.CONNECTING, CallAction.MEDIA_ESTABLISHED): CallStatus.ACTIVE,
        # A late confirmation from the second peer is harmless.
        (CallStatus.ACTIVE, CallAction.MEDIA_ESTABLISHED): CallStatus.ACTIVE,
        (CallStatus.CONNECTING, CallAction.NEGOTIATION_FAILED): CallStatus.FAILED,
        (CallStatus.ACTIVE, CallAction.RENEGOTIATE): CallStatus.ACTIVE,
        (CallStatus.RINGING, CallAction.HANGUP): CallStatus.ENDED,
        (CallStatus.CONNECTING, CallAction.HANGUP): CallStatus.ENDED,
        (CallStatus.ACTIVE, CallAction.HANGUP): CallStatus.ENDED,
        (CallStatus.FAILED, CallAction.HANGUP): CallStatus.ENDED,
        (CallStatus.ENDED, CallAction.HANGUP): CallStatus.ENDED,
        (CallStatus.ENDED, CallAction.ACKNOWLEDGE): CallStatus.IDLE,
        (CallStatus.FAILED, CallAction.ACKNOWLEDGE): CallStatus.IDLE,
    }

    @classmethod
    def transition(cls, current: CallStatus, action: CallAction) -> CallStatus:
        next_state = cls._allowed_transitions.get((current, action))
        if not next_state:
            raise StaleCallSignal(current=current, action=action)
        return next_state

    @staticmethod
    def is_in_progress(status: CallStatus) -> bool:
        return status in {CallStatus.RINGING, CallStatus.CONNECTING, CallStatus.ACTIVE}
