import pytest

from app.domain.enums import CallAction, CallStatus, ConversationStatus, TransitionAction
from app.domain.exceptions import InvalidConversationTransition, StaleCallSignal
from app.domain.state_machine import CallLifecycle, ConversationLifecycle


def test_pending_to_active_on_assignment() -> None:
    next_state = ConversationLifecycle.transition(
        ConversationStatus.PENDING, TransitionAction.ASSIGN_AGENT
    )
    assert next_state == ConversationStatus.ACTIVE


def test_pending_and_slot_switch_both_ways() -> None:
    scheduled = ConversationLifecycle.transition(
        ConversationStatus.PENDING, TransitionAction.SCHEDULE
    )
    assert scheduled == ConversationStatus.SLOT
    assert (
        ConversationLifecycle.transition(scheduled, TransitionAction.UNSCHEDULE)
        == ConversationStatus.PENDING
    )


@pytest.mark.parametrize(
    "status",
    [ConversationStatus.PENDING, ConversationStatus.ACTIVE, ConversationStatus.SLOT],
)
def test_every_open_state_can_close(status: ConversationStatus) -> None:
    assert (
        ConversationLifecycle.transition(status, TransitionAction.CLOSE)
        == ConversationStatus.CLOSED
    )


def test_repeated_close_is_idempotent() -> None:
    next_state = ConversationLifecycle.transition(
        ConversationStatus.CLOSED, TransitionAction.CLOSE
    )
    assert next_state == ConversationStatus.CLOSED


def test_active_cannot_be_scheduled() -> None:
    with pytest.raises(InvalidConversationTransition):
        ConversationLifecycle.transition(ConversationStatus.ACTIVE, TransitionAction.SCHEDULE)


def test_closed_is_terminal() -> None:
    with pytest.raises(InvalidConversationTransition):
        ConversationLifecycle.transition(ConversationStatus.CLOSED, TransitionAction.ASSIGN_AGENT)


def test_closed_is_read_only() -> None:
    assert ConversationLifecycle.is_read_only(ConversationStatus.CLOSED)
    assert not ConversationLifecycle.is_read_only(ConversationStatus.PENDING)
    assert ConversationLifecycle.is_waiting(ConversationStatus.PENDING)
    assert not ConversationLifecycle.is_waiting(ConversationStatus.SLOT)


def test_call_happy_path() -> None:
    status = CallStatus.IDLE
    for action, expected in [
        (CallAction.INITIATE, CallStatus.RINGING),
        (CallAction.ACCEPT, CallStatus.CONNECTING),
        (CallAction.MEDIA_ESTABLISHED, CallStatus.ACTIVE),
        (CallAction.RENEGOTIATE, CallStatus.ACTIVE),
        (CallAction.HANGUP, CallStatus.ENDED),
        (CallAction.ACKNOWLEDGE, CallStatus.IDLE),
    ]:
        status = CallLifecycle.transition(status, action)
        assert status == expected


def test_ringing_returns_to_idle_on_decline_or_timeout() -> None:
    assert CallLifecycle.transition(CallStatus.RINGING, CallAction.DECLINE) == CallStatus.IDLE
    assert CallLifecycle.transition(CallStatus.RINGING, CallAction.RING_TIMEOUT) == CallStatus.IDLE


def test_negotiation_failure_path() -> None:
    failed = CallLifecycle.transition(CallStatus.CONNECTING, CallAction.NEGOTIATION_FAILED)
    assert failed == CallStatus.FAILED
    assert CallLifecycle.transition(failed, CallAction.ACKNOWLEDGE) == CallStatus.IDLE


@pytest.mark.parametrize(
    ("status", "action"),
    [
        (CallStatus.IDLE, CallAction.ACCEPT),
        (CallStatus.IDLE, CallAction.SIGNAL),
        (CallStatus.IDLE, CallAction.HANGUP),
        (CallStatus.RINGING, CallAction.INITIATE),
        (CallStatus.ACTIVE, CallAction.ACCEPT),
        (CallStatus.CONNECTING, CallAction.RENEGOTIATE),
        (CallStatus.RINGING, CallAction.MEDIA_ESTABLISHED),
    ],
)
def test_stale_call_edges_raise(status: CallStatus, action: CallAction) -> None:
    with pytest.raises(StaleCallSignal):
        CallLifecycle.transition(status, action)


def test_in_progress_states() -> None:
    assert CallLifecycle.is_in_progress(CallStatus.RINGING)
    assert CallLifecycle.is_in_progress(CallStatus.ACTIVE)
    assert not CallLifecycle.is_in_progress(CallStatus.IDLE)
    assert not CallLifecycle.is_in_progress(CallStatus.FAILED)
