import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from app.core.retry import RetryPolicy, retry_transient
from app.domain.entities import CallState, MediaOptions, utc_now
from app.domain.enums import CallAction, CallEndReason, CallParty, CallStatus
from app.domain.exceptions import ClosedConversationError, StaleCallSignal
from app.domain.state_machine import CallLifecycle
from app.infra.realtime.channels import call_party_channel, conversation_channel
from app.infra.realtime.events import RealtimeEvent
from app.infra.realtime.publisher import Envelope, EventPublisher

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CallPolicy:
    ringing_timeout: float = 30.0
    connecting_timeout: float = 45.0
    failed_reset: float = 10.0
    require_both_confirmations: bool = True


class CallSignalingRelay:
    """Two-party call handshake for one conversation.

    The relay never inspects offers, answers or ICE candidates; it only
    gates them by call state and forwards them to the other party's topic.
    Every operation runs under the owning conversation's lock, and every
    waiting state is bounded by a timer so clients never hang in
    "ringing" or "connecting".
    """

    def __init__(
        self,
        conversation_id: int,
        publisher: EventPublisher,
        lock: asyncio.Lock,
        policy: CallPolicy | None = None,
        retry: RetryPolicy | None = None,
        is_closed: Callable[[], bool] | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.state = CallState()
        self._publisher = publisher
        self._lock = lock
        self._policy = policy or CallPolicy()
        self._retry = retry or RetryPolicy()
        self._timer: asyncio.Task[None] | None = None
        self._is_closed = is_closed or (lambda: False)

    def snapshot(self) -> CallState:
        return self.state.copy()

    async def initiate(self, from_party: CallParty, media: MediaOptions | None = None) -> CallState:
        async with self._lock:
            self._assert_open()
            next_status = CallLifecycle.transition(self.state.status, CallAction.INITIATE)
            media = media or MediaOptions()
            self.state.begin(from_party, media)
            self.state.status = next_status
            self._start_timer(self._policy.ringing_timeout, CallAction.RING_TIMEOUT)
            logger.info(
                "call_initiated",
                conversation_id=self.conversation_id,
                call_id=self.state.call_id,
                initiator=from_party.value,
            )
            await self._publish(
                call_party_channel(self.conversation_id, from_party.other),
                RealtimeEvent.CALL_INVITED,
                {"from": from_party.value, "media": media.to_dict()},
            )
            return self.snapshot()

    async def relay_signal(self, from_party: CallParty, payload: Mapping[str, Any]) -> None:
        async with self._lock:
            CallLifecycle.transition(self.state.status, CallAction.SIGNAL)
            await self._publish(
                call_party_channel(self.conversation_id, from_party.other),
                RealtimeEvent.CALL_SIGNAL,
                {"from": from_party.value, "signal": dict(payload)},
            )

    async def accept(self, party: CallParty, media: MediaOptions | None = None) -> CallState:
        async with self._lock:
            self._assert_open()
            next_status = CallLifecycle.transition(self.state.status, CallAction.ACCEPT)
            if party == self.state.initiator:
                raise StaleCallSignal(
                    self.state.status, CallAction.ACCEPT, "the caller cannot accept its own call"
                )
            media = media or MediaOptions()
            self._cancel_timer()
            self.state.status = next_status
            self.state.media[party] = media
            self._start_timer(self._policy.connecting_timeout, CallAction.HANGUP)
            await self._publish(
                conversation_channel(self.conversation_id),
                RealtimeEvent.CALL_ACCEPTED,
                {"by": party.value, "media": media.to_dict()},
            )
            return self.snapshot()

    async def decline(self, party: CallParty) -> CallState:
        async with self._lock:
            next_status = CallLifecycle.transition(self.state.status, CallAction.DECLINE)
            if party == self.state.initiator:
                raise StaleCallSignal(
                    self.state.status, CallAction.DECLINE, "the caller hangs up instead of declining"
                )
            self._cancel_timer()
            declined = self.state.copy()
            declined.status = CallStatus.ENDED
            declined.ended_at = utc_now()
            declined.end_reason = CallEndReason.DECLINED
            await self._publish(
                conversation_channel(self.conversation_id),
                RealtimeEvent.CALL_ENDED,
                {"by": party.value, "reason": CallEndReason.DECLINED.value},
                call_id=declined.call_id,
            )
            self.state.reset()
            self.state.status = next_status
            return declined

    async def report_media_established(self, party: CallParty) -> CallState:
        async with self._lock:
            next_status = CallLifecycle.transition(
                self.state.status, CallAction.MEDIA_ESTABLISHED
            )
            if self.state.status == CallStatus.ACTIVE:
                return self.snapshot()

            self.state.established_by.add(party)
            confirmed = (
                len(self.state.established_by) == len(CallParty)
                if self._policy.require_both_confirmations
                else True
            )
            if not confirmed:
                return self.snapshot()

            self._cancel_timer()
            self.state.status = next_status
            self.state.connected_at = utc_now()
            await self._publish(
                conversation_channel(self.conversation_id),
                RealtimeEvent.CALL_CONNECTED,
                {"media": {p.value: m.to_dict() for p, m in self.state.media.items()}},
            )
            return self.snapshot()

    async def report_negotiation_failed(self, party: CallParty, detail: str = "") -> CallState:
        async with self._lock:
            next_status = CallLifecycle.transition(
                self.state.status, CallAction.NEGOTIATION_FAILED
            )
            self._cancel_timer()
            self.state.status = next_status
            self.state.ended_at = utc_now()
            self.state.end_reason = CallEndReason.ERROR
            logger.warning(
                "call_negotiation_failed",
                conversation_id=self.conversation_id,
                call_id=self.state.call_id,
                party=party.value,
                detail=detail,
            )
            await self._publish(
                conversation_channel(self.conversation_id),
                RealtimeEvent.CALL_ENDED,
                {"by": party.value, "reason": CallEndReason.ERROR.value, "detail": detail},
            )
            self._start_timer(self._policy.failed_reset, CallAction.ACKNOWLEDGE)
            return self.snapshot()

    async def acknowledge(self, party: CallParty) -> CallState:
        async with self._lock:
            CallLifecycle.transition(self.state.status, CallAction.ACKNOWLEDGE)
            self._cancel_timer()
            logger.info(
                "call_failure_acknowledged",
                conversation_id=self.conversation_id,
                call_id=self.state.call_id,
                party=party.value,
            )
            self.state.reset()
            return self.snapshot()

    async def renegotiate(
        self,
        party: CallParty,
        media: MediaOptions,
        payload: Mapping[str, Any] | None = None,
    ) -> CallState:
        async with self._lock:
            self._assert_open()
            CallLifecycle.transition(self.state.status, CallAction.RENEGOTIATE)
            self.state.media[party] = media
            await self._publish(
                call_party_channel(self.conversation_id, party.other),
                RealtimeEvent.CALL_SIGNAL,
                {
                    "from": party.value,
                    "renegotiation": True,
                    "media": media.to_dict(),
                    "signal": dict(payload or {}),
                },
            )
            return self.snapshot()

    async def hangup(
        self, party: CallParty | None, reason: CallEndReason = CallEndReason.NORMAL
    ) -> CallState:
        async with self._lock:
            return await self._end(party, reason)

    async def force_end(self, reason: CallEndReason) -> CallState | None:
        """End a call in progress; the caller must already hold the conversation lock."""
        if self.state.status == CallStatus.IDLE:
            self._cancel_timer()
            return None
        return await self._end(None, reason)

    async def _end(self, party: CallParty | None, reason: CallEndReason) -> CallState:
        next_status = CallLifecycle.transition(self.state.status, CallAction.HANGUP)
        self._cancel_timer()
        self.state.status = next_status
        self.state.ended_at = utc_now()
        self.state.end_reason = reason
        ended = self.snapshot()
        logger.info(
            "call_ended",
            conversation_id=self.conversation_id,
            call_id=ended.call_id,
            reason=reason.value,
        )
        try:
            await self._publish(
                conversation_channel(self.conversation_id),
                RealtimeEvent.CALL_ENDED,
                {"by": party.value if party else None, "reason": reason.value},
            )
        finally:
            # ended -> idle once the relay has cleaned up
            self.state.reset()
        return ended

    def _assert_open(self) -> None:
        if self._is_closed():
            raise ClosedConversationError(self.conversation_id)

    def _start_timer(self, delay: float, action: CallAction) -> None:
        self._cancel_timer()
        self._timer = asyncio.create_task(self._expire(delay, action, self.state.call_id))

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _expire(self, delay: float, action: CallAction, call_id: str | None) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            if self.state.call_id != call_id or self._timer is not asyncio.current_task():
                return
            self._timer = None
            if action == CallAction.RING_TIMEOUT and self.state.status == CallStatus.RINGING:
                logger.info("call_missed", conversation_id=self.conversation_id, call_id=call_id)
                initiator = self.state.initiator
                self.state.reset()
                await self._publish(
                    conversation_channel(self.conversation_id),
                    RealtimeEvent.CALL_MISSED,
                    {"from": initiator.value if initiator else None},
                    call_id=call_id,
                )
            elif action == CallAction.HANGUP and self.state.status == CallStatus.CONNECTING:
                await self._end(None, CallEndReason.TIMEOUT)
            elif action == CallAction.ACKNOWLEDGE and self.state.status == CallStatus.FAILED:
                self.state.reset()

    async def _publish(
        self,
        topic: str,
        event: RealtimeEvent,
        payload: dict[str, Any],
        *,
        call_id: str | None = None,
    ) -> None:
        envelope = Envelope(
            type=event,
            conversation_id=self.conversation_id,
            payload={"call_id": call_id or self.state.call_id, **payload},
        )
        await retry_transient(
            lambda: self._publisher.publish(topic, envelope),
            self._retry,
            what=event.value,
        )
