import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from itertools import islice

import structlog

from app.core.config import Settings
from app.core.retry import RetryPolicy, retry_transient
from app.domain.entities import (
    CallState,
    Conversation,
    FileDescriptor,
    Message,
    VisitorSession,
    utc_now,
)
from app.domain.enums import (
    CallEndReason,
    CallParty,
    ConversationStatus,
    MessageKind,
    SenderKind,
)
from app.domain.exceptions import (
    ClosedConversationError,
    ConversationAccessDenied,
    ConversationNotFound,
    NotFound,
    SlotConflict,
    StaleCallSignal,
)
from app.domain.state_machine import CallLifecycle, ConversationLifecycle
from app.infra.files import FileStore
from app.infra.realtime.channels import PRESENCE_CHANNEL, QUEUE_CHANNEL
from app.infra.realtime.events import RealtimeEvent
from app.infra.realtime.publisher import Envelope, EventPublisher
from app.infra.storage.base import ConversationIdSource, Storage
from app.services.call_signaling import CallPolicy, CallSignalingRelay
from app.services.conversation_session import ConversationSession, MessagePage
from app.services.presence import PresenceTracker
from app.services.queue import ConversationQueue
from app.services.slot_scheduler import AvailabilityGrid, SlotScheduler

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class ConversationStart:
    conversation: Conversation
    messages: list[Message]
    position: int | None
    online_agents: int
    available_slots: list[datetime] = field(default_factory=list)
    slot_rejected_reason: str | None = None


@dataclass(slots=True)
class ConversationOverview:
    conversation: Conversation
    messages: MessagePage
    position: int | None
    online_agents: int
    available_slots: list[datetime]
    call: CallState


@dataclass(slots=True)
class ClaimResult:
    conversation: Conversation
    message: Message


class SupportDesk:
    """Wires presence, queue, scheduler and sessions behind one API.

    Owns the registry of live conversation sessions: there is exactly one
    ``ConversationSession`` per open conversation id, so every writer for a
    conversation contends on the same lock. Closed conversations are evicted
    and reloaded read-only on demand.
    """

    def __init__(
        self,
        settings: Settings,
        storage: Storage,
        ids: ConversationIdSource,
        publisher: EventPublisher,
        files: FileStore | None = None,
        presence: PresenceTracker | None = None,
        queue: ConversationQueue | None = None,
        scheduler: SlotScheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.ids = ids
        self.publisher = publisher
        self.files = files
        self.clock = clock
        self.retry = RetryPolicy(
            attempts=settings.storage_retry_attempts,
            backoff_seconds=settings.storage_retry_backoff_seconds,
        )
        self.call_policy = CallPolicy(
            ringing_timeout=settings.ringing_timeout_seconds,
            connecting_timeout=settings.connecting_timeout_seconds,
            failed_reset=settings.failed_call_reset_seconds,
            require_both_confirmations=settings.require_both_media_confirmations,
        )
        self.presence = presence or PresenceTracker(clock)
        self.queue = queue or ConversationQueue(settings.agent_capacity)
        self.scheduler = scheduler or SlotScheduler(
            AvailabilityGrid.parse(
                settings.slot_grid_raw,
                slot_minutes=settings.slot_minutes,
                timezone=settings.slot_timezone,
                min_notice=timedelta(minutes=settings.slot_min_notice_minutes),
            ),
            clock,
        )
        self._sessions: dict[int, ConversationSession] = {}
        self._registry_lock = asyncio.Lock()

    async def startup(self) -> None:
        """Rebuild queue order, reservations and assignments from storage."""
        open_statuses = [
            ConversationStatus.PENDING,
            ConversationStatus.ACTIVE,
            ConversationStatus.SLOT,
        ]
        conversations = await retry_transient(
            lambda: self.storage.query(
                Conversation, {"status__in": open_statuses}, order_by="id"
            ),
            self.retry,
            what="desk.startup",
        )
        self.scheduler.restore(conversations)
        async with self._registry_lock:
            for conversation in conversations:
                session = await self._load_session(conversation)
                self._sessions[conversation.id] = session
                if ConversationLifecycle.is_waiting(conversation.status):
                    await self.queue.enqueue(session.conversation)
                else:
                    self.queue.restore_active(session.conversation)
        logger.info(
            "desk_started",
            open_conversations=len(conversations),
            pending=self.queue.pending_count(),
        )

    # Sessions and access

    async def get_session(self, conversation_id: int) -> ConversationSession:
        session = self._sessions.get(conversation_id)
        if session is not None:
            return session
        async with self._registry_lock:
            session = self._sessions.get(conversation_id)
            if session is not None:
                return session
            conversation = await retry_transient(
                lambda: self.storage.find(Conversation, conversation_id),
                self.retry,
                what="conversation.find",
            )
            if conversation is None:
                raise ConversationNotFound(conversation_id)
            session = await self._load_session(conversation)
            if not ConversationLifecycle.is_read_only(conversation.status):
                self._sessions[conversation_id] = session
            return session

    async def authorize(
        self, conversation_id: int, sender_kind: SenderKind, caller_id: str
    ) -> ConversationSession:
        """Resolve a session the caller may act on.

        Visitors only reach their own conversations. Agents reach the ones
        assigned to them and, read-only, unassigned ones still waiting.
        """
        session = await self.get_session(conversation_id)
        conversation = session.conversation
        if sender_kind == SenderKind.VISITOR:
            allowed = conversation.session_id == caller_id
        elif sender_kind == SenderKind.AGENT:
            allowed = conversation.assigned_agent_id in (None, caller_id)
        else:
            allowed = False
        if not allowed:
            raise ConversationAccessDenied(conversation_id)
        return session

    async def touch_visitor(
        self,
        session_id: str,
        display_name: str | None = None,
        locale: str | None = None,
    ) -> VisitorSession:
        visitor = await retry_transient(
            lambda: self.storage.find(VisitorSession, session_id),
            self.retry,
            what="visitor.find",
        )
        if visitor is None:
            visitor = VisitorSession(id=session_id)
        if display_name and display_name.strip():
            visitor.display_name = display_name.strip()
        if locale and locale.strip():
            visitor.locale = locale.strip()
        visitor.last_seen_at = self.clock()
        await retry_transient(lambda: self.storage.save(visitor), self.retry, what="visitor.save")
        return visitor

    # Conversations

    async def start_conversation(
        self,
        session_id: str,
        initial_message: str,
        *,
        display_name: str | None = None,
        locale: str | None = None,
        slot_time: datetime | None = None,
    ) -> ConversationStart:
        visitor = await self.touch_visitor(session_id, display_name, locale)
        session = await ConversationSession.create(
            visitor,
            initial_message,
            storage=self.storage,
            ids=self.ids,
            publisher=self.publisher,
            greeting=self.settings.greeting_message,
            retry=self.retry,
            call_policy=self.call_policy,
        )
        async with self._registry_lock:
            self._sessions[session.id] = session
        await self.queue.enqueue(session.conversation)

        reserved = False
        slot_rejected_reason = None
        if slot_time is not None:
            try:
                await self.reserve_slot(session.id, session_id, slot_time)
                reserved = True
            except SlotConflict as exc:
                logger.info(
                    "requested_slot_rejected",
                    conversation_id=session.id,
                    slot_time=exc.slot_time.isoformat(),
                    reason=exc.reason,
                )
                slot_rejected_reason = exc.reason
        if not reserved:
            await self._publish_queue_update()

        online_agents = self.presence.online_count()
        available_slots: list[datetime] = []
        if online_agents == 0 or slot_rejected_reason is not None:
            available_slots = self.list_slots()

        messages = await session.list_messages(limit=self.settings.page_size)
        return ConversationStart(
            conversation=session.conversation,
            messages=list(reversed(messages)),
            position=self.queue.position_of(session.id),
            online_agents=online_agents,
            available_slots=available_slots,
            slot_rejected_reason=slot_rejected_reason,
        )

    async def overview(self, conversation_id: int, session_id: str) -> ConversationOverview:
        session = await self.authorize(conversation_id, SenderKind.VISITOR, session_id)
        online_agents = self.presence.online_count()
        waiting = ConversationLifecycle.is_waiting(session.conversation.status)
        return ConversationOverview(
            conversation=session.conversation,
            messages=await session.page(1, self.settings.page_size),
            position=self.queue.position_of(conversation_id),
            online_agents=online_agents,
            available_slots=self.list_slots() if waiting and online_agents == 0 else [],
            call=session.call_snapshot(),
        )

    async def close_conversation(
        self,
        conversation_id: int,
        sender_kind: SenderKind,
        caller_id: str,
        closed_by: str | None = None,
    ) -> Conversation:
        session = await self._session_for_writer(conversation_id, sender_kind, caller_id)
        if ConversationLifecycle.is_read_only(session.conversation.status):
            return session.conversation

        was_queued = await self.queue.discard(conversation_id)
        try:
            conversation = await session.close(closed_by)
        except Exception:
            if was_queued and ConversationLifecycle.is_waiting(session.conversation.status):
                await self.queue.enqueue(session.conversation)
            raise

        if conversation.assigned_agent_id:
            await self.queue.release(conversation.assigned_agent_id, conversation_id)
        await self.scheduler.forget(conversation_id)
        async with self._registry_lock:
            self._sessions.pop(conversation_id, None)
        await self._publish_queue_update()
        return conversation

    # Messages

    async def post_message(
        self,
        conversation_id: int,
        sender_kind: SenderKind,
        caller_id: str,
        body: str,
    ) -> Message:
        session = await self._session_for_writer(conversation_id, sender_kind, caller_id)
        return await session.append_message(sender_kind, body, sender_id=caller_id)

    async def post_file(
        self,
        conversation_id: int,
        sender_kind: SenderKind,
        caller_id: str,
        *,
        filename: str,
        content_type: str,
        data: bytes,
        caption: str = "",
    ) -> Message:
        if self.files is None:
            raise RuntimeError("File uploads are not configured")
        if not data:
            raise ValueError("Uploaded file is empty.")
        if len(data) > self.settings.max_upload_bytes:
            raise ValueError(
                f"Uploaded file exceeds the {self.settings.max_upload_bytes} byte limit."
            )
        session = await self._session_for_writer(conversation_id, sender_kind, caller_id)
        if ConversationLifecycle.is_read_only(session.conversation.status):
            raise ClosedConversationError(conversation_id)
        descriptor = await self.files.put(filename, content_type, data)
        return await session.append_message(
            sender_kind, caption, sender_id=caller_id, file=descriptor
        )

    async def get_file(
        self,
        conversation_id: int,
        sender_kind: SenderKind,
        caller_id: str,
        file_id: str,
    ) -> tuple[FileDescriptor, bytes]:
        if self.files is None:
            raise RuntimeError("File uploads are not configured")
        await self.authorize(conversation_id, sender_kind, caller_id)
        attachments = await retry_transient(
            lambda: self.storage.query(
                Message, {"conversation_id": conversation_id, "kind": MessageKind.FILE}
            ),
            self.retry,
            what="message.attachments",
        )
        if not any(m.file is not None and m.file.file_id == file_id for m in attachments):
            raise NotFound("File", file_id)
        return await self.files.get(file_id)

    async def list_messages(
        self,
        conversation_id: int,
        sender_kind: SenderKind,
        caller_id: str,
        before: int | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        session = await self.authorize(conversation_id, sender_kind, caller_id)
        return await session.list_messages(before, self.page_limit(limit))

    async def message_page(
        self,
        conversation_id: int,
        sender_kind: SenderKind,
        caller_id: str,
        page: int = 1,
        limit: int | None = None,
    ) -> MessagePage:
        session = await self.authorize(conversation_id, sender_kind, caller_id)
        return await session.page(page, self.page_limit(limit))

    async def transcript(
        self, conversation_id: int, sender_kind: SenderKind, caller_id: str
    ) -> str:
        session = await self.authorize(conversation_id, sender_kind, caller_id)
        return await session.transcript()

    # Queue

    async def claim_next(self, agent_id: str, agent_name: str | None = None) -> ClaimResult | None:
        """Promote the oldest pending conversation to ``agent_id``."""
        await self.heartbeat(agent_id)
        while True:
            conversation = await self.queue.next_for_agent(agent_id)
            if conversation is None:
                return None

            session = await self.get_session(conversation.id)
            try:
                message = await session.assign(agent_id, agent_name)
            except Exception:
                await self._undo_promotion(session, agent_id)
                raise
            if message is None:
                # Closed or scheduled between the pop and the lock.
                await self.queue.release(agent_id, conversation.id)
                continue

            logger.info("conversation_claimed", conversation_id=conversation.id, agent_id=agent_id)
            await self._publish_queue_update()
            return ClaimResult(conversation=session.conversation, message=message)

    def position_of(self, conversation_id: int) -> int | None:
        return self.queue.position_of(conversation_id)

    async def visitor_position(self, conversation_id: int, session_id: str) -> int | None:
        await self.authorize(conversation_id, SenderKind.VISITOR, session_id)
        return self.position_of(conversation_id)

    # Slots

    def list_slots(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[datetime]:
        start = start or self.clock()
        end = end or start + timedelta(days=self.settings.slot_listing_days)
        limit = limit or self.settings.slot_listing_limit
        return list(islice(self.scheduler.list_available(start, end), limit))

    async def reserve_slot(
        self, conversation_id: int, session_id: str, slot_time: datetime
    ) -> Conversation:
        session = await self.authorize(conversation_id, SenderKind.VISITOR, session_id)
        discarded = await self.queue.discard(conversation_id)
        try:
            conversation = await session.reserve_slot(self.scheduler, slot_time)
        except Exception:
            if discarded and ConversationLifecycle.is_waiting(session.conversation.status):
                await self.queue.enqueue(session.conversation)
            raise
        await self._publish_queue_update()
        return conversation

    async def release_slot(self, conversation_id: int, session_id: str) -> int:
        session = await self.authorize(conversation_id, SenderKind.VISITOR, session_id)
        await session.release_slot(self.scheduler)
        position = await self.queue.enqueue(session.conversation)
        await self._publish_queue_update()
        return position

    # Presence

    async def heartbeat(self, agent_id: str) -> bool:
        came_online = self.presence.heartbeat(agent_id)
        if came_online:
            logger.info("agent_online", agent_id=agent_id)
            await self._publish_presence(agent_id, online=True)
        return came_online

    async def agent_offline(self, agent_id: str) -> bool:
        if not self.presence.mark_offline(agent_id):
            return False
        await self._agent_went_offline(agent_id)
        return True

    async def sweep_presence(self) -> list[str]:
        stale = self.presence.sweep_stale(
            timedelta(seconds=self.settings.presence_stale_after_seconds)
        )
        for agent_id in stale:
            await self._agent_went_offline(agent_id)
        return stale

    async def run_presence_sweeper(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_presence()
            except Exception:
                logger.exception("presence_sweep_failed")

    async def visitor_disconnected(self, conversation_id: int) -> CallState | None:
        session = self._sessions.get(conversation_id)
        if session is None:
            return None
        return await self._drop_call(session, CallParty.VISITOR)

    # Calls

    async def call_relay(
        self, conversation_id: int, party: CallParty, caller_id: str
    ) -> CallSignalingRelay:
        sender_kind = SenderKind.VISITOR if party == CallParty.VISITOR else SenderKind.AGENT
        session = await self._session_for_writer(conversation_id, sender_kind, caller_id)
        if ConversationLifecycle.is_read_only(session.conversation.status):
            raise ClosedConversationError(conversation_id)
        return session.call

    # Internals

    async def _load_session(self, conversation: Conversation) -> ConversationSession:
        latest = await retry_transient(
            lambda: self.storage.query(
                Message, {"conversation_id": conversation.id}, order_by="-id", limit=1
            ),
            self.retry,
            what="message.latest",
        )
        return ConversationSession(
            conversation,
            self.storage,
            self.publisher,
            last_message_id=latest[0].id if latest else 0,
            retry=self.retry,
            call_policy=self.call_policy,
        )

    async def _session_for_writer(
        self, conversation_id: int, sender_kind: SenderKind, caller_id: str
    ) -> ConversationSession:
        session = await self.authorize(conversation_id, sender_kind, caller_id)
        if (
            sender_kind == SenderKind.AGENT
            and session.conversation.assigned_agent_id != caller_id
        ):
            raise ConversationAccessDenied(conversation_id)
        return session

    async def _undo_promotion(self, session: ConversationSession, agent_id: str) -> None:
        async with session.lock:
            conversation = session.conversation
            if conversation.status == ConversationStatus.ACTIVE:
                conversation.status = ConversationStatus.PENDING
                conversation.assigned_agent_id = None
        await self.queue.release(agent_id, session.id)
        if ConversationLifecycle.is_waiting(session.conversation.status):
            await self.queue.enqueue(session.conversation)
        logger.warning("conversation_promotion_reverted", conversation_id=session.id, agent_id=agent_id)

    async def _agent_went_offline(self, agent_id: str) -> None:
        logger.info("agent_offline", agent_id=agent_id)
        for conversation_id in sorted(self.queue.active_for(agent_id)):
            session = self._sessions.get(conversation_id)
            if session is not None:
                await self._drop_call(session, CallParty.AGENT)
        await self._publish_presence(agent_id, online=False)

    async def _drop_call(self, session: ConversationSession, party: CallParty) -> CallState | None:
        if not CallLifecycle.is_in_progress(session.call.state.status):
            return None
        try:
            return await session.call.hangup(party, CallEndReason.DISCONNECT)
        except StaleCallSignal as exc:
            # The call finished on its own before the lock was acquired.
            logger.info("stale_call_signal", conversation_id=session.id, error=str(exc))
            return None

    def page_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.settings.page_size
        return min(max(limit, 1), self.settings.max_page_size)

    async def _publish_queue_update(self) -> None:
        envelope = Envelope(
            type=RealtimeEvent.QUEUE_UPDATED,
            conversation_id=None,
            payload={
                "pending": self.queue.pending_count(),
                "pending_ids": self.queue.pending_ids(),
                "online_agents": self.presence.online_count(),
            },
        )
        await retry_transient(
            lambda: self.publisher.publish(QUEUE_CHANNEL, envelope),
            self.retry,
            what=RealtimeEvent.QUEUE_UPDATED.value,
        )

    async def _publish_presence(self, agent_id: str, *, online: bool) -> None:
        envelope = Envelope(
            type=RealtimeEvent.PRESENCE_UPDATED,
            conversation_id=None,
            payload={
                "agent_id": agent_id,
                "online": online,
                "online_agents": self.presence.online_count(),
            },
        )
        await retry_transient(
            lambda: self.publisher.publish(PRESENCE_CHANNEL, envelope),
            self.retry,
            what=RealtimeEvent.PRESENCE_UPDATED.value,
        )
