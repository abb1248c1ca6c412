import asyncio
import math
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

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
    ConversationStatus,
    MessageKind,
    SenderKind,
    TransitionAction,
)
from app.domain.exceptions import ClosedConversationError
from app.domain.state_machine import ConversationLifecycle
from app.infra.realtime.channels import agent_channel, conversation_channel
from app.infra.realtime.events import RealtimeEvent
from app.infra.realtime.publisher import Envelope, EventPublisher
from app.infra.storage.base import ConversationIdSource, Storage
from app.services.call_signaling import CallPolicy, CallSignalingRelay
from app.services.slot_scheduler import SlotScheduler

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class MessagePage:
    data: list[Message]
    current_page: int
    last_page: int


def conversation_payload(conversation: Conversation) -> dict[str, Any]:
    return {
        "id": conversation.id,
        "session_id": conversation.session_id,
        "status": conversation.status.value,
        "assigned_agent_id": conversation.assigned_agent_id,
        "slot_time": (
            conversation.slot_time.isoformat() if conversation.slot_time is not None else None
        ),
        "closed_at": (
            conversation.closed_at.isoformat() if conversation.closed_at is not None else None
        ),
        "created_at": conversation.created_at.isoformat(),
    }


def message_payload(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sender_kind": message.sender_kind.value,
        "sender_id": message.sender_id,
        "kind": message.kind.value,
        "body": message.body,
        "file": message.file.to_dict() if message.file is not None else None,
        "created_at": message.created_at.isoformat(),
    }


class ConversationSession:
    """Authoritative state and message log for one conversation.

    All mutations go through ``lock``, which is also the call relay's lock,
    so message ids, status changes and call transitions are serialized per
    conversation. The lock is held across the storage write of a message:
    an id is only consumed once its message is durable, which keeps the
    sequence gap-free.
    """

    def __init__(
        self,
        conversation: Conversation,
        storage: Storage,
        publisher: EventPublisher,
        *,
        last_message_id: int = 0,
        retry: RetryPolicy | None = None,
        call_policy: CallPolicy | None = None,
    ) -> None:
        self.conversation = conversation
        self.lock = asyncio.Lock()
        self._storage = storage
        self._publisher = publisher
        self._retry = retry or RetryPolicy()
        self._last_message_id = last_message_id
        self.call = CallSignalingRelay(
            conversation.id,
            publisher,
            self.lock,
            policy=call_policy,
            retry=self._retry,
            is_closed=lambda: ConversationLifecycle.is_read_only(self.conversation.status),
        )

    @property
    def id(self) -> int:
        return self.conversation.id

    @property
    def last_message_id(self) -> int:
        return self._last_message_id

    @classmethod
    async def create(
        cls,
        visitor: VisitorSession,
        initial_message: str,
        *,
        storage: Storage,
        ids: ConversationIdSource,
        publisher: EventPublisher,
        greeting: str,
        retry: RetryPolicy | None = None,
        call_policy: CallPolicy | None = None,
    ) -> "ConversationSession":
        retry = retry or RetryPolicy()
        body = initial_message.strip()
        if not body:
            raise ValueError("Message content cannot be empty.")

        conversation_id = await retry_transient(ids.next_id, retry, what="conversation.id")
        conversation = Conversation(id=conversation_id, session_id=visitor.id)
        greeting_message = Message(
            conversation_id=conversation_id,
            id=1,
            sender_kind=SenderKind.SYSTEM,
            kind=MessageKind.EVENT,
            body=greeting,
        )
        visitor_message = Message(
            conversation_id=conversation_id,
            id=2,
            sender_kind=SenderKind.VISITOR,
            sender_id=visitor.id,
            body=body,
        )
        # One save call: the conversation and both messages land together or not at all.
        await retry_transient(
            lambda: storage.save(conversation, greeting_message, visitor_message),
            retry,
            what="conversation.create",
        )

        session = cls(
            conversation,
            storage,
            publisher,
            last_message_id=visitor_message.id,
            retry=retry,
            call_policy=call_policy,
        )
        logger.info("conversation_created", conversation_id=conversation_id, session_id=visitor.id)
        await session._emit(
            RealtimeEvent.CONVERSATION_CREATED,
            {"conversation": conversation_payload(conversation)},
        )
        await session._emit_message(greeting_message)
        await session._emit_message(visitor_message)
        return session

    async def append_message(
        self,
        sender_kind: SenderKind,
        body: str,
        *,
        sender_id: str | None = None,
        file: FileDescriptor | None = None,
    ) -> Message:
        cleaned = body.strip()
        if not cleaned and file is None:
            raise ValueError("Message content cannot be empty.")

        async with self.lock:
            self._assert_not_closed()
            message = Message(
                conversation_id=self.id,
                id=self._last_message_id + 1,
                sender_kind=sender_kind,
                sender_id=sender_id,
                kind=MessageKind.FILE if file is not None else MessageKind.TEXT,
                body=cleaned or (file.filename if file is not None else ""),
                file=file,
            )
            await self._save(message, what="message.append")
            self._last_message_id = message.id
            await self._emit_message(message)
            return message

    async def list_messages(self, cursor: int | None = None, limit: int = 20) -> list[Message]:
        """Messages strictly older than ``cursor``, newest first.

        Ids below a cursor never change, so the same cursor always yields the
        same page however many messages arrive afterwards.
        """
        filters: dict[str, Any] = {"conversation_id": self.id}
        if cursor is not None:
            filters["id__lt"] = cursor
        return await retry_transient(
            lambda: self._storage.query(Message, filters, order_by="-id", limit=limit),
            self._retry,
            what="message.list",
        )

    async def iter_messages(
        self, cursor: int | None = None, page_size: int = 20
    ) -> AsyncIterator[Message]:
        while True:
            page = await self.list_messages(cursor, page_size)
            for message in page:
                yield message
            if len(page) < page_size:
                return
            cursor = page[-1].id

    async def page(self, page: int, limit: int) -> MessagePage:
        page = max(page, 1)
        total = self._last_message_id
        last_page = max(math.ceil(total / limit), 1)
        data = await retry_transient(
            lambda: self._storage.query(
                Message,
                {"conversation_id": self.id},
                order_by="-id",
                limit=limit,
                offset=(page - 1) * limit,
            ),
            self._retry,
            what="message.page",
        )
        return MessagePage(data=data, current_page=page, last_page=last_page)

    async def assign(self, agent_id: str, agent_name: str | None = None) -> Message | None:
        """Persist and announce a promotion already applied by the queue."""
        async with self.lock:
            if self.conversation.status != ConversationStatus.ACTIVE:
                return None
            display_name = (agent_name or "").strip() or "A support agent"
            message = self._system_message(
                f"{display_name} joined the conversation.",
            )
            await self._save(self.conversation, message, what="conversation.assign")
            self._last_message_id = message.id
            await self._emit_message(message)
            await self._emit(
                RealtimeEvent.CONVERSATION_UPDATED,
                {"conversation": conversation_payload(self.conversation)},
                extra_topics=[agent_channel(agent_id)],
            )
            return message

    async def reserve_slot(self, scheduler: SlotScheduler, slot_time: datetime) -> Conversation:
        async with self.lock:
            self._assert_not_closed()
            await scheduler.reserve(self.conversation, slot_time)
            try:
                await self._save(self.conversation, what="conversation.reserve_slot")
            except Exception:
                await scheduler.release(self.conversation)
                raise
            await self._emit(
                RealtimeEvent.CONVERSATION_UPDATED,
                {"conversation": conversation_payload(self.conversation)},
            )
            return self.conversation

    async def release_slot(self, scheduler: SlotScheduler) -> Conversation:
        async with self.lock:
            self._assert_not_closed()
            slot_time = self.conversation.slot_time
            await scheduler.release(self.conversation)
            try:
                await self._save(self.conversation, what="conversation.release_slot")
            except Exception:
                if slot_time is not None:
                    await scheduler.reserve(self.conversation, slot_time)
                raise
            await self._emit(
                RealtimeEvent.CONVERSATION_UPDATED,
                {"conversation": conversation_payload(self.conversation)},
            )
            return self.conversation

    async def close(self, closed_by: str | None = None) -> Conversation:
        async with self.lock:
            if ConversationLifecycle.is_read_only(self.conversation.status):
                return self.conversation

            await self.call.force_end(CallEndReason.NORMAL)

            previous_status = self.conversation.status
            self.conversation.status = ConversationLifecycle.transition(
                previous_status, TransitionAction.CLOSE
            )
            self.conversation.closed_at = utc_now()
            message = self._system_message(
                f"{closed_by} closed the conversation." if closed_by else "The conversation was closed.",
            )
            try:
                await self._save(self.conversation, message, what="conversation.close")
            except Exception:
                self.conversation.status = previous_status
                self.conversation.closed_at = None
                raise
            self._last_message_id = message.id
            logger.info("conversation_closed", conversation_id=self.id, closed_by=closed_by)

            await self._emit_message(message)
            extra = (
                [agent_channel(self.conversation.assigned_agent_id)]
                if self.conversation.assigned_agent_id
                else []
            )
            await self._emit(
                RealtimeEvent.CONVERSATION_CLOSED,
                {"conversation": conversation_payload(self.conversation)},
                extra_topics=extra,
            )
            return self.conversation

    async def transcript(self) -> str:
        messages = await retry_transient(
            lambda: self._storage.query(Message, {"conversation_id": self.id}, order_by="id"),
            self._retry,
            what="message.transcript",
        )
        lines = [
            f"Conversation #{self.id}",
            f"Status: {self.conversation.status.value}",
            f"Started: {self.conversation.created_at.isoformat()}",
        ]
        if self.conversation.closed_at is not None:
            lines.append(f"Closed: {self.conversation.closed_at.isoformat()}")
        lines.append("")
        for message in messages:
            author = message.sender_kind.value.capitalize()
            if message.sender_id and message.sender_kind == SenderKind.AGENT:
                author = f"{author} {message.sender_id}"
            body = message.body
            if message.file is not None:
                body = f"[file] {message.file.filename} ({message.file.size} bytes)"
            lines.append(f"[{message.created_at:%Y-%m-%d %H:%M:%S}] {author}: {body}")
        return "\n".join(lines) + "\n"

    def call_snapshot(self) -> CallState:
        return self.call.snapshot()

    def _assert_not_closed(self) -> None:
        if ConversationLifecycle.is_read_only(self.conversation.status):
            raise ClosedConversationError(self.id)

    def _system_message(self, body: str) -> Message:
        return Message(
            conversation_id=self.id,
            id=self._last_message_id + 1,
            sender_kind=SenderKind.SYSTEM,
            kind=MessageKind.EVENT,
            body=body,
        )

    async def _save(self, *entities: Conversation | Message, what: str) -> None:
        await retry_transient(lambda: self._storage.save(*entities), self._retry, what=what)

    async def _emit_message(self, message: Message) -> None:
        await self._emit(RealtimeEvent.MESSAGE_SENT, {"message": message_payload(message)})

    async def _emit(
        self,
        event: RealtimeEvent,
        payload: dict[str, Any],
        *,
        extra_topics: list[str] | None = None,
    ) -> None:
        envelope = Envelope(type=event, conversation_id=self.id, payload=payload)
        for topic in [conversation_channel(self.id), *(extra_topics or [])]:
            await retry_transient(
                lambda topic=topic: self._publisher.publish(topic, envelope),
                self._retry,
                what=event.value,
            )
