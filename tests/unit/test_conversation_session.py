import asyncio
from datetime import UTC, datetime

import pytest

from app.domain.entities import Conversation, Message, VisitorSession
from app.domain.enums import (
    CallEndReason,
    CallParty,
    CallStatus,
    ConversationStatus,
    MessageKind,
    SenderKind,
)
from app.domain.exceptions import ClosedConversationError, SlotConflict
from app.infra.realtime.events import RealtimeEvent
from app.infra.realtime.publisher import Envelope
from app.infra.storage.memory import InMemoryConversationIds, InMemoryStorage
from app.services.conversation_session import ConversationSession
from app.services.slot_scheduler import AvailabilityGrid, SlotScheduler


class RecordingPublisher:
    def __init__(self) -> None:
        self.published: list[tuple[str, Envelope]] = []

    async def publish(self, topic: str, envelope: Envelope) -> int:
        self.published.append((topic, envelope))
        return 1

    def events(self, topic: str | None = None) -> list[RealtimeEvent]:
        return [
            envelope.type
            for published_topic, envelope in self.published
            if topic is None or published_topic == topic
        ]


class CountingStorage(InMemoryStorage):
    def __init__(self) -> None:
        super().__init__()
        self.save_calls: list[tuple[object, ...]] = []
        self.fail_next_save = False

    async def save(self, *entities) -> None:
        self.save_calls.append(entities)
        if self.fail_next_save:
            self.fail_next_save = False
            raise RuntimeError("disk full")
        # Yield so concurrent writers genuinely interleave.
        await asyncio.sleep(0)
        await super().save(*entities)


async def _create(
    storage: CountingStorage, publisher: RecordingPublisher, body: str = "Hello, I need help"
) -> ConversationSession:
    return await ConversationSession.create(
        VisitorSession(id="visitor-1"),
        body,
        storage=storage,
        ids=InMemoryConversationIds(),
        publisher=publisher,
        greeting="Welcome!",
    )


@pytest.mark.asyncio
async def test_create_persists_conversation_and_messages_atomically() -> None:
    storage = CountingStorage()
    publisher = RecordingPublisher()

    session = await _create(storage, publisher)

    assert len(storage.save_calls) == 1
    saved = storage.save_calls[0]
    assert isinstance(saved[0], Conversation)
    assert [message.id for message in saved[1:]] == [1, 2]
    assert session.conversation.status == ConversationStatus.PENDING
    assert session.last_message_id == 2
    assert publisher.events("conversation:1") == [
        RealtimeEvent.CONVERSATION_CREATED,
        RealtimeEvent.MESSAGE_SENT,
        RealtimeEvent.MESSAGE_SENT,
    ]
    greeting, first = await storage.query(Message, {"conversation_id": 1}, order_by="id")
    assert greeting.sender_kind == SenderKind.SYSTEM
    assert greeting.kind == MessageKind.EVENT
    assert first.body == "Hello, I need help"


@pytest.mark.asyncio
async def test_create_rejects_blank_message() -> None:
    storage = CountingStorage()
    with pytest.raises(ValueError):
        await _create(storage, RecordingPublisher(), body="   ")
    assert storage.save_calls == []


@pytest.mark.asyncio
async def test_concurrent_appends_get_gap_free_ordered_ids() -> None:
    storage = CountingStorage()
    publisher = RecordingPublisher()
    session = await _create(storage, publisher)

    messages = await asyncio.gather(
        *(
            session.append_message(SenderKind.VISITOR, f"line {index}", sender_id="visitor-1")
            for index in range(20)
        )
    )

    assert sorted(message.id for message in messages) == list(range(3, 23))
    published_ids = [
        envelope.payload["message"]["id"]
        for _, envelope in publisher.published
        if envelope.type == RealtimeEvent.MESSAGE_SENT
    ]
    assert published_ids == list(range(1, 23))


@pytest.mark.asyncio
async def test_failed_save_does_not_consume_an_id() -> None:
    storage = CountingStorage()
    session = await _create(storage, RecordingPublisher())
    storage.fail_next_save = True

    with pytest.raises(RuntimeError):
        await session.append_message(SenderKind.VISITOR, "lost")
    message = await session.append_message(SenderKind.VISITOR, "kept")

    assert message.id == 3


@pytest.mark.asyncio
async def test_append_rejects_blank_and_closed() -> None:
    session = await _create(CountingStorage(), RecordingPublisher())

    with pytest.raises(ValueError):
        await session.append_message(SenderKind.VISITOR, "  ")
    await session.close()
    with pytest.raises(ClosedConversationError):
        await session.append_message(SenderKind.VISITOR, "anyone?")


@pytest.mark.asyncio
async def test_cursor_pagination_is_stable_while_messages_arrive() -> None:
    session = await _create(CountingStorage(), RecordingPublisher())
    for index in range(8):
        await session.append_message(SenderKind.AGENT, f"reply {index}", sender_id="agent-1")

    newest = await session.list_messages(limit=4)
    assert [message.id for message in newest] == [10, 9, 8, 7]

    before = await session.list_messages(cursor=7, limit=4)
    await session.append_message(SenderKind.VISITOR, "new one")
    again = await session.list_messages(cursor=7, limit=4)

    assert [message.id for message in before] == [6, 5, 4, 3]
    assert [message.id for message in again] == [6, 5, 4, 3]


@pytest.mark.asyncio
async def test_iter_messages_walks_whole_log_backwards() -> None:
    session = await _create(CountingStorage(), RecordingPublisher())
    for index in range(5):
        await session.append_message(SenderKind.VISITOR, f"line {index}")

    ids = [message.id async for message in session.iter_messages(page_size=3)]

    assert ids == [7, 6, 5, 4, 3, 2, 1]


@pytest.mark.asyncio
async def test_page_view_reports_last_page() -> None:
    session = await _create(CountingStorage(), RecordingPublisher())
    for index in range(3):
        await session.append_message(SenderKind.VISITOR, f"line {index}")

    first = await session.page(1, 2)
    last = await session.page(3, 2)

    assert first.last_page == 3
    assert [message.id for message in first.data] == [5, 4]
    assert [message.id for message in last.data] == [1]


@pytest.mark.asyncio
async def test_close_is_idempotent_and_announced_once() -> None:
    publisher = RecordingPublisher()
    session = await _create(CountingStorage(), publisher)

    first = await session.close("Visitor")
    second = await session.close("Visitor")

    assert first.status == second.status == ConversationStatus.CLOSED
    assert first.closed_at is not None
    assert publisher.events().count(RealtimeEvent.CONVERSATION_CLOSED) == 1
    assert session.last_message_id == 3


@pytest.mark.asyncio
async def test_close_ends_a_call_in_progress() -> None:
    publisher = RecordingPublisher()
    session = await _create(CountingStorage(), publisher)
    await session.call.initiate(CallParty.VISITOR)

    await session.close()

    assert session.call_snapshot().status == CallStatus.IDLE
    ended = [
        envelope
        for _, envelope in publisher.published
        if envelope.type == RealtimeEvent.CALL_ENDED
    ]
    assert len(ended) == 1
    assert ended[0].payload["reason"] == CallEndReason.NORMAL.value


@pytest.mark.asyncio
async def test_assign_is_noop_unless_promoted() -> None:
    session = await _create(CountingStorage(), RecordingPublisher())
    assert await session.assign("agent-1") is None

    session.conversation.status = ConversationStatus.ACTIVE
    session.conversation.assigned_agent_id = "agent-1"
    message = await session.assign("agent-1", "Maya")

    assert message is not None
    assert message.body == "Maya joined the conversation."


@pytest.mark.asyncio
async def test_reserve_slot_rolls_back_when_save_fails() -> None:
    storage = CountingStorage()
    session = await _create(storage, RecordingPublisher())
    scheduler = SlotScheduler(
        AvailabilityGrid.parse("mon 14:00-15:00"),
        clock=lambda: datetime(2026, 3, 2, 9, 0, tzinfo=UTC),
    )
    slot = datetime(2026, 3, 2, 14, 0, tzinfo=UTC)
    storage.fail_next_save = True

    with pytest.raises(RuntimeError):
        await session.reserve_slot(scheduler, slot)

    assert session.conversation.status == ConversationStatus.PENDING
    assert not scheduler.is_reserved(slot)
    await session.reserve_slot(scheduler, slot)
    assert session.conversation.slot_time == slot
    other = await _create(CountingStorage(), RecordingPublisher())
    with pytest.raises(SlotConflict):
        await other.reserve_slot(scheduler, slot)


@pytest.mark.asyncio
async def test_transcript_renders_full_log() -> None:
    session = await _create(CountingStorage(), RecordingPublisher())
    await session.append_message(SenderKind.AGENT, "How can I help?", sender_id="agent-1")

    transcript = await session.transcript()

    assert transcript.startswith("Conversation #1\n")
    assert "Visitor: Hello, I need help" in transcript
    assert "Agent agent-1: How can I help?" in transcript
    assert transcript.index("Welcome!") < transcript.index("How can I help?")
