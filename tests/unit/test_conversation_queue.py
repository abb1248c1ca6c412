import asyncio

import pytest

from app.domain.entities import Conversation
from app.domain.enums import ConversationStatus
from app.domain.exceptions import CapacityExceeded
from app.services.queue import ConversationQueue


def _pending(conversation_id: int) -> Conversation:
    return Conversation(id=conversation_id, session_id=f"visitor-{conversation_id}")


@pytest.mark.asyncio
async def test_positions_recompute_after_promotion() -> None:
    queue = ConversationQueue()
    first = _pending(1)
    second = _pending(2)

    assert await queue.enqueue(first) == 1
    assert await queue.enqueue(second) == 2

    promoted = await queue.next_for_agent("agent-1")

    assert promoted is first
    assert first.status == ConversationStatus.ACTIVE
    assert first.assigned_agent_id == "agent-1"
    assert queue.position_of(2) == 1
    assert queue.position_of(1) is None


@pytest.mark.asyncio
async def test_enqueue_orders_by_id_and_is_idempotent() -> None:
    queue = ConversationQueue()
    await queue.enqueue(_pending(5))
    late_arrival = _pending(3)

    assert await queue.enqueue(late_arrival) == 1
    assert await queue.enqueue(late_arrival) == 1
    assert queue.pending_ids() == [3, 5]
    assert queue.pending_count() == 2


@pytest.mark.asyncio
async def test_enqueue_rejects_non_pending() -> None:
    queue = ConversationQueue()
    active = Conversation(id=1, session_id="visitor-1", status=ConversationStatus.ACTIVE)
    with pytest.raises(ValueError):
        await queue.enqueue(active)


@pytest.mark.asyncio
async def test_empty_queue_returns_none() -> None:
    queue = ConversationQueue()
    assert await queue.next_for_agent("agent-1") is None


@pytest.mark.asyncio
async def test_capacity_limits_promotions() -> None:
    queue = ConversationQueue(max_active_per_agent=1)
    await queue.enqueue(_pending(1))
    await queue.enqueue(_pending(2))
    await queue.next_for_agent("agent-1")

    with pytest.raises(CapacityExceeded):
        await queue.next_for_agent("agent-1")
    assert queue.position_of(2) == 1

    await queue.release("agent-1", 1)
    promoted = await queue.next_for_agent("agent-1")
    assert promoted is not None and promoted.id == 2


@pytest.mark.asyncio
async def test_concurrent_agents_never_share_a_conversation() -> None:
    queue = ConversationQueue()
    for conversation_id in range(1, 6):
        await queue.enqueue(_pending(conversation_id))

    results = await asyncio.gather(
        *(queue.next_for_agent(f"agent-{index}") for index in range(8))
    )

    promoted = [conversation.id for conversation in results if conversation is not None]
    assert sorted(promoted) == [1, 2, 3, 4, 5]
    assert results.count(None) == 3


@pytest.mark.asyncio
async def test_discard_removes_pending_entry() -> None:
    queue = ConversationQueue()
    for conversation_id in (1, 2, 3):
        await queue.enqueue(_pending(conversation_id))

    assert await queue.discard(2) is True
    assert await queue.discard(2) is False
    assert queue.position_of(3) == 2


@pytest.mark.asyncio
async def test_stale_entries_are_skipped_on_promotion() -> None:
    queue = ConversationQueue()
    stale = _pending(1)
    fresh = _pending(2)
    await queue.enqueue(stale)
    await queue.enqueue(fresh)
    stale.status = ConversationStatus.CLOSED

    promoted = await queue.next_for_agent("agent-1")

    assert promoted is fresh
    assert queue.pending_count() == 0


def test_restore_active_counts_against_capacity() -> None:
    queue = ConversationQueue()
    queue.restore_active(
        Conversation(
            id=9,
            session_id="visitor-9",
            status=ConversationStatus.ACTIVE,
            assigned_agent_id="agent-1",
        )
    )
    assert queue.active_for("agent-1") == {9}
