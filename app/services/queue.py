import asyncio
from bisect import bisect_right, insort
from collections import defaultdict

import structlog

from app.domain.entities import Conversation
from app.domain.enums import ConversationStatus, TransitionAction
from app.domain.exceptions import CapacityExceeded
from app.domain.state_machine import ConversationLifecycle

logger = structlog.get_logger(__name__)


class ConversationQueue:
    """FIFO of pending conversations keyed by their monotonic id.

    Positions are snapshots: "at least this many conversations were ahead
    of you when asked", never a live guarantee.
    """

    def __init__(self, max_active_per_agent: int = 1) -> None:
        self.max_active_per_agent = max(max_active_per_agent, 1)
        self._pending_ids: list[int] = []
        self._pending: dict[int, Conversation] = {}
        self._active_by_agent: dict[str, set[int]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def enqueue(self, conversation: Conversation) -> int:
        async with self._lock:
            if conversation.id not in self._pending:
                if not ConversationLifecycle.is_waiting(conversation.status):
                    raise ValueError(
                        f"Conversation '{conversation.id}' is '{conversation.status.value}', not pending"
                    )
                insort(self._pending_ids, conversation.id)
                self._pending[conversation.id] = conversation
            return self._position(conversation.id)

    async def next_for_agent(self, agent_id: str) -> Conversation | None:
        async with self._lock:
            active = self._active_by_agent.get(agent_id, set())
            if len(active) >= self.max_active_per_agent:
                raise CapacityExceeded(agent_id, self.max_active_per_agent)
            conversation = None
            while self._pending_ids:
                conversation_id = self._pending_ids.pop(0)
                candidate = self._pending.pop(conversation_id)
                if ConversationLifecycle.is_waiting(candidate.status):
                    conversation = candidate
                    break
                logger.warning(
                    "stale_queue_entry_dropped",
                    conversation_id=conversation_id,
                    status=candidate.status.value,
                )
            if conversation is None:
                return None

            conversation.status = ConversationLifecycle.transition(
                conversation.status, TransitionAction.ASSIGN_AGENT
            )
            conversation.assigned_agent_id = agent_id
            self._active_by_agent[agent_id].add(conversation.id)

        logger.info("conversation_promoted", conversation_id=conversation.id, agent_id=agent_id)
        return conversation

    def position_of(self, conversation_id: int) -> int | None:
        if conversation_id not in self._pending:
            return None
        return self._position(conversation_id)

    async def discard(self, conversation_id: int) -> bool:
        async with self._lock:
            if self._pending.pop(conversation_id, None) is None:
                return False
            index = bisect_right(self._pending_ids, conversation_id) - 1
            del self._pending_ids[index]
            return True

    async def release(self, agent_id: str, conversation_id: int) -> None:
        async with self._lock:
            active = self._active_by_agent.get(agent_id)
            if active is None:
                return
            active.discard(conversation_id)
            if not active:
                self._active_by_agent.pop(agent_id, None)

    def restore_active(self, conversation: Conversation) -> None:
        if conversation.status == ConversationStatus.ACTIVE and conversation.assigned_agent_id:
            self._active_by_agent[conversation.assigned_agent_id].add(conversation.id)

    def pending_count(self) -> int:
        return len(self._pending_ids)

    def pending_ids(self) -> list[int]:
        return list(self._pending_ids)

    def active_for(self, agent_id: str) -> set[int]:
        return set(self._active_by_agent.get(agent_id, set()))

    def _position(self, conversation_id: int) -> int:
        return bisect_right(self._pending_ids, conversation_id)
