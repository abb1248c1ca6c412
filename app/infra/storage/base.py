import operator
from collections.abc import Callable, Hashable, Mapping
from typing import Any, Protocol, TypeVar

from app.domain.entities import Conversation, Message, VisitorSession

Entity = VisitorSession | Conversation | Message
E = TypeVar("E", VisitorSession, Conversation, Message)

FILTER_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "lt": operator.lt,
    "lte": operator.le,
    "gt": operator.gt,
    "in": lambda value, options: value in options,
}


def parse_filter_key(key: str) -> tuple[str, str]:
    """Split ``"id__lt"`` into ``("id", "lt")``; a bare field name means equality."""

    field_name, _, op = key.partition("__")
    op = op or "eq"
    if op not in FILTER_OPERATORS:
        raise ValueError(f"Unsupported filter operator '{op}' in '{key}'")
    return field_name, op


def parse_order_by(order_by: str) -> tuple[str, bool]:
    if order_by.startswith("-"):
        return order_by[1:], True
    return order_by, False


def entity_key(entity: Entity) -> Hashable:
    if isinstance(entity, Message):
        return (entity.conversation_id, entity.id)
    return entity.id


class Storage(Protocol):
    """Persistence collaborator: the core only saves, finds and queries."""

    async def save(self, *entities: Entity) -> None:
        """Upsert all entities as one atomic unit."""
        ...

    async def find(self, entity_type: type[E], entity_id: Hashable) -> E | None: ...

    async def query(
        self,
        entity_type: type[E],
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[E]: ...


class ConversationIdSource(Protocol):
    """Monotonic conversation id allocator living outside the queue."""

    async def next_id(self) -> int: ...
