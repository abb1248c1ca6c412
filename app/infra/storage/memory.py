import asyncio
import itertools
from collections import defaultdict
from collections.abc import Hashable, Mapping
from dataclasses import replace
from typing import Any

from app.infra.storage.base import (
    FILTER_OPERATORS,
    E,
    Entity,
    entity_key,
    parse_filter_key,
    parse_order_by,
)


class InMemoryStorage:
    """Process-local storage for development and tests.

    Entities are copied on the way in and out so callers never share
    mutable state with the store, which mirrors a real database round trip.
    """

    def __init__(self) -> None:
        self._rows: dict[type, dict[Hashable, Entity]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    async def save(self, *entities: Entity) -> None:
        copies = [replace(entity) for entity in entities]
        async with self._lock:
            for copy in copies:
                self._rows[type(copy)][entity_key(copy)] = copy

    async def find(self, entity_type: type[E], entity_id: Hashable) -> E | None:
        row = self._rows.get(entity_type, {}).get(entity_id)
        if row is None:
            return None
        return replace(row)

    async def query(
        self,
        entity_type: type[E],
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[E]:
        conditions = []
        for key, value in (filters or {}).items():
            field_name, op = parse_filter_key(key)
            conditions.append((field_name, FILTER_OPERATORS[op], value))

        rows = [
            row
            for row in self._rows.get(entity_type, {}).values()
            if all(check(getattr(row, name), value) for name, check, value in conditions)
        ]
        if order_by:
            field_name, descending = parse_order_by(order_by)
            rows.sort(key=lambda row: getattr(row, field_name), reverse=descending)

        end = None if limit is None else offset + limit
        return [replace(row) for row in rows[offset:end]]


class InMemoryConversationIds:
    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)

    async def next_id(self) -> int:
        return next(self._counter)
