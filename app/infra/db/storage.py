from collections.abc import Hashable, Mapping
from typing import Any

from sqlalchemy import ColumnElement, select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.entities import Conversation, FileDescriptor, Message, VisitorSession
from app.domain.exceptions import TransientIOError
from app.infra.db.models import (
    ConversationRow,
    MessageRow,
    VisitorSessionRow,
    conversation_id_seq,
)
from app.infra.storage.base import E, Entity, parse_filter_key, parse_order_by

_ROW_TYPES: dict[type, type] = {
    VisitorSession: VisitorSessionRow,
    Conversation: ConversationRow,
    Message: MessageRow,
}


def _to_row(entity: Entity) -> Any:
    if isinstance(entity, Message):
        return MessageRow(
            conversation_id=entity.conversation_id,
            id=entity.id,
            sender_kind=entity.sender_kind,
            sender_id=entity.sender_id,
            kind=entity.kind,
            body=entity.body,
            file_json=entity.file.to_dict() if entity.file is not None else None,
            created_at=entity.created_at,
        )
    if isinstance(entity, Conversation):
        return ConversationRow(
            id=entity.id,
            session_id=entity.session_id,
            status=entity.status,
            assigned_agent_id=entity.assigned_agent_id,
            slot_time=entity.slot_time,
            closed_at=entity.closed_at,
            created_at=entity.created_at,
        )
    return VisitorSessionRow(
        id=entity.id,
        display_name=entity.display_name,
        locale=entity.locale,
        last_seen_at=entity.last_seen_at,
    )


def _from_row(row: Any) -> Entity:
    if isinstance(row, MessageRow):
        return Message(
            conversation_id=row.conversation_id,
            id=row.id,
            sender_kind=row.sender_kind,
            sender_id=row.sender_id,
            kind=row.kind,
            body=row.body,
            file=FileDescriptor.from_dict(row.file_json) if row.file_json else None,
            created_at=row.created_at,
        )
    if isinstance(row, ConversationRow):
        return Conversation(
            id=row.id,
            session_id=row.session_id,
            status=row.status,
            assigned_agent_id=row.assigned_agent_id,
            slot_time=row.slot_time,
            closed_at=row.closed_at,
            created_at=row.created_at,
        )
    return VisitorSession(
        id=row.id,
        display_name=row.display_name,
        locale=row.locale,
        last_seen_at=row.last_seen_at,
    )


def _condition(row_type: type, key: str, value: Any) -> ColumnElement[bool]:
    field_name, op = parse_filter_key(key)
    column = getattr(row_type, field_name)
    if op == "ne":
        return column != value
    if op == "lt":
        return column < value
    if op == "lte":
        return column <= value
    if op == "gt":
        return column > value
    if op == "in":
        return column.in_(list(value))
    return column == value


class SqlStorage:
    """Storage collaborator backed by SQLAlchemy's async engine."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def save(self, *entities: Entity) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    for entity in entities:
                        await session.merge(_to_row(entity))
                        await session.flush()
        except (OperationalError, InterfaceError) as exc:
            raise TransientIOError(str(exc)) from exc

    async def find(self, entity_type: type[E], entity_id: Hashable) -> E | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(_ROW_TYPES[entity_type], entity_id)
        except (OperationalError, InterfaceError) as exc:
            raise TransientIOError(str(exc)) from exc
        if row is None:
            return None
        return _from_row(row)

    async def query(
        self,
        entity_type: type[E],
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[E]:
        row_type = _ROW_TYPES[entity_type]
        stmt = select(row_type).where(
            *[_condition(row_type, key, value) for key, value in (filters or {}).items()]
        )
        if order_by:
            field_name, descending = parse_order_by(order_by)
            column = getattr(row_type, field_name)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = list(result.scalars().all())
        except (OperationalError, InterfaceError) as exc:
            raise TransientIOError(str(exc)) from exc
        return [_from_row(row) for row in rows]


class SequenceConversationIds:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def next_id(self) -> int:
        try:
            async with self._session_factory() as session:
                return int(await session.scalar(select(conversation_id_seq.next_value())))
        except (OperationalError, InterfaceError) as exc:
            raise TransientIOError(str(exc)) from exc
