from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Sequence,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.domain.enums import ConversationStatus, MessageKind, SenderKind


class Base(DeclarativeBase):
    pass


conversation_id_seq = Sequence("conversation_id_seq", metadata=Base.metadata)


class VisitorSessionRow(Base):
    __tablename__ = "visitor_sessions"

    id: Mapped[str] = mapped_column(String(120), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(120), nullable=False)
    locale: Mapped[str] = mapped_column(String(16), nullable=False, default="en")
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class ConversationRow(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        # Two slot conversations can never share an instant.
        Index(
            "uq_conversations_slot_time",
            "slot_time",
            unique=True,
            postgresql_where=text("status = 'slot'"),
        ),
    )

    id: Mapped[int] = mapped_column(
        BigInteger, conversation_id_seq, primary_key=True, autoincrement=False
    )
    session_id: Mapped[str] = mapped_column(
        String(120), ForeignKey("visitor_sessions.id"), index=True, nullable=False
    )
    status: Mapped[ConversationStatus] = mapped_column(
        Enum(
            ConversationStatus,
            name="conversation_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=ConversationStatus.PENDING,
    )
    assigned_agent_id: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    slot_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MessageRow(Base):
    __tablename__ = "messages"

    conversation_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("conversations.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    sender_kind: Mapped[SenderKind] = mapped_column(
        Enum(
            SenderKind,
            name="sender_kind",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    sender_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    kind: Mapped[MessageKind] = mapped_column(
        Enum(
            MessageKind,
            name="message_kind",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)
    file_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
