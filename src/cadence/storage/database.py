"""Database models and session handling for Cadence."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import (
    JSON,
    Boolean,
    CHAR,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ..core.exceptions import PersistenceError

SENDER_HUMAN = "human"
SENDER_AGENT = "agent"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class GUID(TypeDecorator):
    """Platform-independent GUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses CHAR(36).
    """
    impl = CHAR(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name == 'postgresql':
            return value
        return str(value) if isinstance(value, UUID) else str(UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is not None and not isinstance(value, UUID):
            return UUID(str(value))
        return value


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Persona(Base):
    """A persona for one season. Only one persona is active at a time."""

    __tablename__ = "personas"

    id: Mapped[UUID] = mapped_column(GUID(), primary_key=True, default=uuid4)
    season_number: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    deactivation_warned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    state: Mapped[Optional["PersonaState"]] = relationship(
        "PersonaState", back_populates="persona", uselist=False, cascade="all, delete-orphan"
    )
    conversations: Mapped[list["Conversation"]] = relationship(
        "Conversation", back_populates="persona", cascade="all, delete-orphan"
    )
    memories: Mapped[list["Memory"]] = relationship(
        "Memory", back_populates="persona", cascade="all, delete-orphan"
    )


class PersonaState(Base):
    """Schemaless persona attributes (emotions, biography, timestamps)."""

    __tablename__ = "persona_states"

    id: Mapped[UUID] = mapped_column(GUID(), primary_key=True, default=uuid4)
    persona_id: Mapped[UUID] = mapped_column(
        GUID(), ForeignKey("personas.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    state_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    persona: Mapped["Persona"] = relationship("Persona", back_populates="state")

    @property
    def emotions(self) -> list[str]:
        return list(self.state_data.get("emotions") or [])

    @property
    def emotion_description(self) -> Optional[str]:
        return self.state_data.get("emotion_description")

    @property
    def context(self) -> Optional[str]:
        return self.state_data.get("context")

    @property
    def emotion_timestamp(self) -> Optional[float]:
        value = self.state_data.get("emotion_timestamp")
        return float(value) if value is not None else None

    def age(self, today: Optional[datetime] = None) -> Optional[int]:
        """Age in years derived from the birthday fields, if known."""
        year = self.state_data.get("birthday_year")
        if not year:
            return None
        today = today or utcnow()
        month = int(self.state_data.get("birthday_month") or 1)
        day = int(self.state_data.get("birthday_day") or 1)
        age = today.year - int(year)
        if (today.month, today.day) < (month, day):
            age -= 1
        return age


class Conversation(Base):
    """One participant's conversation with one persona."""

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("participant_id", "persona_id", name="uq_conversation_participant_persona"),
    )

    id: Mapped[UUID] = mapped_column(GUID(), primary_key=True, default=uuid4)
    participant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    persona_id: Mapped[UUID] = mapped_column(
        GUID(), ForeignKey("personas.id", ondelete="CASCADE"), nullable=False
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    persona: Mapped["Persona"] = relationship("Persona", back_populates="conversations")
    messages: Mapped[list["Message"]] = relationship(
        "Message", back_populates="conversation", cascade="all, delete-orphan"
    )


class Message(Base):
    """Chat message. Immutable once created except for ``read_at``."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(GUID(), primary_key=True, default=uuid4)
    conversation_id: Mapped[UUID] = mapped_column(
        GUID(), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender: Mapped[str] = mapped_column(String(10), nullable=False)  # 'human' or 'agent'
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_fragment: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    fragment_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    conversation: Mapped["Conversation"] = relationship("Conversation", back_populates="messages")

    def to_event(self) -> dict[str, Any]:
        """Broadcast payload for this message."""
        return {
            "id": str(self.id),
            "content": self.content,
            "sender": self.sender,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "is_fragment": self.is_fragment,
            "fragment_index": self.fragment_index,
        }


class Memory(Base):
    """A persona memory with decaying detail."""

    __tablename__ = "memories"
    __table_args__ = (
        Index("ix_memories_persona_timestamp", "persona_id", "memory_timestamp"),
    )

    id: Mapped[UUID] = mapped_column(GUID(), primary_key=True, default=uuid4)
    persona_id: Mapped[UUID] = mapped_column(
        GUID(), ForeignKey("personas.id", ondelete="CASCADE"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    significance: Mapped[float] = mapped_column(Float, default=5.0, nullable=False)  # 0-10
    emotional_intensity: Mapped[float] = mapped_column(Float, default=5.0, nullable=False)  # 0-10
    detail_level: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)  # 0-1
    recall_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_recalled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    memory_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    persona: Mapped["Persona"] = relationship("Persona", back_populates="memories")


def build_engine(database_url: str) -> AsyncEngine:
    """Create the async engine for ``database_url``."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=False)
    return create_async_engine(database_url, echo=False, pool_pre_ping=True)


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to ``engine``."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Initialize database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@asynccontextmanager
async def session_scope(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Unit of work: commit on success, roll back on error.

    Driver errors are re-raised as PersistenceError so the job layer can
    retry the whole cycle.
    """
    async with session_maker() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise PersistenceError("transaction", str(e)) from e
        except BaseException:
            await session.rollback()
            raise
