"""Persistence layer: SQLAlchemy async models, session scope and repositories."""

from .database import (
    Base,
    Conversation,
    Memory,
    Message,
    Persona,
    PersonaState,
    SENDER_AGENT,
    SENDER_HUMAN,
    build_engine,
    build_session_maker,
    init_db,
    session_scope,
    utcnow,
)

__all__ = [
    "Base",
    "Conversation",
    "Memory",
    "Message",
    "Persona",
    "PersonaState",
    "SENDER_AGENT",
    "SENDER_HUMAN",
    "build_engine",
    "build_session_maker",
    "init_db",
    "session_scope",
    "utcnow",
]
