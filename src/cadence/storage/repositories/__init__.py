"""Repository layer for data access."""

from .base import BaseRepository
from .conversation_repository import ConversationRepository
from .memory_repository import MemoryRepository
from .message_repository import MessageRepository
from .persona_repository import PersonaRepository
from .persona_state_repository import PersonaStateRepository, deep_merge

__all__ = [
    "BaseRepository",
    "ConversationRepository",
    "MemoryRepository",
    "MessageRepository",
    "PersonaRepository",
    "PersonaStateRepository",
    "deep_merge",
]
