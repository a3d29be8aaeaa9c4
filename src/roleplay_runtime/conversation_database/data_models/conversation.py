"""
Conversation data model and storage interface.

A 'ConversationMemory' is the ordered history of one user's conversation with
one character. It stores message ids only; the messages themselves live in a
'Memory' store. History only ever grows through 'append_to_history', which is
atomic per conversation. The single exception to append-only history, replacing
the latest assistant message on regenerate, keeps the message id and therefore
never touches this record.

The 'ConversationDatabase' ABC is the pluggable storage backend for conversation
records. Conversations are never deleted by the runtime.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence

from pydantic import BaseModel, Field

from roleplay_runtime.utils.database import generate_uid
from roleplay_runtime.utils.time import get_current_timestamp


class ConversationMemory(BaseModel):
    """A conversation between an owner and a character."""

    id: str = Field(default_factory=generate_uid)
    owner_id: str
    character_id: str
    public: bool = False
    history: list[str] = Field(default_factory=list)
    created_at: int = Field(default_factory=get_current_timestamp)
    updated_at: int = Field(default_factory=get_current_timestamp)

    def can_be_accessed_by(self, user_id: str) -> bool:
        return self.public or self.owner_id == user_id


class ConversationDatabase(ABC):
    """Abstract repository for 'ConversationMemory' records."""

    @abstractmethod
    async def create_conversation(self, conversation: ConversationMemory) -> ConversationMemory:
        pass

    @abstractmethod
    async def get_conversation_by_id(self, conversation_id: str) -> ConversationMemory:
        """Return the conversation or raise 'NotFound'."""
        pass

    @abstractmethod
    async def get_conversations_by_owner_and_character(
        self, owner_id: str, character_id: str, limit: int = 10
    ) -> list[ConversationMemory]:
        """Most recently updated conversations first."""
        pass

    @abstractmethod
    async def get_character_counts(self, owner_id: str) -> dict[str, int]:
        """Number of conversations the owner has with each character."""
        pass

    @abstractmethod
    async def append_to_history(self, conversation_id: str, message_ids: Sequence[str]) -> ConversationMemory:
        """Atomically append 'message_ids' to the history and return the updated record."""
        pass

    @abstractmethod
    async def set_visibility(self, conversation_id: str, public: bool) -> ConversationMemory:
        pass
