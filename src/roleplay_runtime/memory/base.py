"""
Message data model and memory store interface.

'Message' is one turn of a conversation. Its role and content type are fixed at
creation; exactly one of the three payload fields is populated, and which one is
allowed depends on the content type (text messages carry text, image and audio
messages carry a URL or raw bytes).

'Memory' is the pluggable storage backend for messages. It is generic over the
message type so a backend can store a richer subclass while the runtime keeps
working against 'Message'. Concrete implementations: 'InMemoryMemory'
(document store with BM25 full-text search) and 'VectorMemory' (embedding
similarity search).
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Generic, Literal, TypeVar

from pydantic import BaseModel, Field, model_validator

from roleplay_runtime.llms.base import LLMMessage, Roles
from roleplay_runtime.utils.database import generate_uid
from roleplay_runtime.utils.time import get_current_timestamp

if TYPE_CHECKING:
    from roleplay_runtime.conversation_database.data_models.conversation import ConversationMemory


class MessageRole(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_CALL = "tool_call"


class ContentType(StrEnum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"


_PACKED_ROLES = {
    MessageRole.SYSTEM: Roles.SYSTEM,
    MessageRole.USER: Roles.USER,
    MessageRole.ASSISTANT: Roles.ASSISTANT,
    MessageRole.TOOL_CALL: Roles.TOOL,
}


class Message(BaseModel):
    """
    A single message within a conversation.

    'owner_id' is the user the conversation belongs to, also for assistant and
    tool messages, so that 'Memory.get_all' and 'Memory.reset' can work per user.
    'metadata' carries token usage for assistant messages and the function-call
    details for tool messages.
    """

    id: str = Field(default_factory=generate_uid)
    conversation_id: str
    role: MessageRole = MessageRole.USER
    content_type: ContentType = ContentType.TEXT
    owner_id: str
    character_id: str
    created_at: int = Field(default_factory=get_current_timestamp)
    text_content: str | None = None
    binary_content: bytes | None = None
    url_content: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_payload(self) -> "Message":
        populated = [
            name
            for name, value in (
                ("text_content", self.text_content),
                ("binary_content", self.binary_content),
                ("url_content", self.url_content),
            )
            if value is not None
        ]
        if len(populated) != 1:
            raise ValueError(f"Exactly one payload must be set, got {populated or 'none'}")
        if self.content_type == ContentType.TEXT and populated[0] != "text_content":
            raise ValueError("Text messages must carry 'text_content'")
        if self.content_type != ContentType.TEXT and populated[0] == "text_content":
            raise ValueError(f"{self.content_type} messages must carry 'url_content' or 'binary_content'")
        return self

    @property
    def text(self) -> str:
        return self.text_content or ""

    @classmethod
    def pack(cls, messages: Sequence["Message"]) -> list[LLMMessage]:
        """Convert stored history into the LLM message format."""
        packed = []
        for message in messages:
            llm_message = LLMMessage(role=_PACKED_ROLES[message.role], content=message.text)
            if message.role == MessageRole.TOOL_CALL:
                llm_message.name = message.metadata.get("function_name")
            packed.append(llm_message)
        return packed

    @classmethod
    def from_llm_response(cls, response: LLMMessage, conversation: "ConversationMemory", owner_id: str) -> "Message":
        metadata: dict[str, Any] = {}
        if response.usage is not None:
            metadata["usage"] = response.usage.model_dump()
        if response.tool_calls:
            metadata["function_calls"] = [
                {"id": call.id, "name": call.function.name, "arguments": call.function.arguments}
                for call in response.tool_calls
            ]
        return cls(
            conversation_id=conversation.id,
            role=MessageRole.ASSISTANT,
            owner_id=owner_id,
            character_id=conversation.character_id,
            text_content=response.content,
            metadata=metadata,
        )


class SearchConfig(BaseModel):
    """Describes how a 'Memory.search' result was produced."""

    mode: Literal["full_text", "vector"]
    limit: int
    offset: int
    model: str | None = None
    min_score: float | None = None


M = TypeVar("M", bound=Message)


class Memory(ABC, Generic[M]):
    """
    Abstract message store.

    Appends are atomic per conversation: a call to 'add_messages' is either
    stored completely or not at all, and two concurrent calls never interleave.
    Reads are not snapshot-isolated; a page fetched while appends are running
    may shift on the next call.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare backend resources. Raise 'StorageUnavailable' if the backend cannot be reached."""
        pass

    @abstractmethod
    async def add_messages(self, messages: Sequence[M]) -> None:
        pass

    @abstractmethod
    async def get_one(self, message_id: str) -> M:
        """Return the message or raise 'NotFound'."""
        pass

    async def get_many(self, message_ids: Sequence[str]) -> list[M]:
        """Return messages in the order of 'message_ids'."""
        return [await self.get_one(message_id) for message_id in message_ids]

    @abstractmethod
    async def get_all(self, owner_id: str, limit: int, offset: int) -> list[M]:
        """Return a newest-first page of the owner's messages."""
        pass

    @abstractmethod
    async def search(self, query: M, limit: int, offset: int) -> tuple[list[M], SearchConfig]:
        """Return prior messages similar to 'query' and the configuration used to find them."""
        pass

    @abstractmethod
    async def update(self, messages: Sequence[M]) -> None:
        """Replace existing messages by id. Raise 'NotFound' if any id is absent."""
        pass

    @abstractmethod
    async def delete(self, message_ids: Sequence[str]) -> None:
        pass

    @abstractmethod
    async def reset(self, owner_id: str) -> None:
        pass
