"""
Single write path for conversation history.

Appending a turn touches two stores: the messages go into 'Memory' and their ids
go into the conversation record. 'ConversationHistory' performs both under one
lock per conversation id, so two chat turns (or a chat turn and an executor
writing a function-call outcome) on the same conversation are linearised and
never interleave. The chat runtime and the function executor both write
through this class; nothing else mutates history.

A caller that has to do more work before its append lands (the chat runtime
enqueues function calls first) takes the lock with 'locked()' and writes through
the returned handle, so no other writer can slip in between.

The locks are process-local. Running several runtime processes against a shared
database relies on the backend's own atomic append ('append_to_history').
"""

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager

from loguru import logger

from roleplay_runtime.conversation_database.data_models.conversation import ConversationDatabase, ConversationMemory
from roleplay_runtime.errors import BadRequest, ConflictError
from roleplay_runtime.memory.base import Memory, Message, MessageRole


def find_latest_assistant(messages: Sequence[Message]) -> int | None:
    """Index of the most recent assistant message, or None if there is none."""
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].role == MessageRole.ASSISTANT:
            return index
    return None


class LockedHistory:
    """Writes to one conversation while its lock is held by the caller."""

    def __init__(self, history: "ConversationHistory", conversation_id: str) -> None:
        self.history = history
        self.conversation_id = conversation_id

    async def append(self, messages: Sequence[Message]) -> ConversationMemory:
        return await self.history._append(self.conversation_id, messages)

    async def replace_latest_assistant(self, replacement: Message) -> ConversationMemory:
        return await self.history._replace_latest_assistant(self.conversation_id, replacement)


class ConversationHistory:
    def __init__(self, conversation_db: ConversationDatabase, memory: Memory[Message]) -> None:
        self.conversation_db = conversation_db
        self.memory = memory
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def load(self, conversation: ConversationMemory) -> list[Message]:
        return await self.memory.get_many(conversation.history)

    @asynccontextmanager
    async def locked(self, conversation_id: str) -> AsyncIterator[LockedHistory]:
        """Hold the conversation's write lock for the duration of the block.

        The lock is not reentrant: inside the block, write through the yielded
        handle, never through 'append' or 'replace_latest_assistant'.
        """
        async with self._locks[conversation_id]:
            yield LockedHistory(self, conversation_id)

    async def append(self, conversation_id: str, messages: Sequence[Message]) -> ConversationMemory:
        async with self.locked(conversation_id) as locked:
            return await locked.append(messages)

    async def replace_latest_assistant(self, conversation_id: str, replacement: Message) -> ConversationMemory:
        """Replace the latest assistant message in place; 'replacement' must reuse its id.

        Raises 'ConflictError' when another writer appended an assistant message
        after the caller read the history.
        """
        async with self.locked(conversation_id) as locked:
            return await locked.replace_latest_assistant(replacement)

    async def _append(self, conversation_id: str, messages: Sequence[Message]) -> ConversationMemory:
        if any(message.conversation_id != conversation_id for message in messages):
            raise BadRequest(f"All appended messages must belong to conversation {conversation_id}")
        # Fails with NotFound before anything is stored.
        await self.conversation_db.get_conversation_by_id(conversation_id)
        message_ids = [message.id for message in messages]
        await self.memory.add_messages(messages)
        try:
            conversation = await self.conversation_db.append_to_history(conversation_id, message_ids)
        except Exception:
            await self.memory.delete(message_ids)
            raise
        logger.debug(f"Appended {len(messages)} messages to {conversation_id} (history={len(conversation.history)})")
        return conversation

    async def _replace_latest_assistant(self, conversation_id: str, replacement: Message) -> ConversationMemory:
        conversation = await self.conversation_db.get_conversation_by_id(conversation_id)
        messages = await self.load(conversation)
        index = find_latest_assistant(messages)
        if index is None or messages[index].id != replacement.id:
            raise ConflictError(f"The latest assistant message of {conversation_id} changed during regeneration")
        await self.memory.update([replacement])
        return conversation
