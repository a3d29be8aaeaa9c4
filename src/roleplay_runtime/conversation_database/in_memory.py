"""
In-memory implementations of the conversation, character and account repositories.

They back the test-suite and the local demo service. Every record handed out is
a deep copy, so callers can never mutate stored state without going through the
repository methods.
"""

import asyncio
from collections import Counter, defaultdict
from collections.abc import Sequence

from loguru import logger

from roleplay_runtime.conversation_database.data_models.account import Account, AccountProvider, UsageRecord
from roleplay_runtime.conversation_database.data_models.character import Character, CharacterDatabase
from roleplay_runtime.conversation_database.data_models.conversation import ConversationDatabase, ConversationMemory
from roleplay_runtime.errors import BadRequest, ConflictError, NotFound
from roleplay_runtime.utils.time import get_current_timestamp


class InMemoryConversationDatabase(ConversationDatabase):
    def __init__(self) -> None:
        self._conversations: dict[str, ConversationMemory] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def create_conversation(self, conversation: ConversationMemory) -> ConversationMemory:
        if conversation.id in self._conversations:
            raise ConflictError(f"Conversation {conversation.id} already exists")
        self._conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation.model_copy(deep=True)

    async def get_conversation_by_id(self, conversation_id: str) -> ConversationMemory:
        try:
            return self._conversations[conversation_id].model_copy(deep=True)
        except KeyError:
            raise NotFound(f"Conversation {conversation_id} not found") from None

    async def get_conversations_by_owner_and_character(
        self, owner_id: str, character_id: str, limit: int = 10
    ) -> list[ConversationMemory]:
        matching = [
            conversation
            for conversation in self._conversations.values()
            if conversation.owner_id == owner_id and conversation.character_id == character_id
        ]
        matching.sort(key=lambda c: c.updated_at, reverse=True)
        return [conversation.model_copy(deep=True) for conversation in matching[:limit]]

    async def get_character_counts(self, owner_id: str) -> dict[str, int]:
        return dict(Counter(c.character_id for c in self._conversations.values() if c.owner_id == owner_id))

    async def append_to_history(self, conversation_id: str, message_ids: Sequence[str]) -> ConversationMemory:
        async with self._locks[conversation_id]:
            if conversation_id not in self._conversations:
                raise NotFound(f"Conversation {conversation_id} not found")
            conversation = self._conversations[conversation_id]
            duplicates = set(message_ids) & set(conversation.history)
            if duplicates:
                raise ConflictError(f"Messages already in history of {conversation_id}: {sorted(duplicates)}")
            conversation.history.extend(message_ids)
            conversation.updated_at = get_current_timestamp()
            return conversation.model_copy(deep=True)

    async def set_visibility(self, conversation_id: str, public: bool) -> ConversationMemory:
        async with self._locks[conversation_id]:
            if conversation_id not in self._conversations:
                raise NotFound(f"Conversation {conversation_id} not found")
            conversation = self._conversations[conversation_id]
            conversation.public = public
            conversation.updated_at = get_current_timestamp()
            return conversation.model_copy(deep=True)


class InMemoryCharacterDatabase(CharacterDatabase):
    def __init__(self) -> None:
        self._characters: dict[str, Character] = {}

    async def create_character(self, character: Character) -> Character:
        self._characters[character.id] = character.model_copy(deep=True)
        return character

    async def get_character_by_id(self, character_id: str) -> Character:
        try:
            return self._characters[character_id].model_copy(deep=True)
        except KeyError:
            raise NotFound(f"Character {character_id} not found") from None


class InMemoryAccountProvider(AccountProvider):
    """Accounts start with 'initial_balance' points the first time they are seen."""

    def __init__(self, initial_balance: int = 0) -> None:
        self.initial_balance = initial_balance
        self._accounts: dict[str, Account] = {}
        self._lock = asyncio.Lock()

    async def ensure_account(self, user_id: str, price: int) -> Account:
        async with self._lock:
            account = self._accounts.get(user_id)
            if account is None:
                account = Account(id=user_id, balance=self.initial_balance)
                self._accounts[user_id] = account
                logger.info(f"Created account {user_id} with balance {self.initial_balance}")
            if account.balance < price:
                raise BadRequest(f"Insufficient balance: {account.balance} < {price}")
            return account.model_copy(deep=True)

    async def record_usage(self, user_id: str, record: UsageRecord) -> Account:
        async with self._lock:
            account = self._accounts.get(user_id)
            if account is None:
                raise NotFound(f"Account {user_id} not found")
            account.balance -= record.price
            account.usage.append(record)
            return account.model_copy(deep=True)
