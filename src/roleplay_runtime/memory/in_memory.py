"""
Document-style in-memory message store.

Messages are kept in a dict keyed by id, each tagged with a global append
sequence number so that newest-first pages are stable even when several
messages share a millisecond timestamp. Writes go through one 'asyncio.Lock'
per conversation id; a call touching several conversations takes their locks in
sorted order.

Full-text search is BM25+ from 'rank-bm25' over the text messages of the same
owner and character. BM25+ keeps every IDF positive on small corpora but also
gives a baseline score to documents without any query term, so candidates are
first restricted to messages sharing a token with the query and then ordered by
score, newest first on ties.
"""

import asyncio
import re
from collections import defaultdict
from collections.abc import Sequence
from contextlib import AsyncExitStack
from typing import Generic

from loguru import logger
from rank_bm25 import BM25Plus  # type: ignore[import-untyped]

from roleplay_runtime.errors import BadRequest, ConflictError, NotFound, SearchUnavailable, StorageUnavailable
from roleplay_runtime.memory.base import M, ContentType, Memory, SearchConfig


class InMemoryMemory(Memory[M], Generic[M]):
    def __init__(self, search_enabled: bool = True) -> None:
        self.search_enabled = search_enabled
        self._messages: dict[str, M] = {}
        self._sequence: dict[str, int] = {}
        self._next_sequence = 0
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._initialized = False

    async def initialize(self) -> None:
        self._initialized = True
        logger.debug(f"{type(self).__name__} initialized")

    def _ensure_ready(self) -> None:
        if not self._initialized:
            raise StorageUnavailable(f"{type(self).__name__} is not initialized")

    @staticmethod
    def _tokenize(text: str) -> list[str]:
        """Lowercase word-boundary tokenisation."""
        return re.findall(r"\b\w+\b", text.lower())

    def _locks_for(self, messages: Sequence[M]) -> list[asyncio.Lock]:
        return [self._locks[conversation_id] for conversation_id in sorted({m.conversation_id for m in messages})]

    async def add_messages(self, messages: Sequence[M]) -> None:
        self._ensure_ready()
        if not messages:
            return
        async with AsyncExitStack() as stack:
            for lock in self._locks_for(messages):
                await stack.enter_async_context(lock)

            ids = [message.id for message in messages]
            if len(set(ids)) != len(ids):
                raise ConflictError("Duplicate message ids in a single append")
            existing = [message_id for message_id in ids if message_id in self._messages]
            if existing:
                raise ConflictError(f"Messages already stored: {existing}")

            for message in messages:
                self._store(message)
            self._on_added(messages)

    def _store(self, message: M) -> None:
        self._messages[message.id] = message.model_copy(deep=True)
        self._sequence[message.id] = self._next_sequence
        self._next_sequence += 1

    def _on_added(self, messages: Sequence[M]) -> None:
        """Hook for subclasses that index messages after they are stored."""

    async def get_one(self, message_id: str) -> M:
        self._ensure_ready()
        try:
            return self._messages[message_id].model_copy(deep=True)
        except KeyError:
            raise NotFound(f"Message {message_id} not found") from None

    async def get_many(self, message_ids: Sequence[str]) -> list[M]:
        self._ensure_ready()
        missing = [message_id for message_id in message_ids if message_id not in self._messages]
        if missing:
            raise NotFound(f"Messages not found: {missing}")
        return [self._messages[message_id].model_copy(deep=True) for message_id in message_ids]

    def _newest_first(self, messages: list[M]) -> list[M]:
        return sorted(messages, key=lambda m: (m.created_at, self._sequence[m.id]), reverse=True)

    async def get_all(self, owner_id: str, limit: int, offset: int) -> list[M]:
        self._ensure_ready()
        if limit < 0 or offset < 0:
            raise BadRequest("'limit' and 'offset' must not be negative")
        owned = [message for message in self._messages.values() if message.owner_id == owner_id]
        page = self._newest_first(owned)[offset : offset + limit]
        return [message.model_copy(deep=True) for message in page]

    def _search_candidates(self, query: M) -> list[M]:
        return [
            message
            for message in self._messages.values()
            if message.owner_id == query.owner_id
            and message.character_id == query.character_id
            and message.id != query.id
            and message.content_type == ContentType.TEXT
        ]

    def _check_query(self, query: M, limit: int, offset: int) -> None:
        self._ensure_ready()
        if not self.search_enabled:
            raise SearchUnavailable(f"{type(self).__name__} was created without search support")
        if query.content_type != ContentType.TEXT or not query.text.strip():
            raise BadRequest("Search queries must be non-empty text messages")
        if limit < 0 or offset < 0:
            raise BadRequest("'limit' and 'offset' must not be negative")

    async def search(self, query: M, limit: int, offset: int) -> tuple[list[M], SearchConfig]:
        self._check_query(query, limit, offset)
        config = SearchConfig(mode="full_text", limit=limit, offset=offset)

        query_terms = self._tokenize(query.text)
        candidates = [
            message
            for message in self._newest_first(self._search_candidates(query))
            if set(query_terms) & set(self._tokenize(message.text))
        ]
        if not candidates:
            return [], config

        bm25 = BM25Plus([self._tokenize(message.text) for message in candidates])
        scores: list[float] = bm25.get_scores(query_terms).tolist()
        # stable sort keeps newest-first order among equal scores
        ranked = sorted(range(len(candidates)), key=lambda i: scores[i], reverse=True)
        page = [candidates[i].model_copy(deep=True) for i in ranked[offset : offset + limit]]
        return page, config

    async def update(self, messages: Sequence[M]) -> None:
        self._ensure_ready()
        if not messages:
            return
        async with AsyncExitStack() as stack:
            for lock in self._locks_for(messages):
                await stack.enter_async_context(lock)

            missing = [message.id for message in messages if message.id not in self._messages]
            if missing:
                raise NotFound(f"Messages not found: {missing}")
            for message in messages:
                current = self._messages[message.id]
                if message.role != current.role or message.content_type != current.content_type:
                    raise BadRequest(f"Role and content type of message {message.id} cannot change")
                if message.conversation_id != current.conversation_id:
                    raise BadRequest(f"Message {message.id} cannot move to another conversation")

            for message in messages:
                self._messages[message.id] = message.model_copy(deep=True)
            self._on_updated(messages)

    def _on_updated(self, messages: Sequence[M]) -> None:
        """Hook for subclasses that index messages after they are replaced."""

    async def delete(self, message_ids: Sequence[str]) -> None:
        self._ensure_ready()
        for message_id in message_ids:
            self._messages.pop(message_id, None)
            self._sequence.pop(message_id, None)
        self._on_removed(message_ids)

    def _on_removed(self, message_ids: Sequence[str]) -> None:
        """Hook for subclasses that index messages."""

    async def reset(self, owner_id: str) -> None:
        self._ensure_ready()
        owned = [message.id for message in self._messages.values() if message.owner_id == owner_id]
        await self.delete(owned)
        logger.info(f"Removed {len(owned)} messages of owner {owner_id}")
