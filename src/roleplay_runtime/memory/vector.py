"""
Vector-search message store.

'VectorMemory' keeps the document store's storage and ordering semantics and
adds an embedding per text message. 'search' embeds the query text and ranks
the owner's prior messages with the same character by cosine similarity,
dropping matches below 'min_score'. This is the backend meant for long-running
roleplay sessions where the relevant context is far back in the history.

Embeddings are computed before the per-conversation lock is taken, so a slow
embedding model never blocks other writers of the same conversation.
"""

from collections.abc import Sequence
from typing import Generic

import numpy as np
from numpy.typing import NDArray

from roleplay_runtime.embeddings.base import EmbeddingsModel
from roleplay_runtime.errors import RoleplayRuntimeError, StorageUnavailable
from roleplay_runtime.memory.base import M, ContentType, SearchConfig
from roleplay_runtime.memory.in_memory import InMemoryMemory


class VectorMemory(InMemoryMemory[M], Generic[M]):
    """
    In-memory store with embedding similarity search.

    Attributes:
        embeddings: Model used for both stored messages and queries.
        min_score: Cosine similarity below which a message is not returned.
    """

    def __init__(self, embeddings: EmbeddingsModel, min_score: float = 0.0) -> None:
        super().__init__(search_enabled=True)
        self.embeddings = embeddings
        self.min_score = min_score
        self._vectors: dict[str, NDArray[np.float64]] = {}
        self._pending: dict[str, NDArray[np.float64]] = {}

    async def _embed(self, messages: Sequence[M]) -> dict[str, NDArray[np.float64]]:
        texts = [m for m in messages if m.content_type == ContentType.TEXT and m.text.strip()]
        if not texts:
            return {}
        try:
            matrix = await self.embeddings.get_embeddings([m.text for m in texts])
        except RoleplayRuntimeError:
            raise
        except Exception as exc:
            raise StorageUnavailable(f"Embedding model {self.embeddings.model_name} failed: {exc}") from exc
        return {message.id: self._normalize(row) for message, row in zip(texts, matrix)}

    @staticmethod
    def _normalize(vector: NDArray[np.float64]) -> NDArray[np.float64]:
        norm = np.linalg.norm(vector)
        return vector / norm if norm > 0 else vector

    async def add_messages(self, messages: Sequence[M]) -> None:
        self._ensure_ready()
        vectors = await self._embed(messages)
        self._pending.update(vectors)
        try:
            await super().add_messages(messages)
        finally:
            for message_id in vectors:
                self._pending.pop(message_id, None)

    async def update(self, messages: Sequence[M]) -> None:
        self._ensure_ready()
        vectors = await self._embed(messages)
        self._pending.update(vectors)
        try:
            await super().update(messages)
        finally:
            for message_id in vectors:
                self._pending.pop(message_id, None)

    def _on_added(self, messages: Sequence[M]) -> None:
        for message in messages:
            if message.id in self._pending:
                self._vectors[message.id] = self._pending[message.id]

    def _on_updated(self, messages: Sequence[M]) -> None:
        for message in messages:
            self._vectors.pop(message.id, None)
        self._on_added(messages)

    def _on_removed(self, message_ids: Sequence[str]) -> None:
        for message_id in message_ids:
            self._vectors.pop(message_id, None)

    async def search(self, query: M, limit: int, offset: int) -> tuple[list[M], SearchConfig]:
        self._check_query(query, limit, offset)
        config = SearchConfig(
            mode="vector",
            limit=limit,
            offset=offset,
            model=self.embeddings.model_name,
            min_score=self.min_score,
        )

        candidates = [m for m in self._newest_first(self._search_candidates(query)) if m.id in self._vectors]
        if not candidates:
            return [], config

        query_vector = self._normalize((await self.embeddings.get_embeddings([query.text]))[0])
        matrix = np.stack([self._vectors[m.id] for m in candidates])
        scores = matrix @ query_vector

        ranked = sorted(range(len(candidates)), key=lambda i: scores[i], reverse=True)
        ranked = [i for i in ranked if scores[i] >= self.min_score]
        return [candidates[i].model_copy(deep=True) for i in ranked[offset : offset + limit]], config
