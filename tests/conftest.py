"""
Shared fixtures and fakes for the roleplay runtime test-suite.

The fakes stand in for the network-facing pieces (LLM provider, embedding
model, chain client) so every test runs in-process and deterministically.
"""

from collections.abc import Callable
from typing import Any

import numpy as np
import pytest
import pytest_asyncio

from roleplay_runtime.conversation_database.data_models.character import Character
from roleplay_runtime.conversation_database.history import ConversationHistory
from roleplay_runtime.conversation_database.in_memory import (
    InMemoryAccountProvider,
    InMemoryCharacterDatabase,
    InMemoryConversationDatabase,
)
from roleplay_runtime.embeddings.base import EmbeddingsModel
from roleplay_runtime.execution import ExecutionQueue, FunctionExecutor, InMemoryAuditLog, RetryPolicy
from roleplay_runtime.functions.base import FunctionHandler, PermanentHandlerError, TransientHandlerError
from roleplay_runtime.functions.gitcoin import TransactionClient
from roleplay_runtime.functions.registry import FunctionRegistry
from roleplay_runtime.llms.base import LLM, Function, LLMMessage, Roles, SystemConfig, ToolCall, Usage
from roleplay_runtime.memory.in_memory import InMemoryMemory
from roleplay_runtime.metrics import LoggingMetricsSink
from roleplay_runtime.runtime.controller import ConversationRuntime

RECIPIENT = "0x" + "ab" * 20


# ===== FAKES =====


class ScriptedLLM(LLM):
    """Returns queued replies in order, then falls back to a fixed text reply."""

    def __init__(self, replies: list[LLMMessage | Exception] | None = None, default: str = "hi") -> None:
        self.replies = list(replies or [])
        self.default = default
        self.calls: list[dict[str, Any]] = []

    def queue_reply(self, content: str = "hi", tool_calls: list[ToolCall] | None = None) -> None:
        self.replies.append(assistant_reply(content, tool_calls))

    async def generate(self, conversation, config, tools=None) -> LLMMessage:
        self.calls.append({"conversation": conversation, "config": config, "tools": tools})
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return reply
        return assistant_reply(self.default)


class VocabularyEmbeddings(EmbeddingsModel):
    """Bag-of-words vectors: every distinct token gets its own dimension on first sight."""

    model_name = "vocabulary-test"

    def __init__(self, embedding_size: int = 256) -> None:
        self.embedding_size = embedding_size
        self.vocabulary: dict[str, int] = {}
        self.calls = 0

    async def get_embeddings(self, texts):
        self.calls += 1
        inputs = [texts] if isinstance(texts, str) else texts
        matrix = np.zeros((len(inputs), self.embedding_size), dtype=np.float64)
        for row, text in enumerate(inputs):
            for token in text.lower().split():
                index = self.vocabulary.setdefault(token.strip(".,!?"), len(self.vocabulary))
                matrix[row, index % self.embedding_size] += 1.0
        return matrix


class ScriptedHandler(FunctionHandler):
    """Raises the queued errors in order, then succeeds with the received arguments."""

    name = "scripted"
    description = "Test handler with a scripted sequence of failures."
    parameters = {"type": "object", "properties": {"value": {"type": "integer"}}}

    def __init__(self, errors: list[Exception] | None = None) -> None:
        self.errors = list(errors or [])
        self.calls: list[dict[str, Any]] = []

    async def execute(self, args: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(args)
        if self.errors:
            raise self.errors.pop(0)
        return {"echo": {key: value for key, value in args.items() if not key.startswith("_")}}


class FakeTransactionClient(TransactionClient):
    """Records transactions and deduplicates on the idempotency key."""

    def __init__(self, errors: list[Exception] | None = None) -> None:
        self.errors = list(errors or [])
        self.sent: list[dict[str, Any]] = []
        self._hashes: dict[str, str] = {}

    async def send_transaction(self, to: str, value: int, data: bytes, idempotency_key: str) -> str:
        if idempotency_key in self._hashes:
            return self._hashes[idempotency_key]
        if self.errors:
            raise self.errors.pop(0)
        tx_hash = f"0x{len(self._hashes) + 1:064x}"
        self._hashes[idempotency_key] = tx_hash
        self.sent.append({"to": to, "value": value, "data": data, "idempotency_key": idempotency_key})
        return tx_hash


class RecordingSleep:
    """Replacement for 'asyncio.sleep' that returns immediately and keeps the delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def assistant_reply(content: str = "hi", tool_calls: list[ToolCall] | None = None) -> LLMMessage:
    return LLMMessage(
        role=Roles.ASSISTANT,
        content=content,
        tool_calls=tool_calls,
        usage=Usage(prompt_tokens=3, completion_tokens=1, total_tokens=4),
    )


def tool_call(name: str, arguments: str, call_id: str = "call_1") -> ToolCall:
    return ToolCall(id=call_id, function=Function(name=name, arguments=arguments))


# ===== HELPER FIXTURES =====


@pytest.fixture
def make_tool_call() -> Callable[..., ToolCall]:
    return tool_call


@pytest.fixture
def transient() -> Callable[[str], Exception]:
    return lambda text="temporarily unavailable": TransientHandlerError(text)


@pytest.fixture
def permanent() -> Callable[[str], Exception]:
    return lambda text="rejected": PermanentHandlerError(text)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fast_retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0.1, max_delay=1.0)


# ===== STORAGE FIXTURES =====


@pytest_asyncio.fixture
async def memory() -> InMemoryMemory:
    store: InMemoryMemory = InMemoryMemory()
    await store.initialize()
    return store


@pytest.fixture
def conversation_db() -> InMemoryConversationDatabase:
    return InMemoryConversationDatabase()


@pytest.fixture
def character_db() -> InMemoryCharacterDatabase:
    return InMemoryCharacterDatabase()


@pytest.fixture
def accounts() -> InMemoryAccountProvider:
    return InMemoryAccountProvider(initial_balance=10)


@pytest.fixture
def history(conversation_db, memory) -> ConversationHistory:
    return ConversationHistory(conversation_db, memory)


@pytest_asyncio.fixture
async def character(character_db) -> Character:
    return await character_db.create_character(
        Character(
            name="Mira",
            description="A retired sea captain.",
            system_config=SystemConfig(name="Mira", functions=["scripted"]),
        )
    )


# ===== RUNTIME FIXTURES =====


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture
def handler() -> ScriptedHandler:
    return ScriptedHandler()


@pytest.fixture
def registry(handler) -> FunctionRegistry:
    return FunctionRegistry([handler])


@pytest.fixture
def queue() -> ExecutionQueue:
    return ExecutionQueue(capacity=10)


@pytest.fixture
def audit_log() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def metrics() -> LoggingMetricsSink:
    return LoggingMetricsSink()


@pytest.fixture
def executor(queue, registry, audit_log, history, fast_retry_policy, metrics, recording_sleep) -> FunctionExecutor:
    return FunctionExecutor(
        queue,
        registry,
        audit_log,
        history=history,
        retry_policy=fast_retry_policy,
        metrics=metrics,
        sleep=recording_sleep,
    )


@pytest.fixture
def runtime(
    conversation_db, character_db, memory, llm, registry, queue, accounts, metrics, history
) -> ConversationRuntime:
    return ConversationRuntime(
        conversation_db,
        character_db,
        memory,
        llm,
        registry,
        queue,
        accounts=accounts,
        metrics=metrics,
        history=history,
        enqueue_timeout=0.05,
        price_per_message=1,
    )


# ===== FUNCTION FIXTURES =====


@pytest.fixture
def recipient() -> str:
    return RECIPIENT


@pytest.fixture
def tx_client() -> FakeTransactionClient:
    return FakeTransactionClient()


@pytest.fixture
def embeddings() -> VocabularyEmbeddings:
    return VocabularyEmbeddings()
