"""
Service assembly for the roleplay runtime.

'build_service' wires the in-memory repositories, the message memory, the
function registry, the execution queue, the executor and the conversation
runtime together, the way the production process does at startup: the registry
is fixed before anything else runs, and a single executor task is spawned next
to the request-serving code.

Usage
-----
Run a short demo conversation with the default echo backend:

    python -m roleplay_runtime.service

Select a different LLM backend via environment variable:

    ROLEPLAY_LLM_BACKEND=openai OPENAI_API_KEY=... python -m roleplay_runtime.service
"""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from roleplay_runtime.config import RuntimeSettings
from roleplay_runtime.conversation_database.data_models.character import Character
from roleplay_runtime.conversation_database.history import ConversationHistory
from roleplay_runtime.conversation_database.in_memory import (
    InMemoryAccountProvider,
    InMemoryCharacterDatabase,
    InMemoryConversationDatabase,
)
from roleplay_runtime.execution import ExecutionQueue, FunctionExecutor, InMemoryAuditLog
from roleplay_runtime.functions.base import FunctionHandler
from roleplay_runtime.functions.registry import FunctionRegistry
from roleplay_runtime.llms.base import LLM, SystemConfig
from roleplay_runtime.memory.base import Memory, Message
from roleplay_runtime.memory.in_memory import InMemoryMemory
from roleplay_runtime.metrics import LoggingMetricsSink, MetricsSink
from roleplay_runtime.runtime.controller import ConversationRuntime
from roleplay_runtime.utils.logging import setup_logging


def build_llm(settings: RuntimeSettings) -> LLM:
    """Instantiate the LLM for the configured backend."""
    match settings.llm_backend:
        case "openai":
            from roleplay_runtime.llms.openai import OpenAILLM

            logger.info(f"LLM backend: OpenAI ({settings.model})")
            return OpenAILLM(api_key=settings.openai_api_key or None, base_url=settings.openai_base_url)
        case "echo":
            from roleplay_runtime.llms.echo import EchoLLM

            logger.info("LLM backend: Echo")
            return EchoLLM()
        case _:
            raise ValueError(f"Unsupported backend {settings.llm_backend!r}. Choose 'openai' or 'echo'.")


@dataclass
class RoleplayService:
    settings: RuntimeSettings
    runtime: ConversationRuntime
    executor: FunctionExecutor
    queue: ExecutionQueue
    registry: FunctionRegistry
    memory: Memory[Message]
    audit_log: InMemoryAuditLog
    characters: InMemoryCharacterDatabase
    metrics: MetricsSink

    async def start(self) -> None:
        await self.memory.initialize()
        self.executor.start()

    async def stop(self) -> None:
        """Refuse new function calls, let queued ones finish, then stop the executor."""
        self.queue.close()
        await self.executor.stop()


def build_service(
    settings: RuntimeSettings | None = None,
    handlers: Sequence[FunctionHandler] = (),
    llm: LLM | None = None,
    memory: Memory[Message] | None = None,
) -> RoleplayService:
    settings = settings or RuntimeSettings.from_env()
    registry = FunctionRegistry(handlers)
    memory = memory or InMemoryMemory()
    conversations = InMemoryConversationDatabase()
    characters = InMemoryCharacterDatabase()
    history = ConversationHistory(conversations, memory)
    queue = ExecutionQueue(capacity=settings.queue_capacity)
    audit_log = InMemoryAuditLog()
    metrics = LoggingMetricsSink()

    executor = FunctionExecutor(
        queue,
        registry,
        audit_log,
        history=history if settings.reflect_outcomes else None,
        retry_policy=settings.retry_policy(),
        metrics=metrics,
        workers=settings.executor_workers,
    )
    runtime = ConversationRuntime(
        conversations,
        characters,
        memory,
        llm or build_llm(settings),
        registry,
        queue,
        accounts=InMemoryAccountProvider(initial_balance=settings.initial_balance),
        metrics=metrics,
        history=history,
        enqueue_timeout=settings.enqueue_timeout,
        price_per_message=settings.price_per_message,
        max_history_messages=settings.max_history_messages,
    )
    logger.info(f"Registered functions: {registry.names or 'none'}")
    return RoleplayService(
        settings=settings,
        runtime=runtime,
        executor=executor,
        queue=queue,
        registry=registry,
        memory=memory,
        audit_log=audit_log,
        characters=characters,
        metrics=metrics,
    )


async def main(settings: RuntimeSettings) -> None:
    service = build_service(settings)
    await service.start()
    try:
        character = await service.characters.create_character(
            Character(
                name="Voda",
                description="A cheerful guide to the city of canals.",
                system_config=SystemConfig(name="Voda", model=settings.model),
            )
        )
        conversation = await service.runtime.start_conversation("demo-user", character.id)
        for line in ("hello", "what should I see first?"):
            response = await service.runtime.chat("demo-user", conversation.id, line)
            logger.info(f"user: {line}")
            logger.info(f"{character.name}: {response.message.text}")
        regenerated = await service.runtime.regenerate("demo-user", conversation.id)
        logger.info(f"{character.name} (regenerated): {regenerated.message.text}")
    finally:
        await service.stop()


if __name__ == "__main__":
    _settings = RuntimeSettings.from_env()
    setup_logging(_settings.log_level, serialize=_settings.log_json)
    asyncio.run(main(_settings))
