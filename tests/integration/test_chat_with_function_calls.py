"""
End-to-end flows through the assembled service: a chat turn that requests a
grant allocation, the executor retrying it in the background, and the outcome
showing up in the conversation.
"""

import asyncio

import pytest
import pytest_asyncio

from roleplay_runtime.config import RuntimeSettings
from roleplay_runtime.conversation_database.data_models.character import Character
from roleplay_runtime.execution import TerminalState
from roleplay_runtime.functions.gitcoin import ChainCongested, GitcoinAllocateGrant, InsufficientFunds, RateLimited
from roleplay_runtime.llms.base import SystemConfig
from roleplay_runtime.memory.base import MessageRole
from roleplay_runtime.service import build_service

pytestmark = [pytest.mark.asyncio, pytest.mark.integration]


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings(
        retry_max_attempts=3,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        enqueue_timeout=0.5,
        price_per_message=1,
        initial_balance=100,
    )


@pytest_asyncio.fixture
async def service(settings, llm, tx_client):
    service = build_service(settings, handlers=[GitcoinAllocateGrant(tx_client)], llm=llm)
    await service.start()
    yield service
    if service.executor.running:
        await service.stop()


@pytest_asyncio.fixture
async def conversation(service):
    character = await service.characters.create_character(
        Character(
            name="Grantly",
            description="A patron of open-source public goods.",
            system_config=SystemConfig(name="Grantly", functions=["gitcoin_allocate_grant"]),
        )
    )
    return await service.runtime.start_conversation("alice", character.id)


async def load_history(service, conversation_id):
    stored = await service.runtime.conversation_db.get_conversation_by_id(conversation_id)
    return await service.runtime.history.load(stored)


class TestChatAndRegenerate:
    async def test_hello_then_regenerate_keeps_history_length(self, service, conversation, llm):
        response = await service.runtime.chat("alice", conversation.id, "hello")
        assert response.message.text == "hi"
        assert len(await load_history(service, conversation.id)) == 2

        llm.queue_reply("hello again")
        regenerated = await service.runtime.regenerate("alice", conversation.id)

        messages = await load_history(service, conversation.id)
        assert len(messages) == 2
        assert regenerated.message.id == response.message.id
        assert messages[-1].text == "hello again"


class TestGrantAllocation:
    async def test_transient_failures_are_retried_until_success(
        self, service, conversation, llm, tx_client, make_tool_call, recipient
    ):
        tx_client.errors = [RateLimited("429"), ChainCongested("mempool full")]
        llm.queue_reply(
            "Sending 5 tokens your way.",
            [make_tool_call("gitcoin_allocate_grant", f'{{"recipient": "{recipient}", "amount": 5}}')],
        )

        response = await service.runtime.chat("alice", conversation.id, "please fund my grant")
        [request] = response.function_calls
        await service.stop()

        outcome = await service.audit_log.get_outcome(request.id)
        assert outcome.state == TerminalState.SUCCEEDED
        assert outcome.attempts == 3
        assert tx_client.sent[0]["value"] == 5 * 10**18
        assert tx_client.sent[0]["idempotency_key"] == request.id

        messages = await load_history(service, conversation.id)
        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT, MessageRole.TOOL_CALL]
        assert messages[2].metadata["source_message_id"] == response.message.id
        assert outcome.result["transaction_hash"] in messages[2].text

    async def test_permanent_failure_is_recorded_once(
        self, service, conversation, llm, tx_client, make_tool_call, recipient
    ):
        tx_client.errors = [InsufficientFunds("wallet empty")]
        llm.queue_reply(
            "Sending 500 tokens.",
            [make_tool_call("gitcoin_allocate_grant", f'{{"recipient": "{recipient}", "amount": 500}}')],
        )

        response = await service.runtime.chat("alice", conversation.id, "fund it big")
        await service.stop()

        outcome = await service.audit_log.get_outcome(response.function_calls[0].id)
        assert outcome.state == TerminalState.FAILED_PERMANENTLY
        assert outcome.attempts == 1
        assert "InsufficientFunds" in outcome.error
        assert tx_client.sent == []
        assert len(await load_history(service, conversation.id)) == 3

    async def test_invalid_arguments_never_reach_the_queue(self, service, conversation, llm, make_tool_call):
        llm.queue_reply("Sending.", [make_tool_call("gitcoin_allocate_grant", '{"recipient": "me", "amount": 5}')])

        response = await service.runtime.chat("alice", conversation.id, "fund me")

        assert response.function_calls == []
        assert response.rejected_function_calls[0].status_code == 400
        assert len(await load_history(service, conversation.id)) == 2
        assert await service.audit_log.list_outcomes() == []

    async def test_concurrent_turns_and_executor_writes_lose_nothing(
        self, service, conversation, llm, make_tool_call, recipient
    ):
        for i in range(5):
            llm.queue_reply(
                f"Sending {i + 1}.",
                [make_tool_call("gitcoin_allocate_grant", f'{{"recipient": "{recipient}", "amount": {i + 1}}}')],
            )

        await asyncio.gather(*(service.runtime.chat("alice", conversation.id, f"turn {i}") for i in range(5)))
        await service.stop()

        messages = await load_history(service, conversation.id)
        assert len(messages) == 15
        assert sum(m.role == MessageRole.TOOL_CALL for m in messages) == 5
        assert len(await service.audit_log.list_outcomes(conversation.id)) == 5
        assert service.metrics.total("character_messages") == 5
