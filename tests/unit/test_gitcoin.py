"""Tests for the Gitcoin grant allocation handler."""

import pytest

from roleplay_runtime.functions.base import PermanentHandlerError, TransientHandlerError
from roleplay_runtime.functions.gitcoin import (
    GAS_ALLOWANCE_WEI,
    ChainCongested,
    GitcoinAllocateGrant,
    InsufficientFunds,
    RateLimited,
    SignatureRejected,
    to_wei,
    to_wei_with_gas,
)

pytestmark = pytest.mark.asyncio


class TestConversions:
    async def test_to_wei(self):
        assert to_wei(1) == 10**18
        assert to_wei(0) == 0

    async def test_to_wei_with_gas(self):
        assert to_wei_with_gas(2) == 2 * 10**18 + GAS_ALLOWANCE_WEI


class TestGitcoinAllocateGrant:
    async def test_sends_transaction(self, tx_client, recipient):
        handler = GitcoinAllocateGrant(tx_client)
        result = await handler.execute({"recipient": recipient, "amount": 3, "grant_id": "g-12", "_request_id": "r1"})

        assert result["transaction_hash"].startswith("0x")
        assert result["amount"] == 3
        assert result["grant_id"] == "g-12"
        assert tx_client.sent == [{"to": recipient, "value": 3 * 10**18, "data": b"", "idempotency_key": "r1"}]

    async def test_include_gas(self, tx_client, recipient):
        await GitcoinAllocateGrant(tx_client, include_gas=True).execute(
            {"recipient": recipient, "amount": 1, "_request_id": "r1"}
        )
        assert tx_client.sent[0]["value"] == 10**18 + 10**16

    async def test_request_id_is_required(self, tx_client, recipient):
        with pytest.raises(PermanentHandlerError):
            await GitcoinAllocateGrant(tx_client).execute({"recipient": recipient, "amount": 1})
        assert tx_client.sent == []

    async def test_invalid_arguments_are_permanent(self, tx_client):
        with pytest.raises(PermanentHandlerError):
            await GitcoinAllocateGrant(tx_client).execute({"recipient": "nobody", "amount": -1, "_request_id": "r1"})

    @pytest.mark.parametrize("error", [RateLimited("slow down"), ChainCongested("mempool full"), TimeoutError()])
    async def test_transient_chain_errors(self, tx_client, recipient, error):
        tx_client.errors = [error]
        with pytest.raises(TransientHandlerError):
            await GitcoinAllocateGrant(tx_client).execute({"recipient": recipient, "amount": 1, "_request_id": "r1"})

    @pytest.mark.parametrize("error", [InsufficientFunds("empty wallet"), SignatureRejected("bad key")])
    async def test_permanent_chain_errors(self, tx_client, recipient, error):
        tx_client.errors = [error]
        with pytest.raises(PermanentHandlerError):
            await GitcoinAllocateGrant(tx_client).execute({"recipient": recipient, "amount": 1, "_request_id": "r1"})

    async def test_retry_with_same_request_id_reuses_transaction(self, tx_client, recipient):
        handler = GitcoinAllocateGrant(tx_client)
        args = {"recipient": recipient, "amount": 1, "_request_id": "r1"}
        first = await handler.execute(args)
        second = await handler.execute(args)
        assert first["transaction_hash"] == second["transaction_hash"]
        assert len(tx_client.sent) == 1

    async def test_schema(self, tx_client):
        schema = GitcoinAllocateGrant(tx_client).json_schema()
        assert schema["function"]["name"] == "gitcoin_allocate_grant"
        assert set(schema["function"]["parameters"]["properties"]) == {"recipient", "amount", "grant_id"}
