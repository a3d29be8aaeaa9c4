"""
Gitcoin grant allocation.

'GitcoinAllocateGrant' lets a character send tokens to a grant recipient. The
transaction itself goes through a 'TransactionClient'; wallet management and
signing live behind that interface and are not part of this package.

The client receives the function-call request id as an idempotency key. A
transaction that timed out may still have been mined, so implementations must
return the existing transaction hash when they see a key a second time.
"""

from abc import ABC, abstractmethod
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from roleplay_runtime.functions.base import FunctionHandler, PermanentHandlerError, TransientHandlerError

WEI_PER_TOKEN = 10**18
GAS_ALLOWANCE_WEI = 10**16


def to_wei(amount: int) -> int:
    return amount * WEI_PER_TOKEN


def to_wei_with_gas(amount: int) -> int:
    """'amount' tokens in wei plus a fixed allowance for gas."""
    return to_wei(amount) + GAS_ALLOWANCE_WEI


class ChainError(Exception):
    """Base class for errors raised by a 'TransactionClient'."""


class RateLimited(ChainError):
    pass


class ChainCongested(ChainError):
    pass


class InsufficientFunds(ChainError):
    pass


class SignatureRejected(ChainError):
    pass


TRANSIENT_CHAIN_ERRORS: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    RateLimited,
    ChainCongested,
)
PERMANENT_CHAIN_ERRORS: tuple[type[BaseException], ...] = (InsufficientFunds, SignatureRejected)


class TransactionClient(ABC):
    """Submits signed value transfers to an EVM chain."""

    @abstractmethod
    async def send_transaction(self, to: str, value: int, data: bytes, idempotency_key: str) -> str:
        """Submit a transaction and return its hash.

        Must return the original hash, without resubmitting, when
        'idempotency_key' has been seen before.
        """
        pass


class AllocateGrantArguments(BaseModel):
    recipient: str = Field(pattern=r"^0x[0-9a-fA-F]{40}$")
    amount: int = Field(gt=0)
    grant_id: str | None = None


class GitcoinAllocateGrant(FunctionHandler):
    name = "gitcoin_allocate_grant"
    description = "Allocate tokens to a Gitcoin grant recipient on behalf of the character."
    parameters = {
        "type": "object",
        "properties": {
            "recipient": {"type": "string", "description": "EVM address of the grant recipient."},
            "amount": {"type": "integer", "description": "Whole tokens to allocate."},
            "grant_id": {"type": "string", "description": "Optional Gitcoin grant identifier."},
        },
        "required": ["recipient", "amount"],
    }
    arguments_model = AllocateGrantArguments

    def __init__(self, client: TransactionClient, include_gas: bool = False) -> None:
        self.client = client
        self.include_gas = include_gas

    async def execute(self, args: dict[str, Any]) -> dict[str, Any]:
        request_id = args.get("_request_id")
        if not request_id:
            raise PermanentHandlerError("Missing '_request_id'; refusing to send a transaction without an idempotency key")
        try:
            arguments = AllocateGrantArguments.model_validate(
                {key: value for key, value in args.items() if not key.startswith("_")}
            )
        except ValueError as exc:
            raise PermanentHandlerError(f"Invalid grant allocation: {exc}") from exc

        value = to_wei_with_gas(arguments.amount) if self.include_gas else to_wei(arguments.amount)
        try:
            tx_hash = await self.client.send_transaction(
                to=arguments.recipient, value=value, data=b"", idempotency_key=request_id
            )
        except TRANSIENT_CHAIN_ERRORS as exc:
            raise TransientHandlerError(f"{type(exc).__name__}: {exc}") from exc
        except PERMANENT_CHAIN_ERRORS as exc:
            raise PermanentHandlerError(f"{type(exc).__name__}: {exc}") from exc

        logger.info(f"Allocated {arguments.amount} tokens to {arguments.recipient} (tx {tx_hash})")
        return {
            "transaction_hash": tx_hash,
            "recipient": arguments.recipient,
            "amount": arguments.amount,
            "grant_id": arguments.grant_id,
        }
