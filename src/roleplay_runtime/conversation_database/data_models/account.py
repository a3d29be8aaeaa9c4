"""
Account data model and provider interface.

Accounts are owned by the account-management service; the runtime only checks
the balance before a generation and records token usage afterwards. Accounts are
created on first sight, so applications do not need an explicit registration
flow.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel, Field

from roleplay_runtime.llms.base import Usage
from roleplay_runtime.utils.time import get_current_timestamp


class UsageRecord(BaseModel):
    model: str
    character_id: str
    usage: Usage
    price: int
    created_at: int = Field(default_factory=get_current_timestamp)


class Account(BaseModel):
    id: str
    balance: int = 0
    usage: list[UsageRecord] = Field(default_factory=list)


class AccountProvider(ABC):
    """Abstract balance and usage bookkeeping for chat callers."""

    @abstractmethod
    async def ensure_account(self, user_id: str, price: int) -> Account:
        """Return the caller's account, creating it if needed.

        Raise 'BadRequest' when the balance does not cover 'price'.
        """
        pass

    @abstractmethod
    async def record_usage(self, user_id: str, record: UsageRecord) -> Account:
        """Debit 'record.price' and append the record to the account's usage."""
        pass
