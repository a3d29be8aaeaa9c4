"""
Runtime settings.

Every setting has a default suitable for local runs and can be overridden with a
'ROLEPLAY_'-prefixed environment variable:

    ROLEPLAY_LLM_BACKEND=openai OPENAI_API_KEY=... python -m roleplay_runtime.service

LLM backends
------------
echo    - replies with the user's message; no credentials needed (default)
openai  - requires OPENAI_API_KEY (or ROLEPLAY_OPENAI_API_KEY)
"""

import os
from typing import Literal

from pydantic import BaseModel, Field

from roleplay_runtime.execution.queue import DEFAULT_QUEUE_CAPACITY
from roleplay_runtime.execution.retry import RetryPolicy


class RuntimeSettings(BaseModel):
    queue_capacity: int = Field(default=DEFAULT_QUEUE_CAPACITY, gt=0)
    enqueue_timeout: float | None = 5.0
    executor_workers: int = Field(default=1, ge=1)
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=10.0, ge=0)
    reflect_outcomes: bool = True

    price_per_message: int = Field(default=1, ge=0)
    initial_balance: int = Field(default=100, ge=0)
    max_history_messages: int | None = 50

    llm_backend: Literal["echo", "openai"] = "echo"
    model: str = "gpt-4o-mini"
    openai_api_key: str = ""
    openai_base_url: str | None = None

    log_level: str = "INFO"
    log_json: bool = False

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

    @classmethod
    def from_env(cls, prefix: str = "ROLEPLAY_") -> "RuntimeSettings":
        """Build settings from the environment; unset variables keep their defaults."""
        values: dict[str, str | None] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw is None:
                continue
            # an empty value switches optional settings off
            values[name] = None if raw == "" and name in ("enqueue_timeout", "max_history_messages") else raw
        if "openai_api_key" not in values:
            values["openai_api_key"] = os.environ.get("OPENAI_API_KEY", "")
        return cls.model_validate(values)
