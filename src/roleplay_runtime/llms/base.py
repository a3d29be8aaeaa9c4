"""
Core LLM abstractions and message data models.

Concrete LLM backends ('OpenAILLM', 'EchoLLM') implement the 'LLM' ABC. The shared
message format ('LLMMessage') is backend-agnostic, so the conversation runtime
packs stored history into it without knowing which provider will receive it.

'SystemConfig' travels with every generation call: it names the model and its
sampling parameters, and lists the registered functions the character is
allowed to call. The runtime turns that list into tool descriptors before
calling 'generate'.
"""

from abc import ABC, abstractmethod
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from roleplay_runtime.functions.base import ToolDescription


class Roles(StrEnum):
    """Conversation roles as used by the OpenAI chat completions API."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Function(BaseModel):
    """The function name and JSON-encoded arguments inside a tool call."""

    name: str
    arguments: str


class ToolCall(BaseModel):
    """A single tool invocation requested by the LLM."""

    id: str
    function: Function
    type: str = "function"


class Usage(BaseModel):
    """Token accounting reported by the provider for one generation."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class LLMMessage(BaseModel):
    """
    A single message in a conversation sent to or received from an LLM.

    'tool_calls' is populated when the assistant requests one or more function
    calls. 'tool_call_id' and 'name' are set on TOOL role messages carrying a
    function result. 'usage' is only set on messages returned by 'generate'.
    """

    content: str = ""
    role: Roles = Roles.ASSISTANT
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None
    usage: Usage | None = None


class SystemConfig(BaseModel):
    """Model selection and sampling parameters attached to a character.

    'extra' holds further provider request options ('top_p', 'seed', ...). They
    are added to the completion request but never replace the fields above.
    """

    name: str = "default"
    system_prompt: str = ""
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int | None = None
    functions: list[str] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)


class LLM(ABC):
    """
    Abstract base class for language model backends.

    Implementations raise 'UpstreamError' for provider failures; the runtime
    wraps anything else they raise into 'UpstreamError' too. Retrying a failed
    generation is the backend's own business.
    """

    @abstractmethod
    async def generate(
        self,
        conversation: list[LLMMessage],
        config: SystemConfig,
        tools: list[ToolDescription] | None = None,
    ) -> LLMMessage:
        """Return a single complete response for the given conversation."""
        pass
