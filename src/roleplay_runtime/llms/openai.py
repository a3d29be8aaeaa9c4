"""
OpenAI chat completions backend.

Tool messages produced by the executor are written into the history long after
the assistant turn that requested them, so they have no matching 'tool_calls'
entry in the packed conversation. The chat completions API rejects such
orphaned tool messages; they are sent as system notes instead.
"""

from typing import Any

from loguru import logger
from openai import AsyncOpenAI, OpenAIError

from roleplay_runtime.errors import UpstreamError
from roleplay_runtime.functions.base import ToolDescription
from roleplay_runtime.llms.base import LLM, Function, LLMMessage, Roles, SystemConfig, ToolCall, Usage


class OpenAILLM(LLM):
    def __init__(self, api_key: str | None = None, base_url: str | None = None, client: AsyncOpenAI | None = None):
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    @staticmethod
    def to_openai_messages(conversation: list[LLMMessage]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        for message in conversation:
            if message.role == Roles.TOOL and message.tool_call_id is None:
                label = f"Function {message.name} result" if message.name else "Function result"
                messages.append({"role": Roles.SYSTEM.value, "content": f"{label}: {message.content}"})
                continue
            payload: dict[str, Any] = {"role": message.role.value, "content": message.content}
            if message.tool_calls:
                payload["tool_calls"] = [call.model_dump() for call in message.tool_calls]
            if message.tool_call_id is not None:
                payload["tool_call_id"] = message.tool_call_id
            messages.append(payload)
        return messages

    async def generate(
        self,
        conversation: list[LLMMessage],
        config: SystemConfig,
        tools: list[ToolDescription] | None = None,
    ) -> LLMMessage:
        kwargs: dict[str, Any] = {
            "model": config.model,
            "messages": self.to_openai_messages(conversation),
            "temperature": config.temperature,
        }
        if config.max_tokens is not None:
            kwargs["max_tokens"] = config.max_tokens
        if tools:
            kwargs["tools"] = tools
        for key, value in config.extra.items():
            kwargs.setdefault(key, value)

        try:
            completion = await self.client.chat.completions.create(**kwargs)
        except OpenAIError as exc:
            raise UpstreamError(f"OpenAI request failed: {exc}") from exc

        choice = completion.choices[0].message
        tool_calls = [
            ToolCall(id=call.id, function=Function(name=call.function.name, arguments=call.function.arguments))
            for call in (choice.tool_calls or [])
        ]
        usage = None
        if completion.usage is not None:
            usage = Usage(
                prompt_tokens=completion.usage.prompt_tokens,
                completion_tokens=completion.usage.completion_tokens,
                total_tokens=completion.usage.total_tokens,
            )
        logger.debug(f"OpenAI {config.model} replied with {len(tool_calls)} tool call(s), usage={usage}")
        return LLMMessage(
            role=Roles.ASSISTANT,
            content=choice.content or "",
            tool_calls=tool_calls or None,
            usage=usage,
        )
