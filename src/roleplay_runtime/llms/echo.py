from roleplay_runtime.functions.base import ToolDescription
from roleplay_runtime.llms.base import LLM, LLMMessage, Roles, SystemConfig, Usage


class EchoLLM(LLM):
    """Replies with the last user message. For local runs without an API key."""

    async def generate(
        self,
        conversation: list[LLMMessage],
        config: SystemConfig,
        tools: list[ToolDescription] | None = None,
    ) -> LLMMessage:
        user_prompt = next((m.content for m in reversed(conversation) if m.role == Roles.USER), "")
        content = f"{config.name} heard you say: {user_prompt}"
        prompt_tokens = sum(len(m.content.split()) for m in conversation)
        completion_tokens = len(content.split())
        return LLMMessage(
            role=Roles.ASSISTANT,
            content=content,
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )
