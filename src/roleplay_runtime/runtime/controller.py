"""
Conversation runtime (Facade).

'ConversationRuntime' is the single entry point for chat turns. It coordinates
the conversation and character repositories, the message memory, the LLM, the
function registry and the execution queue. Every turn runs the same steps:

    Validate -> LoadContext -> GenerateResponse -> DetectFunctionCalls
             -> Enqueue(0..n) -> PersistHistory -> RespondToCaller

The two public entry points for message processing are:

    'chat'       - appends the user message and the generated reply.
    'regenerate' - replaces the most recent assistant message in place.

Function calls requested by the reply are only enqueued; the runtime never waits
for them to finish. A function call that cannot be enqueued (unknown name, bad
arguments, saturated queue) is reported in 'ChatResponse.rejected_function_calls'
but does not undo the reply, which is still persisted and returned. Enqueue and
PersistHistory run under the conversation's history lock, so the executor can
only write an outcome into the conversation after the turn that requested it.

The caller identity passed in is trusted; authentication happens before the
runtime is invoked.
"""

from loguru import logger
from pydantic import BaseModel, Field

from roleplay_runtime.conversation_database.data_models.account import AccountProvider, UsageRecord
from roleplay_runtime.conversation_database.data_models.character import Character, CharacterDatabase
from roleplay_runtime.conversation_database.data_models.conversation import ConversationDatabase, ConversationMemory
from roleplay_runtime.conversation_database.history import ConversationHistory, find_latest_assistant
from roleplay_runtime.errors import BadRequest, Forbidden, RoleplayRuntimeError, UpstreamError
from roleplay_runtime.execution.queue import ExecutionQueue
from roleplay_runtime.functions.base import FunctionCallRequest
from roleplay_runtime.functions.registry import FunctionRegistry
from roleplay_runtime.llms.base import LLM, LLMMessage, Roles, Usage
from roleplay_runtime.memory.base import Memory, Message, MessageRole
from roleplay_runtime.metrics import MetricsSink, NullMetricsSink, emit_safely


class RejectedFunctionCall(BaseModel):
    """A function call from the reply that was not enqueued."""

    name: str
    tool_call_id: str
    reason: str
    status_code: int


class ChatResponse(BaseModel):
    conversation_id: str
    message: Message
    function_calls: list[FunctionCallRequest] = Field(default_factory=list)
    rejected_function_calls: list[RejectedFunctionCall] = Field(default_factory=list)
    usage: Usage | None = None


class ConversationRuntime:
    """
    Orchestrates chat and regenerate turns.

    Attributes:
        accounts: Optional balance/usage bookkeeping. Without it every caller
            may chat for free.
        enqueue_timeout: Seconds a turn waits for room on a full execution
            queue before reporting the function call as rejected. 'None' waits
            indefinitely.
        max_history_messages: Only the most recent messages are sent to the
            LLM when set.
    """

    def __init__(
        self,
        conversation_db: ConversationDatabase,
        character_db: CharacterDatabase,
        memory: Memory[Message],
        llm: LLM,
        registry: FunctionRegistry,
        queue: ExecutionQueue,
        accounts: AccountProvider | None = None,
        metrics: MetricsSink | None = None,
        history: ConversationHistory | None = None,
        enqueue_timeout: float | None = None,
        price_per_message: int = 0,
        max_history_messages: int | None = None,
    ) -> None:
        self.conversation_db = conversation_db
        self.character_db = character_db
        self.memory = memory
        self.llm = llm
        self.registry = registry
        self.queue = queue
        self.accounts = accounts
        self.metrics = metrics or NullMetricsSink()
        self.history = history or ConversationHistory(conversation_db, memory)
        self.enqueue_timeout = enqueue_timeout
        self.price_per_message = price_per_message
        self.max_history_messages = max_history_messages

    async def start_conversation(self, user_id: str, character_id: str, public: bool = False) -> ConversationMemory:
        character = await self.character_db.get_character_by_id(character_id)
        conversation = await self.conversation_db.create_conversation(
            ConversationMemory(owner_id=user_id, character_id=character.id, public=public)
        )
        logger.info(f"User {user_id} started conversation {conversation.id} with {character.name}")
        return conversation

    async def _validate(self, user_id: str, conversation_id: str, action: str) -> tuple[ConversationMemory, Character]:
        conversation = await self.conversation_db.get_conversation_by_id(conversation_id)
        if not conversation.can_be_accessed_by(user_id):
            raise Forbidden(f"You are not allowed to {action} in this conversation")
        character = await self.character_db.get_character_by_id(conversation.character_id)
        return conversation, character

    def _build_prompt(self, character: Character, history: list[Message]) -> list[LLMMessage]:
        if self.max_history_messages is not None:
            history = history[-self.max_history_messages :] if self.max_history_messages > 0 else []
        prompt = [LLMMessage(role=Roles.SYSTEM, content=character.system_prompt())]
        return prompt + Message.pack(history)

    async def _generate(self, character: Character, prompt: list[LLMMessage]) -> LLMMessage:
        config = character.system_config
        tools = self.registry.json_schemas(config.functions) or None
        try:
            return await self.llm.generate(prompt, config, tools)
        except RoleplayRuntimeError:
            raise
        except Exception as exc:
            raise UpstreamError(f"LLM generation failed: {exc}") from exc

    async def _enqueue_function_calls(
        self, response: LLMMessage, reply: Message, conversation: ConversationMemory
    ) -> tuple[list[FunctionCallRequest], list[RejectedFunctionCall]]:
        enqueued: list[FunctionCallRequest] = []
        rejected: list[RejectedFunctionCall] = []
        for tool_call in response.tool_calls or []:
            try:
                request = self.registry.build_request(
                    tool_call,
                    conversation_id=conversation.id,
                    message_id=reply.id,
                    owner_id=conversation.owner_id,
                    character_id=conversation.character_id,
                )
                await self.queue.put(request, timeout=self.enqueue_timeout)
            except RoleplayRuntimeError as exc:
                logger.warning(f"Function call {tool_call.function.name!r} in {conversation.id} rejected: {exc.message}")
                rejected.append(
                    RejectedFunctionCall(
                        name=tool_call.function.name,
                        tool_call_id=tool_call.id,
                        reason=exc.message,
                        status_code=exc.status_code,
                    )
                )
                emit_safely(self.metrics, "function_calls_rejected", tags={"function": tool_call.function.name})
                continue
            enqueued.append(request)
            emit_safely(self.metrics, "function_calls_enqueued", tags={"function": request.function_name})
        return enqueued, rejected

    async def _record_usage(self, user_id: str, character: Character, usage: Usage | None) -> None:
        usage = usage or Usage()
        emit_safely(
            self.metrics,
            "token_usage",
            value=usage.total_tokens,
            tags={"model": character.system_config.model, "character": character.id},
        )
        if self.accounts is None:
            return
        await self.accounts.record_usage(
            user_id,
            UsageRecord(
                model=character.system_config.model,
                character_id=character.id,
                usage=usage,
                price=self.price_per_message,
            ),
        )

    async def chat(self, user_id: str, conversation_id: str, content: str) -> ChatResponse:
        if not content or not content.strip():
            raise BadRequest("Message content must not be empty")

        conversation, character = await self._validate(user_id, conversation_id, "chat")
        if self.accounts is not None:
            await self.accounts.ensure_account(user_id, self.price_per_message)

        history = await self.history.load(conversation)
        if not history:
            emit_safely(self.metrics, "character_non_empty_sessions", tags={"character": character.id})

        user_message = Message(
            conversation_id=conversation.id,
            role=MessageRole.USER,
            owner_id=conversation.owner_id,
            character_id=character.id,
            text_content=content,
            metadata={"author_id": user_id},
        )
        response = await self._generate(character, self._build_prompt(character, history + [user_message]))
        reply = Message.from_llm_response(response, conversation, conversation.owner_id)

        # Outcome messages of the enqueued calls must land after this turn.
        async with self.history.locked(conversation.id) as locked:
            enqueued, rejected = await self._enqueue_function_calls(response, reply, conversation)
            await locked.append([user_message, reply])
        await self._record_usage(user_id, character, response.usage)
        emit_safely(self.metrics, "character_messages", tags={"character": character.id})

        logger.info(
            f"Chat turn in {conversation.id}: {len(enqueued)} function call(s) enqueued, {len(rejected)} rejected"
        )
        return ChatResponse(
            conversation_id=conversation.id,
            message=reply,
            function_calls=enqueued,
            rejected_function_calls=rejected,
            usage=response.usage,
        )

    async def regenerate(self, user_id: str, conversation_id: str) -> ChatResponse:
        conversation, character = await self._validate(user_id, conversation_id, "regenerate messages")
        if not conversation.history:
            raise BadRequest("No messages to regenerate")
        history = await self.history.load(conversation)
        index = find_latest_assistant(history)
        if index is None:
            raise BadRequest("No messages to regenerate")
        if self.accounts is not None:
            await self.accounts.ensure_account(user_id, self.price_per_message)

        previous = history[index]
        response = await self._generate(character, self._build_prompt(character, history[:index]))

        replacement = Message.from_llm_response(response, conversation, conversation.owner_id)
        replacement = replacement.model_copy(
            update={"id": previous.id, "metadata": {**replacement.metadata, "regenerated": True}}
        )

        async with self.history.locked(conversation.id) as locked:
            enqueued, rejected = await self._enqueue_function_calls(response, replacement, conversation)
            await locked.replace_latest_assistant(replacement)
        await self._record_usage(user_id, character, response.usage)
        emit_safely(self.metrics, "character_regenerations", tags={"character": character.id})

        logger.info(f"Regenerated message {previous.id} in {conversation.id}")
        return ChatResponse(
            conversation_id=conversation.id,
            message=replacement,
            function_calls=enqueued,
            rejected_function_calls=rejected,
            usage=response.usage,
        )
