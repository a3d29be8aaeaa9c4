"""
Process-wide function registry.

The registry is built once at startup from the list of handlers the service
ships with and is read-only afterwards. The conversation runtime uses it twice
per turn: to describe the allowed functions to the LLM, and to turn the tool
calls in the reply into 'FunctionCallRequest' objects. A tool call naming an
unknown function fails here, before anything reaches the execution queue.
"""

import json
from collections.abc import Iterable, Mapping
from types import MappingProxyType

from pydantic import ValidationError

from roleplay_runtime.errors import BadRequest, UnknownFunction
from roleplay_runtime.functions.base import FunctionCallRequest, FunctionHandler, ToolDescription
from roleplay_runtime.llms.base import ToolCall


class FunctionRegistry:
    """Immutable mapping from function name to 'FunctionHandler'."""

    def __init__(self, handlers: Iterable[FunctionHandler] = ()) -> None:
        mapping: dict[str, FunctionHandler] = {}
        for handler in handlers:
            if handler.name in mapping:
                raise ValueError(f"Function {handler.name!r} is registered twice")
            mapping[handler.name] = handler
        self._handlers: Mapping[str, FunctionHandler] = MappingProxyType(mapping)

    @property
    def handlers(self) -> Mapping[str, FunctionHandler]:
        return self._handlers

    @property
    def names(self) -> list[str]:
        return list(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def resolve(self, name: str) -> FunctionHandler:
        try:
            return self._handlers[name]
        except KeyError:
            raise UnknownFunction(f"Function {name!r} is not registered") from None

    def json_schemas(self, names: Iterable[str] | None = None) -> list[ToolDescription]:
        """Tool descriptors for 'names' (all handlers when None); unknown names are skipped."""
        selected = self._handlers.keys() if names is None else [n for n in names if n in self._handlers]
        return [self._handlers[name].json_schema() for name in selected]

    def build_request(
        self,
        tool_call: ToolCall,
        *,
        conversation_id: str,
        message_id: str,
        owner_id: str,
        character_id: str,
    ) -> FunctionCallRequest:
        """Validate 'tool_call' and wrap it into a 'FunctionCallRequest'.

        Raises 'UnknownFunction' for unregistered names and 'BadRequest' when the
        arguments are not a JSON object or fail the handler's 'arguments_model'.
        """
        handler = self.resolve(tool_call.function.name)

        try:
            arguments = json.loads(tool_call.function.arguments or "{}")
        except json.JSONDecodeError as exc:
            raise BadRequest(f"Arguments for {handler.name!r} are not valid JSON: {exc.msg}") from exc
        if not isinstance(arguments, dict):
            raise BadRequest(f"Arguments for {handler.name!r} must be a JSON object")

        if handler.arguments_model is not None:
            try:
                arguments = handler.arguments_model.model_validate(arguments).model_dump(mode="json")
            except ValidationError as exc:
                raise BadRequest(f"Invalid arguments for {handler.name!r}: {exc.errors()[0]['msg']}") from exc

        return FunctionCallRequest(
            function_name=handler.name,
            arguments=arguments,
            conversation_id=conversation_id,
            message_id=message_id,
            owner_id=owner_id,
            character_id=character_id,
            tool_call_id=tool_call.id,
        )
