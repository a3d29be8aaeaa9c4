"""Tests for the function registry."""

import pytest

from roleplay_runtime.errors import BadRequest, UnknownFunction
from roleplay_runtime.functions.gitcoin import GitcoinAllocateGrant
from roleplay_runtime.functions.registry import FunctionRegistry

IDS = {"conversation_id": "c1", "message_id": "m1", "owner_id": "alice", "character_id": "mira"}


@pytest.fixture
def gitcoin_registry(handler, tx_client) -> FunctionRegistry:
    return FunctionRegistry([handler, GitcoinAllocateGrant(tx_client)])


class TestFunctionRegistry:
    def test_lookup(self, gitcoin_registry, handler):
        assert gitcoin_registry.resolve("scripted") is handler
        assert "gitcoin_allocate_grant" in gitcoin_registry
        assert len(gitcoin_registry) == 2
        assert gitcoin_registry.names == ["scripted", "gitcoin_allocate_grant"]

    def test_unknown_function(self, gitcoin_registry):
        with pytest.raises(UnknownFunction) as exc_info:
            gitcoin_registry.resolve("launch_rocket")
        assert exc_info.value.status_code == 400

    def test_duplicate_registration_is_rejected(self, handler):
        with pytest.raises(ValueError):
            FunctionRegistry([handler, handler])

    def test_registry_is_read_only(self, gitcoin_registry):
        with pytest.raises(TypeError):
            gitcoin_registry.handlers["other"] = None  # type: ignore[index]

    def test_json_schemas_for_selected_functions(self, gitcoin_registry):
        schemas = gitcoin_registry.json_schemas(["gitcoin_allocate_grant", "not_registered"])
        assert len(schemas) == 1
        assert schemas[0]["type"] == "function"
        assert schemas[0]["function"]["name"] == "gitcoin_allocate_grant"
        assert schemas[0]["function"]["parameters"]["required"] == ["recipient", "amount"]
        assert len(gitcoin_registry.json_schemas()) == 2
        assert gitcoin_registry.json_schemas([]) == []


class TestBuildRequest:
    def test_builds_request_from_tool_call(self, gitcoin_registry, make_tool_call):
        request = gitcoin_registry.build_request(make_tool_call("scripted", '{"value": 3}', "call_7"), **IDS)
        assert request.function_name == "scripted"
        assert request.arguments == {"value": 3}
        assert request.tool_call_id == "call_7"
        assert request.conversation_id == "c1"
        assert request.message_id == "m1"
        assert request.attempts == 0

    def test_empty_arguments_become_empty_object(self, gitcoin_registry, make_tool_call):
        assert gitcoin_registry.build_request(make_tool_call("scripted", ""), **IDS).arguments == {}

    def test_invalid_json(self, gitcoin_registry, make_tool_call):
        with pytest.raises(BadRequest, match="not valid JSON"):
            gitcoin_registry.build_request(make_tool_call("scripted", "{value: 3"), **IDS)

    def test_arguments_must_be_an_object(self, gitcoin_registry, make_tool_call):
        with pytest.raises(BadRequest, match="JSON object"):
            gitcoin_registry.build_request(make_tool_call("scripted", "[1, 2]"), **IDS)

    def test_unknown_function_is_rejected_before_parsing(self, gitcoin_registry, make_tool_call):
        with pytest.raises(UnknownFunction):
            gitcoin_registry.build_request(make_tool_call("launch_rocket", "not json"), **IDS)

    def test_arguments_model_validation(self, gitcoin_registry, make_tool_call, recipient):
        with pytest.raises(BadRequest, match="Invalid arguments"):
            gitcoin_registry.build_request(
                make_tool_call("gitcoin_allocate_grant", '{"recipient": "0x123", "amount": 5}'), **IDS
            )
        request = gitcoin_registry.build_request(
            make_tool_call("gitcoin_allocate_grant", f'{{"recipient": "{recipient}", "amount": 5}}'), **IDS
        )
        assert request.arguments == {"recipient": recipient, "amount": 5, "grant_id": None}
