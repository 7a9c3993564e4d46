"""Tests for tool invocation and response normalization."""

import pytest
from mcp import types

from helpers import FakeSupervisor, SessionFactory, text_result
from mcp_harness.client.cache import SessionCache
from mcp_harness.client.tools import ToolInvoker, normalize_response
from mcp_harness.errors import ServerConnectionError, ToolCallError


class TestNormalizeResponse:
    def test_json_text_is_decoded(self):
        assert normalize_response(text_result('{"status": "success"}')) == {
            "status": "success"
        }

    def test_plain_text_is_returned_verbatim(self):
        assert normalize_response(text_result("hello there")) == "hello there"

    def test_first_text_item_wins(self):
        response = types.CallToolResult(
            content=[
                types.ImageContent(type="image", data="AAAA", mimeType="image/png"),
                types.TextContent(type="text", text="[1, 2]"),
                types.TextContent(type="text", text="ignored"),
            ]
        )
        assert normalize_response(response) == [1, 2]

    def test_response_without_text_is_returned_whole(self):
        response = types.CallToolResult(
            content=[types.ImageContent(type="image", data="AAAA", mimeType="image/png")]
        )
        normalized = normalize_response(response)
        assert isinstance(normalized, dict)
        assert normalized["content"][0]["type"] == "image"

    def test_plain_dict_response(self):
        assert normalize_response(
            {"content": [{"type": "text", "text": "42"}]}
        ) == 42
        assert normalize_response({"other": True}) == {"other": True}


@pytest.fixture
def factory():
    return SessionFactory(tools=["echo", "say", "echo"])


@pytest.fixture
def invoker(factory):
    supervisor = FakeSupervisor()
    supervisor.add("srv")
    return ToolInvoker(
        SessionCache(supervisor, health_check_timeout=0.2, session_factory=factory)
    )


class TestInvoke:
    @pytest.mark.asyncio
    async def test_successful_call(self, invoker, factory):
        outcome = await invoker.invoke("srv", "echo", {"message": "hi"})
        assert outcome.ok
        assert outcome.result == {"status": "success"}
        assert outcome.duration_ms >= 0
        assert factory.sessions[0].calls == [("echo", {"message": "hi"})]

    @pytest.mark.asyncio
    async def test_missing_arguments_become_empty_object(self, invoker, factory):
        await invoker.invoke("srv", "echo")
        assert factory.sessions[0].calls == [("echo", {})]

    @pytest.mark.asyncio
    async def test_server_reported_error_flag(self, invoker, factory):
        factory.responses["say"] = text_result("bad input", is_error=True)
        outcome = await invoker.invoke("srv", "say")
        assert outcome.ok
        assert outcome.is_error
        assert outcome.result == "bad input"
        assert outcome.to_dict()["is_error"] is True

    @pytest.mark.asyncio
    async def test_call_failure_is_captured(self, invoker, factory):
        factory.responses["echo"] = RuntimeError("Tool failed: echo")
        outcome = await invoker.invoke("srv", "echo")
        assert not outcome.ok
        assert outcome.result is None
        assert outcome.error == "Tool failed: echo"
        assert outcome.error_type == "RuntimeError"
        data = outcome.to_dict()
        assert data["error"] == "Tool failed: echo"
        assert "is_error" not in data

    @pytest.mark.asyncio
    async def test_unknown_server_is_captured(self, invoker):
        outcome = await invoker.invoke("ghost", "echo")
        assert outcome.error == "Server 'ghost' not found"
        assert outcome.error_type == "NotFoundError"

    @pytest.mark.asyncio
    async def test_connection_failure_is_captured(self, invoker, factory):
        factory.connect_error = RuntimeError("refused")
        outcome = await invoker.invoke("srv", "echo")
        assert outcome.error_type == "ServerConnectionError"
        assert "refused" in outcome.error


class TestListToolNames:
    @pytest.mark.asyncio
    async def test_names_in_listing_order(self, invoker):
        assert await invoker.list_tool_names("srv") == ["echo", "say", "echo"]

    @pytest.mark.asyncio
    async def test_acquire_failure_propagates(self, invoker, factory):
        factory.connect_error = RuntimeError("refused")
        with pytest.raises(ServerConnectionError):
            await invoker.list_tool_names("srv")

    @pytest.mark.asyncio
    async def test_listing_failure_raises_tool_call_error(self, invoker, factory):
        # First acquire connects without a health check, so the listing itself fails
        factory.list_error = RuntimeError("method not found")
        with pytest.raises(ToolCallError) as excinfo:
            await invoker.list_tool_names("srv")
        assert excinfo.value.error_type == "ToolCallError"
        assert "method not found" in str(excinfo.value)
