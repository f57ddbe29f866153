"""Contract tests for the Ollama streaming adapter."""

import json

import httpx
import pytest

from chatter.models.message import Message
from chatter.models.stream_chunk import ChunkKind
from chatter.models.tool_call import ToolCall, ToolResult
from chatter.services.ollama_adapter import OllamaAdapter


TOOLS = [{"name": "read_file", "description": "Read a file", "parameters": {"type": "object"}}]


def ndjson(*objects):
    return "".join(json.dumps(obj) + "\n" for obj in objects)


def make_adapter(handler, supports_function_calling=True, model="llama3.1"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaAdapter(
        model=model,
        endpoint="http://ollama.test:11434",
        supports_function_calling=supports_function_calling,
        client=client
    )


async def collect(adapter, messages=None, system_instruction=None, tools=None):
    messages = messages or [Message.user("Hi")]
    return [chunk async for chunk in adapter.start_turn(messages, system_instruction, tools)]


class TestOllamaRequest:
    """The request follows the /api/chat contract."""

    @pytest.mark.asyncio
    async def test_chat_request_body(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, text=ndjson({"message": {"content": "ok"}, "done": True}))

        await collect(make_adapter(handler), system_instruction="Be brief", tools=TOOLS)

        assert seen["url"] == "http://ollama.test:11434/api/chat"
        assert seen["body"]["model"] == "llama3.1"
        assert seen["body"]["stream"] is True
        assert seen["body"]["messages"][0] == {"role": "system", "content": "Be brief"}
        assert seen["body"]["tools"] == [{"type": "function", "function": TOOLS[0]}]

    @pytest.mark.asyncio
    async def test_tools_dropped_without_function_calling(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, text=ndjson({"message": {"content": "ok"}, "done": True}))

        await collect(make_adapter(handler, supports_function_calling=False), tools=TOOLS)

        assert "tools" not in seen["body"]

    def test_endpoint_without_scheme(self):
        adapter = OllamaAdapter(model="llama3.1", endpoint="gpu-box:11434")

        assert adapter.endpoint == "http://gpu-box:11434"

    def test_tool_message_conversion(self):
        call = ToolCall(name="read_file", arguments={"path": "a.txt"}, call_id="call_7")
        messages = [
            Message.user("Read a.txt"),
            Message.assistant("", [call]),
            Message.from_tool_result(ToolResult.failure(call, "Path does not exist")),
            Message.system("local diagnostic"),
        ]

        converted = OllamaAdapter.to_messages(messages)

        assert [entry["role"] for entry in converted] == ["user", "assistant", "tool"]
        assert converted[1]["tool_calls"] == [
            {"type": "function", "id": "call_7", "function": {"name": "read_file", "arguments": {"path": "a.txt"}}}
        ]
        assert converted[2]["tool_name"] == "read_file"
        assert converted[2]["tool_call_id"] == "call_7"
        assert converted[2]["content"] == "Path does not exist"


class TestOllamaStream:
    """NDJSON parsing into chunks."""

    @pytest.mark.asyncio
    async def test_text_deltas_then_end(self):
        body = ndjson(
            {"message": {"role": "assistant", "content": "Hel"}, "done": False},
            {"message": {"role": "assistant", "content": "lo"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True, "done_reason": "stop"}
        )
        adapter = make_adapter(lambda request: httpx.Response(200, text=body))

        chunks = await collect(adapter)

        assert [chunk.kind for chunk in chunks] == [ChunkKind.TEXT, ChunkKind.TEXT, ChunkKind.END]
        assert chunks[0].text + chunks[1].text == "Hello"

    @pytest.mark.asyncio
    async def test_tool_calls_with_object_and_string_arguments(self):
        body = ndjson(
            {"message": {"role": "assistant", "content": "", "tool_calls": [
                {"function": {"name": "search_files", "arguments": {"pattern": "TODO"}}},
                {"function": {"name": "read_file", "arguments": "{\"path\": \"main.py\"}"}}
            ]}, "done": False},
            {"message": {"content": ""}, "done": True}
        )
        adapter = make_adapter(lambda request: httpx.Response(200, text=body))

        chunks = await collect(adapter, tools=TOOLS)

        assert chunks[0].kind == ChunkKind.TOOL_CALL
        calls = chunks[0].tool_calls
        assert [call.name for call in calls] == ["search_files", "read_file"]
        assert calls[1].arguments == {"path": "main.py"}
        assert calls[0].call_id != calls[1].call_id

    @pytest.mark.asyncio
    async def test_malformed_arguments_are_carried_on_the_call(self):
        body = ndjson(
            {"message": {"tool_calls": [{"function": {"name": "read_file", "arguments": "[1, 2]"}}]}, "done": True}
        )
        adapter = make_adapter(lambda request: httpx.Response(200, text=body))

        chunks = await collect(adapter, tools=TOOLS)

        call = chunks[0].tool_calls[0]
        assert call.arguments == {}
        assert "JSON object" in call.argument_error
        assert chunks[-1].kind == ChunkKind.END

    @pytest.mark.asyncio
    async def test_error_line(self):
        body = ndjson({"error": "model 'missing' not found"})
        adapter = make_adapter(lambda request: httpx.Response(200, text=body))

        chunks = await collect(adapter)

        assert [chunk.kind for chunk in chunks] == [ChunkKind.ERROR]
        assert "not found" in chunks[0].error

    @pytest.mark.asyncio
    async def test_stream_without_done_still_ends(self):
        body = ndjson({"message": {"content": "partial"}, "done": False})
        adapter = make_adapter(lambda request: httpx.Response(200, text=body))

        chunks = await collect(adapter)

        assert [chunk.kind for chunk in chunks] == [ChunkKind.TEXT, ChunkKind.END]

    @pytest.mark.asyncio
    async def test_error_status(self):
        adapter = make_adapter(lambda request: httpx.Response(404, json={"error": "model not found"}))

        chunks = await collect(adapter)

        assert chunks == [chunks[0]]
        assert chunks[0].error == "Request failed: 404 - model not found"

    @pytest.mark.asyncio
    async def test_server_not_running(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        chunks = await collect(make_adapter(handler))

        assert chunks[0].kind == ChunkKind.ERROR
        assert "Connection failed" in chunks[0].error


class TestOllamaCapabilities:
    """Function calling support is discovered from /api/show."""

    @pytest.mark.asyncio
    async def test_tools_capability_detected(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"capabilities": ["completion", "tools"]})

        adapter = make_adapter(handler, supports_function_calling=None)

        assert adapter.supports_function_calling is False
        assert await adapter.refresh_capabilities() is True
        assert adapter.supports_function_calling is True
        assert seen["url"] == "http://ollama.test:11434/api/show"
        assert seen["body"] == {"model": "llama3.1"}

    @pytest.mark.asyncio
    async def test_model_without_tools(self):
        adapter = make_adapter(
            lambda request: httpx.Response(200, json={"capabilities": ["completion"]}),
            supports_function_calling=None
        )

        assert await adapter.refresh_capabilities() is False

    @pytest.mark.asyncio
    async def test_forced_setting_skips_query(self):
        def handler(request):
            raise AssertionError("capabilities should not be queried")

        adapter = make_adapter(handler, supports_function_calling=False)

        assert await adapter.refresh_capabilities() is False

    @pytest.mark.asyncio
    async def test_model_switch_resets_detected_capability(self):
        adapter = make_adapter(
            lambda request: httpx.Response(200, json={"capabilities": ["tools"]}),
            supports_function_calling=None
        )
        await adapter.refresh_capabilities()

        adapter.set_model("other-model")

        assert adapter.supports_function_calling is False

    @pytest.mark.asyncio
    async def test_health_check_reports_missing_model(self):
        adapter = make_adapter(
            lambda request: httpx.Response(200, json={"models": [{"name": "mistral:latest"}]})
        )

        health = await adapter.health_check()

        assert health["status"] == "degraded"
        assert "ollama pull llama3.1" in health["error"]
