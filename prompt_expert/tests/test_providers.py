import asyncio
import json

import httpx
import pytest

from prompt_expert.domain.exceptions import ApiError, AuthenticationError, ErrorKind, NetworkError, RateLimitError
from prompt_expert.domain.models import ChatMessage, ChatRequest, Command
from prompt_expert.flows.orchestrator import ConversationOrchestrator, OrchestratorConfig
from prompt_expert.infrastructure.retry import RetryPolicy
from prompt_expert.providers import create_provider
from prompt_expert.providers.anthropic_client import AnthropicClient
from prompt_expert.providers.openai_client import OpenAICompatibleClient
from prompt_expert.providers.registry import get_provider_config
from prompt_expert.tools.definitions import ToolCall, ToolDef, ToolParam, ToolResult
from prompt_expert.tools.dispatcher import ToolDispatcher
from prompt_expert.tools.registry import ToolRegistry


class SettingsStub:
    default_provider = "anthropic"
    anthropic_api_key = "a" * 20
    anthropic_base_url = "https://api.anthropic.test"
    anthropic_version = "2023-06-01"
    openai_api_key = "o" * 20
    openai_base_url = "https://openai.test/v1"
    http_timeout = 1.0


class Resp:
    def __init__(self, status_code, data=None, text=""):
        self.status_code = status_code
        self._data = data or {}
        self.text = text

    def json(self):
        return self._data


def _patch_client(monkeypatch, response):
    sent = {}

    class Client:
        def __init__(self, *a, **kw):
            sent["client_kwargs"] = kw

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        async def post(self, url, json=None, headers=None):
            sent["url"] = url
            sent["json"] = json
            sent["headers"] = headers
            if isinstance(response, Exception):
                raise response
            return response

    monkeypatch.setattr("httpx.AsyncClient", Client)
    return sent


READ_TOOL = ToolDef(
    name="read_file",
    description="Read a file",
    params={"path": ToolParam(name="path", description="file path", required=True, schema={"type": "string"})},
)


def _tool_round_request(provider):
    return ChatRequest(
        provider=provider,
        model="expert-chat",
        system="You are an expert.",
        messages=[
            ChatMessage(role="user", content="review a.md"),
            ChatMessage(
                role="assistant",
                content="Reading",
                tool_calls=[
                    ToolCall(id="c1", name="read_file", arguments={"path": "a.md"}),
                    ToolCall(id="c2", name="read_file", arguments={"path": "b.md"}),
                ],
            ),
            ChatMessage(
                role="tool_result",
                content="",
                tool_results=[
                    ToolResult(call_id="c1", success=True, payload="A body"),
                    ToolResult(
                        call_id="c2",
                        success=False,
                        error_message="File not found: b.md",
                        error_kind=ErrorKind.PERMANENT,
                    ),
                ],
            ),
        ],
        tools=[READ_TOOL],
    )


def test_anthropic_text_and_tool_use(monkeypatch):
    sent = _patch_client(
        monkeypatch,
        Resp(
            200,
            {
                "content": [
                    {"type": "text", "text": "Let me look."},
                    {"type": "tool_use", "id": "tu_1", "name": "read_file", "input": {"path": "c.md"}},
                ],
                "stop_reason": "tool_use",
                "usage": {"input_tokens": 10, "output_tokens": 5},
            },
        ),
    )
    client = AnthropicClient(SettingsStub())
    res = asyncio.run(client.chat(_tool_round_request("anthropic")))

    assert sent["url"] == "https://api.anthropic.test/v1/messages"
    assert sent["headers"]["x-api-key"] == SettingsStub.anthropic_api_key
    assert sent["client_kwargs"]["trust_env"] is False
    payload = sent["json"]
    assert payload["model"] == "claude-sonnet-4-20250514"
    assert payload["max_tokens"] == 8000
    assert payload["system"] == "You are an expert."
    assert payload["tools"][0]["input_schema"]["required"] == ["path"]
    assistant = payload["messages"][1]
    assert [b["type"] for b in assistant["content"]] == ["text", "tool_use", "tool_use"]
    results = payload["messages"][2]
    assert results["role"] == "user"
    assert [b["tool_use_id"] for b in results["content"]] == ["c1", "c2"]
    assert results["content"][0]["content"] == "A body"
    assert "is_error" not in results["content"][0]
    assert results["content"][1]["is_error"] is True
    assert json.loads(results["content"][1]["content"])["error"] == "PERMANENT"

    assert res.text_segments == ["Let me look."]
    msg = res.message
    assert msg.content == "Let me look."
    assert msg.tool_calls[0].id == "tu_1"
    assert msg.tool_calls[0].arguments == {"path": "c.md"}
    assert res.usage.total_tokens == 15


@pytest.mark.parametrize(
    "status,exc",
    [(429, RateLimitError), (401, AuthenticationError), (403, AuthenticationError)],
)
def test_anthropic_error_mapping(monkeypatch, status, exc):
    _patch_client(monkeypatch, Resp(status, text="nope"))
    req = ChatRequest(provider="anthropic", model="expert-chat", messages=[ChatMessage(role="user", content="hi")])
    with pytest.raises(exc):
        asyncio.run(AnthropicClient(SettingsStub()).chat(req))


def test_anthropic_server_error_is_transient(monkeypatch):
    _patch_client(monkeypatch, Resp(529, text="overloaded"))
    req = ChatRequest(provider="anthropic", model="expert-chat", messages=[ChatMessage(role="user", content="hi")])
    with pytest.raises(Exception) as info:
        asyncio.run(AnthropicClient(SettingsStub()).chat(req))
    assert info.value.kind == ErrorKind.TRANSIENT


def test_network_error_is_wrapped(monkeypatch):
    _patch_client(monkeypatch, httpx.ConnectError("connection refused"))
    req = ChatRequest(provider="anthropic", model="expert-chat", messages=[ChatMessage(role="user", content="hi")])
    with pytest.raises(NetworkError):
        asyncio.run(AnthropicClient(SettingsStub()).chat(req))


def test_missing_api_key(monkeypatch):
    class NoKey(SettingsStub):
        anthropic_api_key = None

    sent = _patch_client(monkeypatch, Resp(200))
    req = ChatRequest(provider="anthropic", model="expert-chat", messages=[ChatMessage(role="user", content="hi")])
    with pytest.raises(AuthenticationError) as info:
        asyncio.run(AnthropicClient(NoKey()).chat(req))
    assert info.value.code == "MISSING_API_KEY"
    assert "url" not in sent


def test_openai_expands_tool_results_and_parses_calls(monkeypatch):
    sent = _patch_client(
        monkeypatch,
        Resp(
            200,
            {
                "choices": [
                    {
                        "index": 0,
                        "message": {
                            "role": "assistant",
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call_9",
                                    "type": "function",
                                    "function": {"name": "read_file", "arguments": '{"path": "d.md"}'},
                                }
                            ],
                        },
                        "finish_reason": "tool_calls",
                    }
                ],
                "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
            },
        ),
    )
    res = asyncio.run(OpenAICompatibleClient(SettingsStub()).chat(_tool_round_request("openai")))

    assert sent["url"] == "https://openai.test/v1/chat/completions"
    msgs = sent["json"]["messages"]
    assert [m["role"] for m in msgs] == ["system", "user", "assistant", "tool", "tool"]
    assert [m["tool_call_id"] for m in msgs[3:]] == ["c1", "c2"]
    assert json.loads(msgs[2]["tool_calls"][0]["function"]["arguments"]) == {"path": "a.md"}
    assert sent["json"]["tools"][0]["function"]["name"] == "read_file"

    call = res.message.tool_calls[0]
    assert call.id == "call_9"
    assert call.arguments == {"path": "d.md"}
    assert res.text_segments == []


def test_openai_bad_arguments_kept_raw():
    assert OpenAICompatibleClient._parse_arguments("{not json") == {"_raw": "{not json"}
    assert OpenAICompatibleClient._parse_arguments(None) == {}


def test_create_provider():
    assert isinstance(create_provider(cfg=SettingsStub()), AnthropicClient)
    assert isinstance(create_provider("OpenAI", cfg=SettingsStub()), OpenAICompatibleClient)
    with pytest.raises(KeyError):
        create_provider("kimi", cfg=SettingsStub())
    assert get_provider_config("Anthropic").model("expert-judge").max_tokens == 4000


class HtmlResp(Resp):
    def __init__(self):
        super().__init__(200, text="<html>gateway</html>")

    def json(self):
        return json.loads(self.text)


@pytest.mark.parametrize("client_cls", [AnthropicClient, OpenAICompatibleClient])
def test_non_json_body_becomes_transient_api_error(monkeypatch, client_cls):
    _patch_client(monkeypatch, HtmlResp())
    req = ChatRequest(provider="x", model="expert-chat", messages=[ChatMessage(role="user", content="hi")])
    with pytest.raises(ApiError) as info:
        asyncio.run(client_cls(SettingsStub()).chat(req))
    assert info.value.code == "INVALID_RESPONSE"
    assert info.value.kind == ErrorKind.TRANSIENT


def test_gateway_page_ends_session_with_fatal_status(monkeypatch):
    _patch_client(monkeypatch, HtmlResp())

    async def _no_sleep(_):
        return None

    orch = ConversationOrchestrator(
        AnthropicClient(SettingsStub()),
        ToolDispatcher(ToolRegistry([])),
        OrchestratorConfig(provider="anthropic", model_retry=RetryPolicy(max_attempts=2)),
        system_prompt="system",
        sleep=_no_sleep,
    )
    result = asyncio.run(orch.run(Command(expert_id="programming", instruction_text="review")))
    assert result.status == "fatal_error"
    assert "INVALID_RESPONSE" in result.error
