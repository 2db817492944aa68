import json

import httpx
import pytest

from llm_core.domain.exceptions import (
    AuthenticationError,
    InvalidConfigError,
    ModelNotFoundError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
)
from llm_core.domain.models import CompletionRequest, Message
from llm_core.providers.openai_client import KIMI_PRESET, OpenAIAdapter, OpenAIConfig
from llm_core.tools.definitions import ToolDef, ToolParam


def make_adapter():
    adapter = OpenAIAdapter(KIMI_PRESET)
    adapter.initialize(OpenAIConfig(provider="kimi", api_key="k", timeout=1.0))
    return adapter


def make_request(**kw):
    return CompletionRequest(messages=[Message(role="user", content="hi")], model="kimi-k2-turbo-preview", **kw)


class Resp:
    def __init__(self, data=None, status_code=200, text="", headers=None):
        self._data = data or {}
        self.status_code = status_code
        self.text = text
        self.headers = headers or {}

    def json(self):
        return self._data


def fake_client(captured=None, response=None, lines=None, error=None):
    captured = captured if captured is not None else {}

    class FakeStreamResponse:
        status_code = 200
        text = ""
        headers = {}

        def read(self):
            return b""

        def iter_lines(self):
            for line in lines or []:
                yield line

    class StreamContext:
        def __enter__(self):
            return response or FakeStreamResponse()

        def __exit__(self, *args):
            return False

    class Client:
        def __init__(self, *a, **kw):
            captured["client_kwargs"] = kw

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None, **_):
            if error is not None:
                raise error
            captured.update(url=url, payload=json, headers=headers)
            return response

        def get(self, url, headers=None, **_):
            captured.update(url=url, headers=headers)
            return response

        def stream(self, method, url, json=None, headers=None, **_):
            captured.update(url=url, payload=json)
            return StreamContext()

    return Client


def test_complete_parses_basic_response(monkeypatch):
    captured = {}
    resp = Resp(
        {
            "id": "chatcmpl-1",
            "choices": [{"message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
        }
    )
    monkeypatch.setattr("httpx.Client", fake_client(captured, resp))
    res = make_adapter().complete(make_request())

    assert res.text == "ok"
    assert res.provider == "kimi"
    assert res.usage.total_tokens == 2
    assert captured["url"] == "https://api.moonshot.cn/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer k"
    assert captured["client_kwargs"]["trust_env"] is False


def test_payload_omits_unset_sampling_params(monkeypatch):
    captured = {}
    resp = Resp({"choices": [{"message": {"content": "ok"}}]})
    monkeypatch.setattr("httpx.Client", fake_client(captured, resp))
    make_adapter().complete(make_request(temperature=0.2, stop=["END"]))

    payload = captured["payload"]
    assert payload["temperature"] == 0.2
    assert payload["stop"] == ["END"]
    assert payload["stream"] is False
    assert "max_tokens" not in payload
    assert "top_p" not in payload


def test_tools_payload(monkeypatch):
    captured = {}
    tool = ToolDef(
        name="read_file",
        description="read file",
        params={"path": ToolParam(name="path", description="Path", required=True, schema={"type": "string"})},
    )
    resp = Resp({"choices": [{"message": {"content": "ok"}}]})
    monkeypatch.setattr("httpx.Client", fake_client(captured, resp))
    make_adapter().complete(make_request(tools=[tool], tool_choice="required"))

    payload = captured["payload"]
    assert payload["tool_choice"] == "required"
    assert payload["tools"][0]["function"]["name"] == "read_file"
    assert payload["tools"][0]["function"]["parameters"]["required"] == ["path"]


def test_parse_tool_calls(monkeypatch):
    resp = Resp(
        {
            "choices": [
                {
                    "message": {
                        "role": "assistant",
                        "content": "",
                        "tool_calls": [
                            {"id": "tool123", "function": {"name": "search_code", "arguments": '{"query": "todo"}'}}
                        ],
                    },
                    "finish_reason": "tool_calls",
                }
            ]
        }
    )
    monkeypatch.setattr("httpx.Client", fake_client(response=resp))
    res = make_adapter().complete(make_request())

    call = res.message.tool_calls[0]
    assert call.name == "search_code"
    assert call.arguments["query"] == "todo"
    assert res.finish_reason == "tool_calls"


def test_stream_delivers_deltas_and_one_final(monkeypatch):
    lines = [
        'data: {"id": "s1", "choices": [{"index": 0, "delta": {"content": "hel"}}]}',
        'data: {"id": "s1", "choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]}',
        'data: {"id": "s1", "choices": [], "usage": {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3}}',
        "data: [DONE]",
    ]
    captured = {}
    monkeypatch.setattr("httpx.Client", fake_client(captured, lines=lines))
    chunks = []
    make_adapter().stream(make_request(), chunks.append)

    assert [c.text for c in chunks] == ["hel", "lo", ""]
    assert chunks[-1].finish_reason == "stop"
    assert chunks[-1].usage.total_tokens == 3
    assert all(c.id == "s1" for c in chunks)
    assert captured["payload"]["stream"] is True


def test_stream_assembles_tool_call_fragments(monkeypatch):
    lines = [
        'data: {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "grep", "arguments": "{\\"q\\": "}}]}}]}',
        'data: {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "\\"x\\"}"}}]}, "finish_reason": "tool_calls"}]}',
    ]
    monkeypatch.setattr("httpx.Client", fake_client(lines=lines))
    chunks = []
    make_adapter().stream(make_request(), chunks.append)

    # 工具调用只随终止 chunk 上报，不产生空文本增量
    assert len(chunks) == 1
    assert chunks[0].is_final
    call = chunks[0].delta.tool_calls[0]
    assert call.name == "grep"
    assert call.arguments == {"q": "x"}
    assert chunks[0].finish_reason == "tool_calls"


def test_stream_text_matches_complete(monkeypatch):
    pieces = ["The ", "answer ", "is 42."]
    body = {
        "id": "r1",
        "choices": [{"message": {"role": "assistant", "content": "".join(pieces)}, "finish_reason": "stop"}],
    }
    monkeypatch.setattr("httpx.Client", fake_client(response=Resp(body)))
    completed = make_adapter().complete(make_request(temperature=0.0, seed=7))

    lines = [
        "data: " + json.dumps({"id": "r1", "choices": [{"index": 0, "delta": {"content": piece}}]})
        for piece in pieces
    ]
    lines.append('data: {"id": "r1", "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]}')
    lines.append("data: [DONE]")
    monkeypatch.setattr("httpx.Client", fake_client(lines=lines))
    chunks = []
    make_adapter().stream(make_request(temperature=0.0, seed=7), chunks.append)

    assert "".join(c.text for c in chunks if not c.is_final) == completed.text
    assert chunks[-1].finish_reason == completed.finish_reason
    assert sum(c.is_final for c in chunks) == 1


def test_http_errors_are_translated(monkeypatch):
    resp = Resp(status_code=429, text="slow down", headers={"retry-after": "2"})
    monkeypatch.setattr("httpx.Client", fake_client(response=resp))
    with pytest.raises(RateLimitError) as exc:
        make_adapter().complete(make_request())
    assert exc.value.retry_after == 2.0

    monkeypatch.setattr("httpx.Client", fake_client(response=Resp(status_code=401, text="bad key")))
    with pytest.raises(AuthenticationError):
        make_adapter().complete(make_request())


def test_transport_errors_are_translated(monkeypatch):
    monkeypatch.setattr("httpx.Client", fake_client(error=httpx.ReadTimeout("slow")))
    with pytest.raises(RequestTimeoutError):
        make_adapter().complete(make_request())

    monkeypatch.setattr("httpx.Client", fake_client(error=httpx.ConnectError("refused")))
    with pytest.raises(NetworkError):
        make_adapter().complete(make_request())


def test_get_models_extends_known_models(monkeypatch):
    resp = Resp({"data": [{"id": "moonshot-v1-128k"}, {"id": "kimi-k2-turbo-preview"}]})
    monkeypatch.setattr("httpx.Client", fake_client(response=resp))
    adapter = make_adapter()
    models = adapter.get_models()

    assert [m.id for m in models] == ["moonshot-v1-128k", "kimi-k2-turbo-preview"]
    assert models[1].max_tokens == 131072
    adapter.validate_model("moonshot-v1-128k")
    with pytest.raises(ModelNotFoundError):
        adapter.validate_model("gpt-4o")


def test_requires_initialize():
    adapter = OpenAIAdapter(KIMI_PRESET)
    with pytest.raises(InvalidConfigError):
        adapter.complete(make_request())
    with pytest.raises(InvalidConfigError):
        adapter.initialize(OpenAIConfig(provider="kimi", api_key=""))
