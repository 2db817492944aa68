import threading

import pytest

from llm_core.domain.exceptions import CancelledError, ModelNotFoundError, RequestTimeoutError, ServerError
from llm_core.domain.models import CompletionRequest, Message
from llm_core.providers.replicate_client import ReplicateAdapter, ReplicateConfig, build_prompt
from llm_core.runtime.retry import RetryConfig, with_retry

MODEL = "meta/meta-llama-3-8b-instruct"


class Resp:
    def __init__(self, data, status_code=200, text=""):
        self._data = data
        self.status_code = status_code
        self.text = text

    def json(self):
        return self._data


def fake_client(polls, calls):
    """post 返回 starting 状态，随后每次 get 依次返回 polls 中的状态。"""

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None, **_):
            calls.append(("POST", url, json))
            return Resp({"id": "p1", "status": "starting"})

        def get(self, url, headers=None, **_):
            calls.append(("GET", url, None))
            return polls.pop(0)

    return Client


def make_adapter(**kw):
    adapter = ReplicateAdapter()
    options = {"poll_interval": 0, **kw}
    adapter.initialize(ReplicateConfig(api_key="r8_token", **options))
    return adapter


def make_request(model=MODEL):
    return CompletionRequest(
        messages=[Message(role="system", content="be brief"), Message(role="user", content="hi")],
        model=model,
        max_tokens=64,
    )


def test_build_prompt():
    prompt = build_prompt(
        [
            Message(role="system", content="sys"),
            Message(role="user", content="hi"),
            Message(role="assistant", content="yo"),
        ]
    )
    assert prompt == "System: sys\n\nHuman: hi\n\nAssistant: yo\n\nAssistant: "


def test_complete_polls_until_succeeded(monkeypatch):
    calls = []
    polls = [
        Resp({"id": "p1", "status": "processing"}),
        Resp({"id": "p1", "status": "succeeded", "output": ["Hel", "lo"]}),
    ]
    monkeypatch.setattr("httpx.Client", fake_client(polls, calls))
    res = make_adapter().complete(make_request())

    assert res.text == "Hello"
    assert res.id == "p1"
    method, url, body = calls[0]
    assert url == f"https://api.replicate.com/v1/models/{MODEL}/predictions"
    assert body["input"]["max_new_tokens"] == 64
    assert body["input"]["prompt"].startswith("System: be brief")
    assert [c[0] for c in calls] == ["POST", "GET", "GET"]


def test_versioned_model_uses_predictions_endpoint(monkeypatch):
    calls = []
    polls = [Resp({"id": "p1", "status": "succeeded", "output": "ok"})]
    monkeypatch.setattr("httpx.Client", fake_client(polls, calls))
    make_adapter().complete(make_request(model=f"{MODEL}:abc123"))

    _, url, body = calls[0]
    assert url == "https://api.replicate.com/v1/predictions"
    assert body["version"] == "abc123"


def test_failed_prediction_is_server_error(monkeypatch):
    polls = [Resp({"id": "p1", "status": "failed", "error": "CUDA out of memory"})]
    monkeypatch.setattr("httpx.Client", fake_client(polls, []))
    with pytest.raises(ServerError) as exc:
        make_adapter().complete(make_request())
    assert "CUDA out of memory" in exc.value.message


def test_poll_timeout_cancels_prediction(monkeypatch):
    calls = []
    polls = [Resp({"id": "p1", "status": "processing"}) for _ in range(100)]
    monkeypatch.setattr("httpx.Client", fake_client(polls, calls))
    with pytest.raises(RequestTimeoutError):
        make_adapter(poll_interval=0.01, poll_timeout=0.03).complete(make_request())
    assert calls[-1][1].endswith("/predictions/p1/cancel")


def test_cancel_event_cancels_prediction(monkeypatch):
    calls = []
    event = threading.Event()

    class CancellingResp(Resp):
        def json(self):
            event.set()
            return self._data

    polls = [CancellingResp({"id": "p1", "status": "processing"})]
    monkeypatch.setattr("httpx.Client", fake_client(polls, calls))
    with pytest.raises(CancelledError):
        make_adapter().complete(make_request(), cancel_event=event)
    assert calls[-1][1].endswith("/predictions/p1/cancel")


def test_stream_is_single_shot(monkeypatch):
    polls = [Resp({"id": "p1", "status": "succeeded", "output": ["a", "b"]})]
    monkeypatch.setattr("httpx.Client", fake_client(polls, []))
    chunks = []
    make_adapter().stream(make_request(), chunks.append)

    assert [c.text for c in chunks] == ["ab", ""]
    assert chunks[-1].is_final


def test_curated_models():
    adapter = make_adapter()
    assert MODEL in {m.id for m in adapter.get_models()}
    adapter.validate_model(f"{MODEL}:v1")
    with pytest.raises(ModelNotFoundError):
        adapter.validate_model("gpt-4o")


def test_failed_poll_is_server_error_and_cancels(monkeypatch):
    calls = []
    polls = [Resp(None, status_code=404, text="prediction not found")]
    monkeypatch.setattr("httpx.Client", fake_client(polls, calls))
    with pytest.raises(ServerError) as exc:
        make_adapter().complete(make_request())
    assert not isinstance(exc.value, ModelNotFoundError)
    assert exc.value.http_status == 404
    assert calls[-1][1].endswith("/predictions/p1/cancel")


def test_poll_gateway_timeout_maps_to_timeout(monkeypatch):
    polls = [Resp(None, status_code=504, text="gateway timeout")]
    monkeypatch.setattr("httpx.Client", fake_client(polls, []))
    with pytest.raises(RequestTimeoutError):
        make_adapter().complete(make_request())


def test_failed_poll_is_retried(monkeypatch):
    calls = []
    polls = [
        Resp(None, status_code=404, text="prediction not found"),
        Resp({"id": "p1", "status": "succeeded", "output": "recovered"}),
    ]
    monkeypatch.setattr("httpx.Client", fake_client(polls, calls))
    monkeypatch.setattr("time.sleep", lambda seconds: None)
    adapter = make_adapter()
    res = with_retry(make_request(), adapter.complete, RetryConfig(max_attempts=3))

    assert res.text == "recovered"
    submissions = [c for c in calls if c[0] == "POST" and c[1].endswith("/predictions")]
    assert len(submissions) == 2
