import json

import pytest

from llm_core.domain.conversation import Conversation
from llm_core.domain.exceptions import InvalidRequestError
from llm_core.infrastructure.resources import ResourceLoader, manage_resources

HTML = """
<html><head><title>t</title><style>body {color: red}</style></head>
<body><h1>Docs</h1>
<script>var x = 1;</script>
<p>Hello   world</p></body></html>
"""


def fake_client(html, status_code=200):
    class Resp:
        def __init__(self):
            self.status_code = status_code
            self.text = html

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def get(self, url, **kw):
            return Resp()

    return Client


def test_load_file_wraps_json(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("line one\nline two", encoding="utf-8")
    data = json.loads(ResourceLoader().load_file(str(path)))
    assert data == {"path": str(path), "contents": "line one\nline two"}


def test_load_file_missing():
    with pytest.raises(InvalidRequestError):
        ResourceLoader().load_file("/definitely/not/here.txt")


def test_load_url_extracts_body_text(monkeypatch):
    monkeypatch.setattr("httpx.Client", fake_client(HTML))
    assert ResourceLoader().load_url("https://example.com/docs") == "Docs Hello world"


def test_load_url_rejects_invalid():
    with pytest.raises(InvalidRequestError):
        ResourceLoader().load_url("not a url")


def test_content_is_truncated(monkeypatch):
    monkeypatch.setattr("httpx.Client", fake_client("<body>" + "x" * 50 + "</body>"))
    text = ResourceLoader(max_content_chars=10).load_url("https://example.com")
    assert text.startswith("x" * 10)
    assert "x" * 11 not in text


def test_manage_resources_injects_and_strips(tmp_path, monkeypatch):
    monkeypatch.setattr("httpx.Client", fake_client(HTML))
    path = tmp_path / "a.txt"
    path.write_text("alpha", encoding="utf-8")
    conv = Conversation(resources_enabled=True)

    clean, found = manage_resources(
        conv,
        f"summarize -file:{path} and -url:https://example.com/docs please",
        ResourceLoader(),
    )

    assert clean == "summarize and please"
    assert found == [f"file:{path}", "url:https://example.com/docs"]
    refs = conv.get_messages()
    assert len(refs) == 2
    assert refs[0].content.startswith(f"Reference {path}:\n")


def test_manage_resources_without_commands():
    conv = Conversation(resources_enabled=True)
    assert manage_resources(conv, "just a question", ResourceLoader()) == ("just a question", [])
    assert len(conv) == 0
