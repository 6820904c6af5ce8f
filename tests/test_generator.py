import io
import json

import pytest
import requests
from requests.utils import get_encoding_from_headers

from asknotes.errors import GenerationFailure
from asknotes.generator import GenerationClient

MESSAGES = [{"role": "system", "content": "s"}, {"role": "user", "content": "u"}]


class FakeResponse:
    def __init__(self, status=200, body=None, lines=()):
        self.status_code = status
        self._body = body
        self._lines = list(lines)
        self.text = json.dumps(body) if body is not None else ""
        self.closed = False

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body

    def iter_lines(self, decode_unicode=False):
        for line in self._lines:
            yield line.encode("utf-8")

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts = []

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def _client(session, key="sk-test"):
    return GenerationClient(url="http://llm/v1/chat", key=key, model="m", timeout=5, temperature=0.0, session=session)


def test_invoke_openai_shape():
    s = FakeSession(FakeResponse(body={"choices": [{"message": {"content": "  hello  "}}]}))
    assert _client(s).invoke(MESSAGES) == "hello"
    url, kw = s.posts[0]
    assert url == "http://llm/v1/chat"
    assert kw["json"]["messages"] == MESSAGES
    assert kw["json"]["stream"] is False
    assert kw["headers"]["Authorization"] == "Bearer sk-test"


def test_invoke_genapi_shape():
    s = FakeSession(FakeResponse(body={"response": [{"message": {"content": "hi"}}]}))
    assert _client(s).invoke(MESSAGES) == "hi"


def test_missing_key_fails_without_request(monkeypatch):
    from asknotes import generator
    monkeypatch.setattr(generator.settings, "llm_key", None)
    s = FakeSession(FakeResponse(body={}))
    with pytest.raises(GenerationFailure):
        GenerationClient(url="http://llm", key="", session=s).invoke(MESSAGES)
    assert s.posts == []


def test_http_error_is_generation_failure():
    resp = FakeResponse(status=503, body={"error": "busy"})
    with pytest.raises(GenerationFailure):
        _client(FakeSession(resp)).invoke(MESSAGES)
    assert resp.closed


def test_network_error_is_generation_failure():
    s = FakeSession(error=requests.ConnectionError("refused"))
    with pytest.raises(GenerationFailure):
        _client(s).invoke(MESSAGES)
    assert len(s.posts) == 1  # без повторов


def test_unexpected_body():
    with pytest.raises(GenerationFailure):
        _client(FakeSession(FakeResponse(body={"foo": 1}))).invoke(MESSAGES)


def _sse(delta):
    return "data: " + json.dumps({"choices": [{"delta": {"content": delta}}]})


def test_stream_yields_deltas_then_final():
    lines = [": keep-alive", "", _sse("The "), _sse("cat "), "", _sse("sat."), "data: [DONE]", _sse("ignored")]
    s = FakeSession(FakeResponse(lines=lines))
    pieces = list(_client(s).stream(MESSAGES))
    assert [p.delta for p in pieces[:-1]] == ["The ", "cat ", "sat."]
    assert pieces[-1].done and pieces[-1].text == "The cat sat."
    assert s.posts[0][1]["stream"] is True


def test_stream_malformed_event():
    s = FakeSession(FakeResponse(lines=["data: {not json"]))
    with pytest.raises(GenerationFailure):
        list(_client(s).stream(MESSAGES))


def _sse_response(deltas, content_type="text/event-stream"):
    body = "".join(
        "data: " + json.dumps({"choices": [{"delta": {"content": d}}]}, ensure_ascii=False) + "\n\n"
        for d in deltas
    ) + "data: [DONE]\n\n"
    resp = requests.models.Response()
    resp.status_code = 200
    if content_type:
        resp.headers["Content-Type"] = content_type
    # так же, как это делает HTTPAdapter: text/* без charset -> ISO-8859-1
    resp.encoding = get_encoding_from_headers(resp.headers)
    resp.raw = io.BytesIO(body.encode("utf-8"))
    return resp


@pytest.mark.parametrize("content_type", ["text/event-stream", None])
def test_stream_keeps_utf8_deltas(content_type):
    deltas = ["café – ß", " Not found in your notes for [Биология]"]
    s = FakeSession(_sse_response(deltas, content_type))
    pieces = list(_client(s).stream(MESSAGES))
    assert [p.delta for p in pieces[:-1]] == deltas
    assert pieces[-1].text == "".join(deltas)


def test_streamed_refusal_with_non_ascii_subject():
    from asknotes.interpreter import NotFound, interpret_streamed_answer
    from asknotes.prompt import refusal_sentinel

    s = FakeSession(_sse_response(["Not found in your notes ", "for [Биология]"]))
    final = list(_client(s).stream(MESSAGES))[-1]
    assert final.text == refusal_sentinel("Биология")
    assert isinstance(interpret_streamed_answer(final.text, "Биология", []), NotFound)
