import json

import httpx
import pytest

from llm_relay.domain.exceptions import InvalidRequest, VendorFault
from llm_relay.domain.models import Attachment, ChatMessage, ChatOptions, ChatRequest
from llm_relay.providers.ollama_client import OllamaClient


class SettingsStub:
    ollama_base_url = "http://ollama.test:11434/"
    http_timeout = 5.0
    models_cache_ttl = 0.0


def make_client(handler):
    return OllamaClient(SettingsStub(), transport=httpx.MockTransport(handler))


def make_request(**options):
    return ChatRequest(
        messages=[ChatMessage(role="user", content="hi", attachments=[Attachment(data="aGk=", mime_type="image/png")])],
        model="llama3",
        options=ChatOptions(**options),
    )


def test_send_maps_options():
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "llama3",
                "message": {"role": "assistant", "content": "hello"},
                "done": True,
                "done_reason": "stop",
                "prompt_eval_count": 5,
                "eval_count": 3,
            },
        )

    res = make_client(handler).send(make_request(max_tokens=50, temperature=0.3, stop=["\n\n"]))
    assert res.text == "hello"
    assert res.usage.total_tokens == 8
    assert captured["url"] == "http://ollama.test:11434/api/chat"
    body = captured["body"]
    assert body["options"] == {"temperature": 0.3, "num_predict": 50, "stop": ["\n\n"]}
    assert body["messages"][0]["images"] == ["aGk="]
    assert body["stream"] is False


def test_stream_ndjson():
    lines = [
        {"message": {"content": "Hel"}, "done": False},
        {"message": {"content": "lo"}, "done": False},
        {"message": {"content": ""}, "done": True, "done_reason": "length", "prompt_eval_count": 2, "eval_count": 2},
    ]

    def handler(request):
        return httpx.Response(200, content="\n".join(json.dumps(x) for x in lines).encode())

    deltas = list(make_client(handler).send_stream(make_request(stream=True)))
    assert [d.text for d in deltas] == ["Hel", "lo", ""]
    assert deltas[-1].is_final
    assert deltas[-1].finish_reason == "length"


def test_stream_error_line():
    def handler(request):
        return httpx.Response(200, content=b'{"message": {"content": "a"}, "done": false}\n{"error": "model crashed"}\n')

    with pytest.raises(VendorFault) as exc:
        list(make_client(handler).send_stream(make_request(stream=True)))
    assert exc.value.message == "model crashed"


def test_unknown_model_is_invalid_request():
    def handler(request):
        return httpx.Response(404, json={"error": "model 'llama3' not found"})

    with pytest.raises(InvalidRequest) as exc:
        make_client(handler).send(make_request())
    assert "not found" in exc.value.message


def test_get_models_from_tags():
    def handler(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "mistral:latest"}, {"name": "llama3:8b"}]})

    assert make_client(handler).get_models() == ["llama3:8b", "mistral:latest"]
