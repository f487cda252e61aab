import json
import logging

import httpx
import pytest

from llm_relay.domain.exceptions import AuthError, InvalidRequest, RateLimited, VendorFault
from llm_relay.infrastructure.logging.logger import JsonFormatter
from llm_relay.providers.http import (
    ModelCache,
    classify_error_payload,
    extract_error_message,
    iter_json_lines,
    iter_sse,
    parse_retry_after,
)


def test_iter_sse_groups_events():
    lines = [
        ": keep-alive",
        "event: message_start",
        'data: {"a": 1}',
        "",
        "data: line one",
        "data: line two",
        "",
        "data: [DONE]",
    ]
    events = list(iter_sse(lines))
    assert [e.event for e in events] == ["message_start", "message", "message"]
    assert events[0].data == '{"a": 1}'
    assert events[1].data == "line one\nline two"
    assert events[2].data == "[DONE]"


def test_iter_json_lines_skips_malformed():
    lines = ['{"a": 1}', "", "not json", "[1, 2]", '{"b": 2}']
    assert list(iter_json_lines("ollama", lines)) == [{"a": 1}, {"b": 2}]


@pytest.mark.parametrize(
    "headers, expected",
    [
        ({"retry-after": "7"}, 7.0),
        ({"retry-after-ms": "1500", "retry-after": "9"}, 1.5),
        ({"retry-after": "-3"}, 0.0),
        ({}, None),
        ({"retry-after": "soon"}, None),
    ],
)
def test_parse_retry_after(headers, expected):
    assert parse_retry_after(httpx.Headers(headers)) == expected


def test_parse_retry_after_http_date():
    assert parse_retry_after(httpx.Headers({"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"})) == 0.0


@pytest.mark.parametrize(
    "payload, cls",
    [
        ({"error": {"type": "rate_limit_error", "message": "slow"}}, RateLimited),
        ({"error": {"type": "overloaded_error", "message": "busy"}}, RateLimited),
        ({"error": {"code": "invalid_api_key", "message": "bad"}}, AuthError),
        ({"error": {"type": "invalid_request_error", "message": "bad"}}, InvalidRequest),
        ({"error": {"type": "server_error", "message": "oops"}}, VendorFault),
        ({"error": "plain text"}, VendorFault),
    ],
)
def test_classify_error_payload(payload, cls):
    err = classify_error_payload("v", payload)
    assert isinstance(err, cls)
    assert err.vendor == "v"


def test_extract_error_message_shapes():
    assert extract_error_message({"error": {"message": "m"}}) == "m"
    assert extract_error_message({"error": "e"}) == "e"
    assert extract_error_message({"detail": "d"}) == "d"
    assert extract_error_message(None, fallback="  raw body ") == "raw body"


def test_model_cache_reuses_until_invalidated():
    cache = ModelCache(ttl=60.0)
    calls = []

    def loader():
        calls.append(1)
        return ["b", "a"]

    assert cache.get_or_load(loader) == ["b", "a"]
    assert cache.get_or_load(loader) == ["b", "a"]
    cache.invalidate()
    cache.get_or_load(loader)
    assert len(calls) == 2


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("llm_relay", logging.WARNING, __file__, 1, "Vendor call failed", None, None)
    record.extra = {"vendor": "openai", "attempt": 2}
    data = json.loads(JsonFormatter().format(record))
    assert data["msg"] == "Vendor call failed"
    assert data["level"] == "WARNING"
    assert data["vendor"] == "openai"
    assert data["attempt"] == 2
    assert data["ts"].endswith("Z")


def test_json_formatter_redacts_long_messages():
    record = logging.LogRecord("llm_relay", logging.INFO, __file__, 1, "x" * 200, None, None)
    data = json.loads(JsonFormatter(redact=True).format(record))
    assert len(data["msg"]) == 64
