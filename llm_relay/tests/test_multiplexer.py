import threading
import time

import pytest

from llm_relay.dispatch.retry import RetryPolicy
from llm_relay.domain.cancellation import CancelToken
from llm_relay.domain.exceptions import AuthError, Canceled, InvalidRequest, RateLimited, VendorFault
from llm_relay.domain.models import ChatStreamDelta, ChatUsage
from llm_relay.streaming.multiplexer import ChatStream

NO_WAIT = RetryPolicy(default_backoff=0.0, fault_backoff=0.0)


class FakeConnection:
    """模拟底层连接：记录是否被关闭。"""

    def __init__(self):
        self.closed = threading.Event()

    def close(self):
        self.closed.set()


def source_from(deltas):
    def open_source(token):
        for d in deltas:
            yield d

    return open_source


def stalled_source(conn, first=("first",)):
    def open_source(token):
        token.on_cancel(conn.close)
        for text in first:
            yield ChatStreamDelta(text=text)
        # 厂商不再发送数据，直到连接被关闭
        conn.closed.wait(5)
        raise VendorFault(message="connection closed")

    return open_source


def make_stream(source, **kwargs):
    kwargs.setdefault("poll_interval", 0.01)
    return ChatStream(source, vendor="fake", model="m", **kwargs)


def test_synthesizes_single_final_delta():
    stream = make_stream(source_from([ChatStreamDelta(text="Hel"), ChatStreamDelta(text="lo")]))
    out = list(stream)
    finals = [d for d in out if d.is_final]
    assert len(finals) == 1
    assert finals[0].finish_reason == "stop"
    assert out[-1].is_final
    assert "".join(d.text for d in out if not d.is_final) == "Hello"
    assert stream.text == "Hello"
    assert stream.finish_reason == "stop"


def test_vendor_final_is_passed_through_once():
    usage = ChatUsage(prompt_tokens=1, completion_tokens=2, total_tokens=3)
    stream = make_stream(
        source_from(
            [
                ChatStreamDelta(text="a"),
                ChatStreamDelta(text=""),
                ChatStreamDelta.final("length", usage),
                ChatStreamDelta(text="ignored"),
                ChatStreamDelta.final("stop"),
            ]
        )
    )
    out = list(stream)
    assert [d.text for d in out] == ["a", ""]
    assert out[-1].finish_reason == "length"
    assert stream.usage == usage


def test_mid_stream_error_keeps_partial_output():
    def open_source(token):
        yield ChatStreamDelta(text="par")
        yield ChatStreamDelta(text="tial")
        raise VendorFault(message="connection reset")

    stream = make_stream(open_source)
    received = []
    with pytest.raises(VendorFault) as exc:
        for d in stream:
            received.append(d)
    assert [d.text for d in received] == ["par", "tial"]
    assert not any(d.is_final for d in received)
    assert exc.value.partial_text == "partial"
    assert stream.finish_reason == "error"
    assert stream.error is exc.value


def test_unexpected_exception_becomes_vendor_fault():
    def open_source(token):
        yield ChatStreamDelta(text="x")
        raise KeyError("choices")

    with pytest.raises(VendorFault):
        list(make_stream(open_source))


def test_cancel_after_first_delta_closes_connection():
    conn = FakeConnection()
    caller = CancelToken()
    stream = make_stream(stalled_source(conn), cancel=caller)
    it = iter(stream)
    assert next(it).text == "first"

    start = time.monotonic()
    caller.cancel()
    with pytest.raises(Canceled) as exc:
        next(it)
    assert time.monotonic() - start < 1.0
    assert conn.closed.is_set()
    assert exc.value.partial_text == "first"
    assert stream.join(timeout=2.0)


def test_stream_cancel_method_does_not_cancel_caller_token():
    conn = FakeConnection()
    caller = CancelToken()
    stream = make_stream(stalled_source(conn), cancel=caller)
    it = iter(stream)
    next(it)
    stream.cancel()
    with pytest.raises(Canceled):
        next(it)
    assert conn.closed.is_set()
    assert not caller.cancelled


def test_consumer_leaving_early_releases_transport():
    conn = FakeConnection()
    stream = make_stream(stalled_source(conn, first=("a", "b")))
    it = iter(stream)
    next(it)
    it.close()
    assert conn.closed.wait(1.0)
    assert stream.join(timeout=2.0)


def test_context_manager_closes():
    conn = FakeConnection()
    with make_stream(stalled_source(conn)) as stream:
        it = iter(stream)
        next(it)
    assert conn.closed.wait(1.0)


def test_bounded_buffer_applies_backpressure():
    produced = []

    def open_source(token):
        for i in range(100):
            produced.append(i)
            yield ChatStreamDelta(text=str(i))

    stream = make_stream(open_source, buffer_size=2)
    it = iter(stream)
    next(it)
    time.sleep(0.2)
    # 已消费 1 个 + 队列 2 个 + pump 手里阻塞的 1 个
    assert len(produced) <= 5
    it.close()


def test_idle_timeout_is_vendor_fault():
    conn = FakeConnection()
    stream = make_stream(stalled_source(conn), idle_timeout=0.1)
    it = iter(stream)
    next(it)
    with pytest.raises(VendorFault) as exc:
        next(it)
    assert exc.value.timeout is True
    assert conn.closed.is_set()


def test_retries_before_first_delta():
    attempts = []

    def open_source(token):
        attempts.append(1)
        if len(attempts) < 3:
            raise RateLimited(message="slow down", retry_after=0)
        yield ChatStreamDelta(text="ok")

    stream = make_stream(open_source, retry=NO_WAIT)
    assert stream.collect().text == "ok"
    assert len(attempts) == 3


def test_no_retry_after_first_delta():
    attempts = []

    def open_source(token):
        attempts.append(1)
        yield ChatStreamDelta(text="a")
        raise RateLimited(message="slow down", retry_after=0)

    stream = make_stream(open_source, retry=NO_WAIT)
    with pytest.raises(RateLimited) as exc:
        list(stream)
    assert len(attempts) == 1
    assert exc.value.partial_text == "a"


def test_auth_error_is_not_retried():
    attempts = []

    def open_source(token):
        attempts.append(1)
        raise AuthError(message="bad key")
        yield  # pragma: no cover

    with pytest.raises(AuthError):
        list(make_stream(open_source, retry=NO_WAIT))
    assert len(attempts) == 1


def test_stream_can_only_be_consumed_once():
    stream = make_stream(source_from([ChatStreamDelta(text="x")]))
    list(stream)
    with pytest.raises(RuntimeError):
        iter(stream)


def test_error_final_from_vendor_is_raised_not_yielded():
    stream = make_stream(source_from([ChatStreamDelta(text="a"), ChatStreamDelta.final("error")]))
    received = []
    with pytest.raises(InvalidRequest) as exc:
        for d in stream:
            received.append(d)
    assert [d.text for d in received] == ["a"]
    assert exc.value.partial_text == "a"
    assert stream.finish_reason == "error"


def test_collect_with_error_final_raises_domain_error():
    stream = make_stream(source_from([ChatStreamDelta(text="a"), ChatStreamDelta.final("error")]))
    with pytest.raises(InvalidRequest):
        stream.collect()
