import pytest

from llm_relay.domain.cancellation import CancelToken
from llm_relay.domain.exceptions import Canceled


def test_callbacks_run_once():
    token = CancelToken()
    calls = []
    token.on_cancel(lambda: calls.append(1))
    token.cancel("stop")
    token.cancel("again")
    assert calls == [1]
    assert token.reason == "stop"


def test_late_registration_runs_immediately():
    token = CancelToken()
    token.cancel()
    calls = []
    token.on_cancel(lambda: calls.append(1))
    assert calls == [1]


def test_unregister():
    token = CancelToken()
    calls = []
    unregister = token.on_cancel(lambda: calls.append(1))
    unregister()
    token.cancel()
    assert calls == []


def test_failing_callback_does_not_block_others():
    token = CancelToken()
    calls = []

    def broken():
        raise OSError("already closed")

    token.on_cancel(broken)
    token.on_cancel(lambda: calls.append(1))
    token.cancel()
    assert calls == [1]


def test_child_follows_parent_but_not_the_reverse():
    parent = CancelToken()
    first, second = parent.child(), parent.child()
    first.cancel("done")
    assert not parent.cancelled
    parent.cancel("user abort")
    assert second.cancelled
    assert second.reason == "user abort"


def test_raise_if_cancelled():
    token = CancelToken()
    token.raise_if_cancelled()
    token.cancel("bye")
    with pytest.raises(Canceled) as exc:
        token.raise_if_cancelled()
    assert exc.value.message == "bye"
    assert token.wait(0)
