"""端到端场景：Pattern 组装 + echo vendor，阻塞与流式两条路径。"""

from llm_relay import Dispatcher, RetryPolicy, assemble, build_registry
from llm_relay.domain.models import ChatOptions, ChatResponse, Pattern
from llm_relay.streaming import ChatStream

SUMMARIZE = Pattern(name="summarize", system="Summarize the text.")
EXPECTED = "Summarize the text.\nThe sky is blue."


def make_dispatcher():
    return Dispatcher(build_registry(), retry_policy=RetryPolicy(default_backoff=0.0, fault_backoff=0.0))


def test_blocking_summarize_through_echo():
    dispatcher = make_dispatcher()
    req = assemble(SUMMARIZE, None, [], "The sky is blue.", model="echo")
    res = dispatcher.dispatch(req, "echo")
    assert isinstance(res, ChatResponse)
    assert res.text == EXPECTED
    assert res.finish_reason == "stop"
    assert res.vendor == "echo"
    dispatcher.close()


def test_streaming_summarize_through_echo():
    dispatcher = make_dispatcher()
    req = assemble(SUMMARIZE, None, [], "The sky is blue.", options=ChatOptions(stream=True), model="echo")
    stream = dispatcher.dispatch(req, "echo")
    assert isinstance(stream, ChatStream)
    deltas = list(stream)
    assert "".join(d.text for d in deltas) == EXPECTED
    assert sum(1 for d in deltas if d.is_final) == 1
    assert deltas[-1].finish_reason == "stop"
    assert len(deltas) > 2
    dispatcher.close()
