"""请求分发：Registry 查找、阻塞/流式调用、错误分类与重试。"""

from llm_relay.dispatch.orchestrator import Dispatcher
from llm_relay.dispatch.retry import RetryPolicy, RetryState

__all__ = ["Dispatcher", "RetryPolicy", "RetryState"]
