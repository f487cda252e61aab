"""Provider 抽象接口。

上层 Dispatcher 不直接依赖具体厂商的 HTTP 协议，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 OpenAICompatibleClient、AnthropicClient）。
- 负责：附加凭证，将 ChatRequest 转成具体 API 请求，把响应 JSON 解析为 ChatResponse，
  并把厂商错误翻译为规范错误（AuthError / RateLimited / InvalidRequest / VendorFault / Canceled）。

实现是扁平的，各适配器之间不存在继承关系，只需满足同一协议即可接入 Registry。
"""

from typing import Iterator, List, Optional, Protocol

from llm_relay.domain.cancellation import CancelToken
from llm_relay.domain.models import ChatRequest, ChatResponse, ChatStreamDelta, ProviderDescriptor


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: vendor 名称，用于日志/统计。
    - send(req): 执行一次非流式对话调用，返回统一的 ChatResponse。
    - send_stream(req): 执行一次流式调用，逐个产出 ChatStreamDelta；
      最后一个增量 is_final=True（缺失时由多路器补齐）。
    - get_models(): 尽力返回可用模型 ID，可缓存。
    """

    name: str

    def send(self, req: ChatRequest, cancel: Optional[CancelToken] = None) -> ChatResponse:
        ...

    def send_stream(self, req: ChatRequest, cancel: Optional[CancelToken] = None) -> Iterator[ChatStreamDelta]:
        ...

    def get_models(self) -> List[str]:
        ...

    def describe(self) -> ProviderDescriptor:
        ...

    def close(self) -> None:
        ...
