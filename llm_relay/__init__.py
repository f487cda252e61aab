"""llm_relay 顶层包。

把一次逻辑对话请求分发到不同的 LLM 厂商，并对调用方暴露统一的结果契约：

- prompts.assemble: pattern + strategy + 上下文 + 输入 -> ChatRequest。
- dispatch.Dispatcher: 选择适配器、阻塞或流式调用、错误分类与重试。
- providers: Registry 与各厂商适配器。
- streaming.ChatStream: 可取消的统一增量流。
"""

from llm_relay.dispatch import Dispatcher, RetryPolicy
from llm_relay.domain.cancellation import CancelToken
from llm_relay.domain.exceptions import (
    AuthError,
    BusinessError,
    Canceled,
    DuplicateVendor,
    InvalidRequest,
    RateLimited,
    TemplateError,
    UnknownVendor,
    VendorFault,
    VendorUnavailable,
)
from llm_relay.domain.models import (
    Attachment,
    ChatMessage,
    ChatOptions,
    ChatRequest,
    ChatResponse,
    ChatStreamDelta,
    ChatUsage,
    Pattern,
    ProviderDescriptor,
    Strategy,
)
from llm_relay.prompts import assemble, render_dry_run
from llm_relay.providers import ProviderRegistry, build_registry, create_provider
from llm_relay.streaming import ChatStream

__all__ = [
    "Attachment",
    "AuthError",
    "BusinessError",
    "CancelToken",
    "Canceled",
    "ChatMessage",
    "ChatOptions",
    "ChatRequest",
    "ChatResponse",
    "ChatStream",
    "ChatStreamDelta",
    "ChatUsage",
    "Dispatcher",
    "DuplicateVendor",
    "InvalidRequest",
    "Pattern",
    "ProviderDescriptor",
    "ProviderRegistry",
    "RateLimited",
    "RetryPolicy",
    "Strategy",
    "TemplateError",
    "UnknownVendor",
    "VendorFault",
    "VendorUnavailable",
    "assemble",
    "build_registry",
    "create_provider",
    "render_dry_run",
]
