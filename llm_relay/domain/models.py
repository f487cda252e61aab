"""统一的对话与结果数据模型。

本模块定义了在不同 Provider 之间共享的标准数据结构：

- ChatMessage / Attachment: 一条对话消息及其附件（图片/音频引用）。
- ChatOptions / ChatRequest: 发给底层 LLM Provider 的完整请求，构建后不可变。
- ChatResponse: 从 Provider 解析后的统一响应结果。
- ChatStreamDelta: 流式返回中的单个增量。
- Pattern / Strategy: Prompt 组装的输入（由外部存储加载好后传入）。
- ProviderDescriptor: 某个 vendor 的能力描述。

所有 Provider 适配器都必须只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field, replace
from typing import Any, Literal, Mapping, Optional, Tuple

from llm_relay.tools.definitions import ToolCall, ToolDef


# LLM 消息角色类型（与 OpenAI 等厂商的 role 字段对应）
Role = Literal["system", "user", "assistant", "tool"]
ROLES = ("system", "user", "assistant", "tool")

FinishReason = Literal["stop", "length", "tool_call", "error"]

# 厂商 finish_reason / stop_reason -> 规范值
_FINISH_REASONS = {
    "stop": "stop",
    "end_turn": "stop",
    "stop_sequence": "stop",
    "eos": "stop",
    "length": "length",
    "max_tokens": "length",
    "model_length": "length",
    "tool_calls": "tool_call",
    "tool_call": "tool_call",
    "function_call": "tool_call",
    "tool_use": "tool_call",
    "content_filter": "error",
    "refusal": "error",
    "sensitive": "error",
    "error": "error",
}


def normalize_finish_reason(raw: Optional[str]) -> FinishReason:
    """把厂商的结束原因映射为规范的 FinishReason，未知值按 stop 处理。"""

    if not raw:
        return "stop"
    return _FINISH_REASONS.get(str(raw).lower(), "stop")  # type: ignore[return-value]


@dataclass(frozen=True)
class Attachment:
    """消息附件：url 与 data（base64）二选一。"""

    kind: Literal["image", "audio"] = "image"
    url: Optional[str] = None
    data: Optional[str] = None
    mime_type: Optional[str] = None

    def __post_init__(self):
        if not self.url and not self.data:
            raise ValueError("attachment requires url or data")

    def as_data_url(self) -> str:
        if self.url:
            return self.url
        return f"data:{self.mime_type or 'application/octet-stream'};base64,{self.data}"


@dataclass(frozen=True)
class ChatMessage:
    """一条对话消息。

    - role: 消息角色，如 system/user/assistant/tool。
    - content: 纯文本内容。
    - attachments: 图片/音频引用，仅支持 vision 的厂商会发送。
    - tool_calls: assistant 消息触发的工具调用。
    - tool_call_id: role 为 "tool" 时关联的工具调用 ID。
    """

    role: Role
    content: str = ""
    attachments: Tuple[Attachment, ...] = ()
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_call_id: Optional[str] = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"unknown message role: {self.role!r}")
        # 允许调用方传 list，统一存成 tuple 保证不可变
        object.__setattr__(self, "attachments", tuple(self.attachments))
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))


@dataclass(frozen=True)
class ChatOptions:
    """生成参数。

    厂商不支持的参数由各适配器忽略，不会报错。extra 是厂商私有参数的透传表，
    会原样合并进请求体（例如 {"reasoning_effort": "low"}）。
    """

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stream: bool = False
    stop: Tuple[str, ...] = ()
    seed: Optional[int] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    tools: Tuple[ToolDef, ...] = ()
    tool_choice: Literal["auto", "none", "required"] = "auto"
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "stop", tuple(self.stop))
        object.__setattr__(self, "tools", tuple(self.tools))
        object.__setattr__(self, "extra", dict(self.extra))


@dataclass(frozen=True)
class ChatRequest:
    """一次完整的聊天请求，每次调用新建，不在调用之间复用或修改。"""

    messages: Tuple[ChatMessage, ...]
    model: str = ""
    options: ChatOptions = field(default_factory=ChatOptions)

    def __post_init__(self):
        object.__setattr__(self, "messages", tuple(self.messages))

    def with_model(self, model: str) -> "ChatRequest":
        return replace(self, model=model)

    @property
    def stream(self) -> bool:
        return self.options.stream


@dataclass(frozen=True)
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_counts(cls, prompt: Optional[int], completion: Optional[int]) -> "ChatUsage":
        prompt = prompt or 0
        completion = completion or 0
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)


@dataclass(frozen=True)
class ChatResponse:
    """一次对话调用的最终结果。

    - text: 回答文本。
    - finish_reason: 规范化的结束原因。
    - usage: 可选的 token 使用统计。
    - raw: 原始响应 JSON，仅用于调试或日志记录。
    - tool_calls: 模型发起的工具调用（finish_reason == "tool_call" 时）。
    """

    text: str
    finish_reason: FinishReason = "stop"
    usage: Optional[ChatUsage] = None
    raw: Any = None
    tool_calls: Tuple[ToolCall, ...] = ()
    vendor: str = ""
    model: str = ""

    def __post_init__(self):
        # error 只能走异常通道，不能与正文一起返回
        if self.finish_reason == "error" and self.text:
            raise ValueError("a response with finish_reason 'error' must not carry text")
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))


@dataclass(frozen=True)
class ChatStreamDelta:
    """流式对话的单个增量；is_final 为 True 时携带结束原因与 usage。"""

    text: str = ""
    is_final: bool = False
    finish_reason: Optional[FinishReason] = None
    usage: Optional[ChatUsage] = None

    @classmethod
    def final(cls, finish_reason: FinishReason = "stop", usage: Optional[ChatUsage] = None, text: str = "") -> "ChatStreamDelta":
        return cls(text=text, is_final=True, finish_reason=finish_reason, usage=usage)


@dataclass(frozen=True)
class Pattern:
    """具名的 system/user 提示词模板。"""

    name: str
    system: str = ""
    user: Optional[str] = None


@dataclass(frozen=True)
class Strategy:
    """具名的推理策略：prefix 追加到 system 消息，suffix 追加到用户输入之后。"""

    name: str
    prefix: str = ""
    suffix: str = ""
    description: str = ""


@dataclass(frozen=True)
class ProviderDescriptor:
    """某个 vendor 的能力描述，注册后不可变。"""

    vendor: str
    models: Tuple[str, ...] = ()
    streaming: bool = True
    vision: bool = False
    tools: bool = False

    def __post_init__(self):
        object.__setattr__(self, "models", tuple(self.models))
