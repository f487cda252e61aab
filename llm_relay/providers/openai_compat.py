"""OpenAI Chat Completions 协议适配器。

OpenAI、DeepSeek、Kimi/Moonshot、GLM/BigModel、Groq、OpenRouter 均使用同一套
chat/completions 端点，只有 base_url、凭证与少量能力不同：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
- 流式: SSE，每条 data 为一个 chunk JSON，以 data: [DONE] 结束。

因此这里用一份实现 + 每个 vendor 一份 VendorConfig 的方式接入，
不同厂商 JSON ⇄ 项目内部统一模型的转换集中在本文件。
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

import httpx

from llm_relay.config.settings import settings
from llm_relay.domain.cancellation import CancelToken
from llm_relay.domain.exceptions import AuthError, InvalidRequest, VendorFault
from llm_relay.domain.models import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatStreamDelta,
    ChatUsage,
    ProviderDescriptor,
    normalize_finish_reason,
)
from llm_relay.providers.http import (
    ModelCache,
    VendorHttp,
    classify_error_payload,
    iter_sse,
    load_event_json,
)
from llm_relay.tools.definitions import ToolCall, ToolDef, parse_arguments


@dataclass(frozen=True)
class VendorConfig:
    """某个 OpenAI 兼容厂商的静态配置。

    key_setting / url_setting 指向 Settings 上的属性名，凭证在调用时才读取。
    """

    name: str
    key_setting: str
    url_setting: str
    default_base_url: str
    models: Tuple[str, ...] = ()
    vision: bool = False
    tools: bool = True
    stream_usage: bool = False
    organization_setting: Optional[str] = None


OPENAI_CONFIG = VendorConfig(
    name="openai",
    key_setting="openai_api_key",
    url_setting="openai_base_url",
    default_base_url="https://api.openai.com/v1",
    models=("gpt-4o", "gpt-4o-mini", "gpt-4.1", "o3-mini"),
    vision=True,
    stream_usage=True,
    organization_setting="openai_organization",
)

DEEPSEEK_CONFIG = VendorConfig(
    name="deepseek",
    key_setting="deepseek_api_key",
    url_setting="deepseek_base_url",
    default_base_url="https://api.deepseek.com/v1",
    models=("deepseek-chat", "deepseek-reasoner"),
    stream_usage=True,
)

# Kimi 配置
KIMI_CONFIG = VendorConfig(
    name="kimi",
    key_setting="kimi_api_key",
    url_setting="kimi_base_url",
    default_base_url="https://api.moonshot.cn/v1",
    models=("kimi-k2-turbo-preview", "moonshot-v1-8k"),
)

# GLM / BigModel 配置
GLM_CONFIG = VendorConfig(
    name="glm",
    key_setting="glm_api_key",
    url_setting="glm_base_url",
    default_base_url="https://open.bigmodel.cn/api/paas/v4",
    models=("glm-4.6", "glm-4-flash"),
    vision=True,
)

GROQ_CONFIG = VendorConfig(
    name="groq",
    key_setting="groq_api_key",
    url_setting="groq_base_url",
    default_base_url="https://api.groq.com/openai/v1",
    models=("llama-3.3-70b-versatile",),
)

OPENROUTER_CONFIG = VendorConfig(
    name="openrouter",
    key_setting="openrouter_api_key",
    url_setting="openrouter_base_url",
    default_base_url="https://openrouter.ai/api/v1",
    vision=True,
    stream_usage=True,
)

VENDOR_CONFIGS: Dict[str, VendorConfig] = {
    c.name: c for c in (OPENAI_CONFIG, DEEPSEEK_CONFIG, KIMI_CONFIG, GLM_CONFIG, GROQ_CONFIG, OPENROUTER_CONFIG)
}


class OpenAICompatibleClient:
    """OpenAI 兼容协议的 Provider 客户端实现。"""

    def __init__(self, cfg=settings, vendor: VendorConfig = OPENAI_CONFIG, transport: Optional[httpx.BaseTransport] = None):
        # Settings 里包含 base_url、api_key、超时等配置
        self._settings = cfg
        self._vendor = vendor
        self.name = vendor.name
        self._http = VendorHttp(vendor.name, getattr(cfg, "http_timeout", 60.0), transport)
        self._models = ModelCache(getattr(cfg, "models_cache_ttl", 300.0))

    # ---- 非流式 ----

    def send(self, req: ChatRequest, cancel: Optional[CancelToken] = None) -> ChatResponse:
        payload = self._build_payload(req, stream=False)
        data = self._http.request_json(
            "POST", f"{self._base_url()}/chat/completions", self._headers(), payload, cancel
        )
        return self._parse_response(data, req)

    # ---- 流式 ----

    def send_stream(self, req: ChatRequest, cancel: Optional[CancelToken] = None) -> Iterator[ChatStreamDelta]:
        """执行一次流式对话调用，逐步 yield ChatStreamDelta。

        finish_reason 与 usage 可能分布在不同 chunk 中（include_usage 时 usage
        单独在最后一个 chunk），所以最终增量要等到 [DONE] 才产出。
        """

        payload = self._build_payload(req, stream=True)
        lines = self._http.stream_lines(f"{self._base_url()}/chat/completions", self._headers(), payload, cancel)
        finish: Optional[str] = None
        usage: Optional[ChatUsage] = None
        done = False
        for event in iter_sse(lines):
            if event.data.strip() == "[DONE]":
                done = True
                break
            chunk = load_event_json(self.name, event.data)
            if chunk is None:
                continue
            if chunk.get("error"):
                raise classify_error_payload(self.name, chunk)
            if chunk.get("usage"):
                usage = self._parse_usage(chunk["usage"])
            for ch in (chunk.get("choices") or [])[:1]:
                delta = ch.get("delta") or {}
                text = self._content_text(delta.get("content"))
                if text:
                    yield ChatStreamDelta(text=text)
                if ch.get("finish_reason"):
                    finish = ch["finish_reason"]
        if done or finish is not None:
            reason = normalize_finish_reason(finish)
            if reason == "error":
                # 与非流式一致：内容过滤走错误通道
                raise InvalidRequest(message=f"response blocked: {finish}", vendor=self.name)
            yield ChatStreamDelta.final(reason, usage)

    # ---- 模型发现 ----

    def get_models(self) -> List[str]:
        return self._models.get_or_load(self._fetch_models)

    def _fetch_models(self) -> List[str]:
        data = self._http.request_json("GET", f"{self._base_url()}/models", self._headers())
        return sorted(str(item["id"]) for item in data.get("data") or [] if isinstance(item, dict) and item.get("id"))

    def describe(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            vendor=self.name,
            models=self._vendor.models,
            streaming=True,
            vision=self._vendor.vision,
            tools=self._vendor.tools,
        )

    def close(self) -> None:
        self._http.close()

    # ---- 辅助方法 ----

    def _base_url(self) -> str:
        base = getattr(self._settings, self._vendor.url_setting, None) or self._vendor.default_base_url
        return base.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        key = getattr(self._settings, self._vendor.key_setting, None)
        if not key:
            # 凭证缺失在第一次使用时才报错
            raise AuthError(message=f"{self._vendor.key_setting.upper()} not set", code="MISSING_API_KEY", vendor=self.name)
        headers = {"Authorization": f"Bearer {key}", "Content-Type": "application/json"}
        if self._vendor.organization_setting:
            org = getattr(self._settings, self._vendor.organization_setting, None)
            if org:
                headers["OpenAI-Organization"] = org
        return headers

    def _build_payload(self, req: ChatRequest, stream: bool) -> Dict[str, Any]:
        """将 ChatRequest 转成 chat/completions 请求 JSON，未设置的参数不发送。"""

        if not req.model:
            raise InvalidRequest(message="model is required", vendor=self.name)
        opts = req.options
        payload: Dict[str, Any] = {
            "model": req.model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "stream": stream,
        }
        for key, value in (
            ("temperature", opts.temperature),
            ("max_tokens", opts.max_tokens),
            ("top_p", opts.top_p),
            ("seed", opts.seed),
            ("presence_penalty", opts.presence_penalty),
            ("frequency_penalty", opts.frequency_penalty),
        ):
            if value is not None:
                payload[key] = value
        if opts.stop:
            payload["stop"] = list(opts.stop)
        if stream and self._vendor.stream_usage:
            payload["stream_options"] = {"include_usage": True}
        # 工具调用：如果请求中携带了工具定义，则按 function tool 规范转换
        if opts.tools and self._vendor.tools:
            payload["tools"] = [self._serialize_tool(tool) for tool in opts.tools]
            payload["tool_choice"] = opts.tool_choice
        payload.update(opts.extra)
        return payload

    def _message_to_payload(self, message: ChatMessage) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": message.role}
        if message.attachments and self._vendor.vision:
            parts: List[Dict[str, Any]] = []
            if message.content:
                parts.append({"type": "text", "text": message.content})
            for att in message.attachments:
                if att.kind == "audio":
                    fmt = (att.mime_type or "audio/wav").split("/")[-1]
                    parts.append({"type": "input_audio", "input_audio": {"data": att.data or att.url, "format": fmt}})
                else:
                    parts.append({"type": "image_url", "image_url": {"url": att.as_data_url()}})
            payload["content"] = parts
        else:
            payload["content"] = message.content
        if message.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": _dump_arguments(call.arguments)},
                }
                for call in message.tool_calls
            ]
        if message.tool_call_id:
            payload["tool_call_id"] = message.tool_call_id
        return payload

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters_schema(),
            },
        }

    def _parse_response(self, data: Dict[str, Any], req: ChatRequest) -> ChatResponse:
        """将原始响应 JSON 解析为统一的 ChatResponse。"""

        if data.get("error"):
            raise classify_error_payload(self.name, data)
        choices = data.get("choices") or []
        if not choices:
            raise VendorFault(message="response contains no choices", vendor=self.name)
        first = choices[0]
        msg = first.get("message") or {}
        finish = normalize_finish_reason(first.get("finish_reason"))
        if finish == "error":
            raise InvalidRequest(message=f"response blocked: {first.get('finish_reason')}", vendor=self.name)
        return ChatResponse(
            text=self._content_text(msg.get("content")),
            finish_reason=finish,
            usage=self._parse_usage(data.get("usage")),
            raw=data,
            tool_calls=self._parse_tool_calls(msg),
            vendor=self.name,
            model=data.get("model") or req.model,
        )

    @staticmethod
    def _parse_tool_calls(msg: Dict[str, Any]) -> List[ToolCall]:
        calls: List[ToolCall] = []
        for idx, call in enumerate(msg.get("tool_calls") or []):
            func = call.get("function") or {}
            calls.append(
                ToolCall(
                    id=call.get("id") or f"tool_call_{idx}",
                    name=func.get("name") or call.get("name") or "",
                    arguments=parse_arguments(func.get("arguments")),
                )
            )
        # 部分厂商在旧模型上仍会返回 function_call 字段
        function_call = msg.get("function_call")
        if function_call:
            calls.append(
                ToolCall(
                    id=function_call.get("id") or "function_call",
                    name=function_call.get("name") or "",
                    arguments=parse_arguments(function_call.get("arguments")),
                )
            )
        return calls

    @staticmethod
    def _parse_usage(raw: Any) -> Optional[ChatUsage]:
        if not isinstance(raw, dict) or not raw:
            return None
        prompt = raw.get("prompt_tokens") or 0
        completion = raw.get("completion_tokens") or 0
        return ChatUsage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=raw.get("total_tokens") or prompt + completion,
        )

    @staticmethod
    def _content_text(content: Any) -> str:
        # content 既可能是字符串，也可能是 [{"type": "text", "text": ...}] 列表
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(p.get("text", "") for p in content if isinstance(p, dict))
        return ""


def _dump_arguments(arguments: Any) -> str:
    return json.dumps(dict(arguments), ensure_ascii=False)
