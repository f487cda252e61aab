"""Anthropic Messages API 适配器。

与 OpenAI 协议的主要差异：
- 认证: x-api-key + anthropic-version 请求头。
- system 不是消息，而是请求体顶层的 system 字段。
- messages 只有 user/assistant 两种角色；工具结果以 user 消息里的 tool_result 块发送。
- max_tokens 必填。
- 流式: SSE 命名事件（message_start / content_block_delta / message_delta /
  message_stop / error / ping）。
"""

from typing import Any, Dict, Iterator, List, Optional

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
from llm_relay.providers.http import ModelCache, VendorHttp, classify_error_payload, iter_sse, load_event_json
from llm_relay.tools.definitions import ToolCall

ANTHROPIC_MODELS = ("claude-sonnet-4-5", "claude-opus-4-1", "claude-3-5-haiku-latest")

_TOOL_CHOICE = {"auto": {"type": "auto"}, "required": {"type": "any"}, "none": {"type": "none"}}


class AnthropicClient:
    """Anthropic Provider 客户端实现。"""

    name = "anthropic"

    def __init__(self, cfg=settings, transport: Optional[httpx.BaseTransport] = None):
        self._settings = cfg
        self._http = VendorHttp(self.name, getattr(cfg, "http_timeout", 60.0), transport)
        self._models = ModelCache(getattr(cfg, "models_cache_ttl", 300.0))

    def send(self, req: ChatRequest, cancel: Optional[CancelToken] = None) -> ChatResponse:
        payload = self._build_payload(req, stream=False)
        data = self._http.request_json("POST", f"{self._base_url()}/v1/messages", self._headers(), payload, cancel)
        return self._parse_response(data, req)

    def send_stream(self, req: ChatRequest, cancel: Optional[CancelToken] = None) -> Iterator[ChatStreamDelta]:
        payload = self._build_payload(req, stream=True)
        lines = self._http.stream_lines(f"{self._base_url()}/v1/messages", self._headers(), payload, cancel)
        prompt_tokens = 0
        completion_tokens = 0
        stop_reason: Optional[str] = None
        for event in iter_sse(lines):
            data = load_event_json(self.name, event.data)
            if data is None:
                continue
            kind = data.get("type") or event.event
            if kind == "error":
                raise classify_error_payload(self.name, data)
            if kind == "message_start":
                usage = (data.get("message") or {}).get("usage") or {}
                prompt_tokens = usage.get("input_tokens") or 0
                completion_tokens = usage.get("output_tokens") or 0
            elif kind == "content_block_delta":
                delta = data.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    yield ChatStreamDelta(text=delta["text"])
            elif kind == "message_delta":
                stop_reason = (data.get("delta") or {}).get("stop_reason") or stop_reason
                usage = data.get("usage") or {}
                completion_tokens = usage.get("output_tokens") or completion_tokens
            elif kind == "message_stop":
                reason = normalize_finish_reason(stop_reason)
                if reason == "error":
                    raise InvalidRequest(message=f"response blocked: {stop_reason}", vendor=self.name)
                yield ChatStreamDelta.final(
                    reason,
                    ChatUsage.from_counts(prompt_tokens, completion_tokens),
                )
                return

    def get_models(self) -> List[str]:
        return self._models.get_or_load(self._fetch_models)

    def _fetch_models(self) -> List[str]:
        data = self._http.request_json("GET", f"{self._base_url()}/v1/models?limit=1000", self._headers())
        return [str(item["id"]) for item in data.get("data") or [] if isinstance(item, dict) and item.get("id")]

    def describe(self) -> ProviderDescriptor:
        return ProviderDescriptor(vendor=self.name, models=ANTHROPIC_MODELS, streaming=True, vision=True, tools=True)

    def close(self) -> None:
        self._http.close()

    # ---- 辅助方法 ----

    def _base_url(self) -> str:
        return (getattr(self._settings, "anthropic_base_url", None) or "https://api.anthropic.com").rstrip("/")

    def _headers(self) -> Dict[str, str]:
        key = getattr(self._settings, "anthropic_api_key", None)
        if not key:
            raise AuthError(message="ANTHROPIC_API_KEY not set", code="MISSING_API_KEY", vendor=self.name)
        return {
            "x-api-key": key,
            "anthropic-version": getattr(self._settings, "anthropic_version", None) or "2023-06-01",
            "content-type": "application/json",
        }

    def _build_payload(self, req: ChatRequest, stream: bool) -> Dict[str, Any]:
        if not req.model:
            raise InvalidRequest(message="model is required", vendor=self.name)
        opts = req.options
        system_parts = [m.content for m in req.messages if m.role == "system" and m.content]
        messages = self._convert_messages([m for m in req.messages if m.role != "system"])
        if not messages:
            raise InvalidRequest(message="at least one non-system message is required", vendor=self.name)
        payload: Dict[str, Any] = {
            "model": req.model,
            "messages": messages,
            "max_tokens": opts.max_tokens or getattr(self._settings, "anthropic_max_tokens", 4096),
            "stream": stream,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if opts.temperature is not None:
            payload["temperature"] = opts.temperature
        if opts.top_p is not None:
            payload["top_p"] = opts.top_p
        if opts.stop:
            payload["stop_sequences"] = list(opts.stop)
        if opts.tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters_schema()}
                for t in opts.tools
            ]
            payload["tool_choice"] = _TOOL_CHOICE[opts.tool_choice]
        payload.update(opts.extra)
        return payload

    def _convert_messages(self, messages: List[ChatMessage]) -> List[Dict[str, Any]]:
        """转换为 content 块列表，并合并相邻的同角色消息（API 要求 user/assistant 交替）。"""

        result: List[Dict[str, Any]] = []
        for msg in messages:
            role = "assistant" if msg.role == "assistant" else "user"
            blocks = self._content_blocks(msg)
            if not blocks:
                continue
            if result and result[-1]["role"] == role:
                result[-1]["content"].extend(blocks)
            else:
                result.append({"role": role, "content": blocks})
        return result

    @staticmethod
    def _content_blocks(msg: ChatMessage) -> List[Dict[str, Any]]:
        if msg.role == "tool":
            return [{"type": "tool_result", "tool_use_id": msg.tool_call_id or "", "content": msg.content}]
        blocks: List[Dict[str, Any]] = []
        for att in msg.attachments:
            if att.kind != "image":
                # Messages API 不接受音频输入
                continue
            if att.data:
                source = {"type": "base64", "media_type": att.mime_type or "image/png", "data": att.data}
            else:
                source = {"type": "url", "url": att.url}
            blocks.append({"type": "image", "source": source})
        if msg.content:
            blocks.append({"type": "text", "text": msg.content})
        for call in msg.tool_calls:
            blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": dict(call.arguments)})
        return blocks

    def _parse_response(self, data: Dict[str, Any], req: ChatRequest) -> ChatResponse:
        if data.get("type") == "error":
            raise classify_error_payload(self.name, data)
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise VendorFault(message="response contains no content", vendor=self.name)
        texts: List[str] = []
        calls: List[ToolCall] = []
        for block in blocks:
            if block.get("type") == "text":
                texts.append(block.get("text") or "")
            elif block.get("type") == "tool_use":
                calls.append(ToolCall(id=block.get("id") or "", name=block.get("name") or "", arguments=block.get("input") or {}))
        finish = normalize_finish_reason(data.get("stop_reason"))
        if finish == "error":
            raise InvalidRequest(message=f"response blocked: {data.get('stop_reason')}", vendor=self.name)
        usage = data.get("usage") or {}
        return ChatResponse(
            text="".join(texts),
            finish_reason=finish,
            usage=ChatUsage.from_counts(usage.get("input_tokens"), usage.get("output_tokens")) if usage else None,
            raw=data,
            tool_calls=calls,
            vendor=self.name,
            model=data.get("model") or req.model,
        )
