"""Ollama 本地模型适配器。

- URL: {base_url}/api/chat，无需凭证。
- 生成参数放在 options 里（num_predict 对应 max_tokens）。
- 流式: 换行分隔 JSON，最后一行 done=true 并携带 done_reason 与 token 统计。
"""

from typing import Any, Dict, Iterator, List, Optional

import httpx

from llm_relay.config.settings import settings
from llm_relay.domain.cancellation import CancelToken
from llm_relay.domain.exceptions import InvalidRequest
from llm_relay.domain.models import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatStreamDelta,
    ChatUsage,
    ProviderDescriptor,
    normalize_finish_reason,
)
from llm_relay.providers.http import ModelCache, VendorHttp, classify_error_payload, iter_json_lines
from llm_relay.tools.definitions import ToolCall, parse_arguments


class OllamaClient:
    """Ollama Provider 客户端实现。"""

    name = "ollama"

    def __init__(self, cfg=settings, transport: Optional[httpx.BaseTransport] = None):
        self._settings = cfg
        self._http = VendorHttp(self.name, getattr(cfg, "http_timeout", 60.0), transport)
        self._models = ModelCache(getattr(cfg, "models_cache_ttl", 300.0))

    def send(self, req: ChatRequest, cancel: Optional[CancelToken] = None) -> ChatResponse:
        data = self._http.request_json("POST", f"{self._base_url()}/api/chat", self._headers(), self._build_payload(req, False), cancel)
        if data.get("error"):
            raise classify_error_payload(self.name, data)
        msg = data.get("message") or {}
        calls = [
            ToolCall(
                id=f"tool_call_{idx}",
                name=(call.get("function") or {}).get("name") or "",
                arguments=parse_arguments((call.get("function") or {}).get("arguments")),
            )
            for idx, call in enumerate(msg.get("tool_calls") or [])
        ]
        finish = "tool_call" if calls else normalize_finish_reason(data.get("done_reason"))
        if finish == "error":
            raise InvalidRequest(message=f"response blocked: {data.get('done_reason')}", vendor=self.name)
        return ChatResponse(
            text=msg.get("content") or "",
            finish_reason=finish,
            usage=self._usage(data),
            raw=data,
            tool_calls=calls,
            vendor=self.name,
            model=data.get("model") or req.model,
        )

    def send_stream(self, req: ChatRequest, cancel: Optional[CancelToken] = None) -> Iterator[ChatStreamDelta]:
        lines = self._http.stream_lines(f"{self._base_url()}/api/chat", self._headers(), self._build_payload(req, True), cancel)
        for chunk in iter_json_lines(self.name, lines):
            if chunk.get("error"):
                raise classify_error_payload(self.name, chunk)
            text = (chunk.get("message") or {}).get("content") or ""
            if text:
                yield ChatStreamDelta(text=text)
            if chunk.get("done"):
                reason = normalize_finish_reason(chunk.get("done_reason"))
                if reason == "error":
                    raise InvalidRequest(message=f"response blocked: {chunk.get('done_reason')}", vendor=self.name)
                yield ChatStreamDelta.final(reason, self._usage(chunk))
                return

    def get_models(self) -> List[str]:
        return self._models.get_or_load(self._fetch_models)

    def _fetch_models(self) -> List[str]:
        data = self._http.request_json("GET", f"{self._base_url()}/api/tags", self._headers())
        return sorted(str(m["name"]) for m in data.get("models") or [] if isinstance(m, dict) and m.get("name"))

    def describe(self) -> ProviderDescriptor:
        return ProviderDescriptor(vendor=self.name, streaming=True, vision=True, tools=True)

    def close(self) -> None:
        self._http.close()

    def _base_url(self) -> str:
        return (getattr(self._settings, "ollama_base_url", None) or "http://localhost:11434").rstrip("/")

    @staticmethod
    def _headers() -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _build_payload(self, req: ChatRequest, stream: bool) -> Dict[str, Any]:
        if not req.model:
            raise InvalidRequest(message="model is required", vendor=self.name)
        opts = req.options
        options: Dict[str, Any] = {}
        for key, value in (
            ("temperature", opts.temperature),
            ("top_p", opts.top_p),
            ("num_predict", opts.max_tokens),
            ("seed", opts.seed),
            ("presence_penalty", opts.presence_penalty),
            ("frequency_penalty", opts.frequency_penalty),
        ):
            if value is not None:
                options[key] = value
        if opts.stop:
            options["stop"] = list(opts.stop)
        payload: Dict[str, Any] = {
            "model": req.model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "stream": stream,
        }
        if options:
            payload["options"] = options
        if opts.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters_schema()},
                }
                for t in opts.tools
            ]
        payload.update(opts.extra)
        return payload

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": message.role, "content": message.content}
        # Ollama 只接受 base64 图片
        images = [a.data for a in message.attachments if a.kind == "image" and a.data]
        if images:
            payload["images"] = images
        if message.tool_calls:
            payload["tool_calls"] = [
                {"function": {"name": c.name, "arguments": dict(c.arguments)}} for c in message.tool_calls
            ]
        return payload

    @staticmethod
    def _usage(data: Dict[str, Any]) -> Optional[ChatUsage]:
        if "prompt_eval_count" not in data and "eval_count" not in data:
            return None
        return ChatUsage.from_counts(data.get("prompt_eval_count"), data.get("eval_count"))
