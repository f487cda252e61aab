"""厂商 HTTP 调用的公共部分。

各适配器共用：
- VendorHttp: 每个适配器持有一个，内部是懒加载、线程安全的 httpx.Client 连接池；
  负责把 HTTP 状态码、错误 JSON、传输异常翻译为规范错误，并把取消信号接到连接关闭上。
- iter_sse / iter_json_lines: SSE 与 NDJSON 两种增量帧的解析。
- ModelCache: 模型列表的短 TTL 缓存。
"""

import json
import threading
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import httpx

from llm_relay.domain.cancellation import CancelToken
from llm_relay.domain.exceptions import (
    AuthError,
    BusinessError,
    Canceled,
    InvalidRequest,
    RateLimited,
    VendorFault,
)
from llm_relay.infrastructure.logging.logger import logger


def parse_retry_after(headers: httpx.Headers) -> Optional[float]:
    """解析 Retry-After（秒数或 HTTP 日期），兼容 OpenAI 的 retry-after-ms。"""

    ms = headers.get("retry-after-ms")
    if ms:
        try:
            return max(float(ms) / 1000.0, 0.0)
        except ValueError:
            pass
    value = headers.get("retry-after")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def extract_error_message(payload: Any, fallback: str = "") -> str:
    """从厂商错误 JSON 中取出人类可读的描述。

    兼容 {"error": {"message": ...}}、{"error": "..."}、{"message": ...}、{"detail": ...}。
    """

    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message") or err.get("type")
            if msg:
                return str(msg)
        if isinstance(err, str) and err:
            return err
        for key in ("message", "detail", "msg"):
            if payload.get(key):
                return str(payload[key])
    return (fallback or "").strip()[:500]


def _response_detail(resp: httpx.Response) -> str:
    text = resp.text
    try:
        payload = json.loads(text) if text else None
    except json.JSONDecodeError:
        payload = None
    return extract_error_message(payload, fallback=text) or resp.reason_phrase


def raise_for_status(vendor: str, resp: httpx.Response) -> None:
    """把非 2xx 响应翻译为规范错误；调用前响应体必须已读取。"""

    status = resp.status_code
    if status < 400:
        return
    detail = _response_detail(resp)
    if status in (401, 403):
        raise AuthError(message=detail, http_status=status, vendor=vendor)
    if status == 429 or status == 529:
        # Anthropic 以 529 表示过载，与 429 同样是退避信号
        raise RateLimited(message=detail, retry_after=parse_retry_after(resp.headers), http_status=429, vendor=vendor)
    if status == 408:
        raise VendorFault(message=detail, timeout=True, vendor=vendor)
    if status >= 500:
        raise VendorFault(message=detail, http_status=status, vendor=vendor)
    raise InvalidRequest(message=detail, http_status=status, vendor=vendor)


_RATE_LIMIT_TYPES = {"rate_limit_error", "rate_limit_exceeded", "overloaded_error", "insufficient_quota", "too_many_requests"}
_AUTH_TYPES = {"authentication_error", "permission_error", "invalid_api_key", "unauthorized"}
_INVALID_TYPES = {"invalid_request_error", "not_found_error", "request_too_large", "context_length_exceeded"}


def classify_error_payload(vendor: str, payload: Dict[str, Any]) -> BusinessError:
    """把流中途出现的错误 JSON 映射为规范错误，无法识别的一律 VendorFault。"""

    err = payload.get("error")
    kind = ""
    if isinstance(err, dict):
        kind = str(err.get("type") or err.get("code") or "").lower()
    detail = extract_error_message(payload, fallback=json.dumps(payload, ensure_ascii=False))
    if kind in _RATE_LIMIT_TYPES:
        return RateLimited(message=detail, vendor=vendor)
    if kind in _AUTH_TYPES:
        return AuthError(message=detail, vendor=vendor)
    if kind in _INVALID_TYPES:
        return InvalidRequest(message=detail, vendor=vendor)
    return VendorFault(message=detail, vendor=vendor)


@dataclass
class SSEEvent:
    event: str
    data: str


def iter_sse(lines: Iterable[str]) -> Iterator[SSEEvent]:
    """按 SSE 规范把行序列聚合为事件：空行分隔，多条 data 以换行拼接。"""

    event = ""
    data: List[str] = []
    for line in lines:
        if not line:
            if data:
                yield SSEEvent(event=event or "message", data="\n".join(data))
            event, data = "", []
            continue
        if line.startswith(":"):
            continue
        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field_name == "event":
            event = value
        elif field_name == "data":
            data.append(value)
    if data:
        yield SSEEvent(event=event or "message", data="\n".join(data))


def load_event_json(vendor: str, raw: str) -> Optional[Dict[str, Any]]:
    """解析单条增量的 JSON，解析失败时跳过（返回 None）。"""

    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("skip malformed stream frame", extra={"extra": {"vendor": vendor, "frame": raw[:200]}})
        return None
    return value if isinstance(value, dict) else None


def iter_json_lines(vendor: str, lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    """换行分隔 JSON（NDJSON）帧解析。"""

    for line in lines:
        line = line.strip()
        if not line:
            continue
        payload = load_event_json(vendor, line)
        if payload is not None:
            yield payload


class VendorHttp:
    """单个适配器持有的 HTTP 通道，连接池在该适配器的所有并发调用间共享。"""

    def __init__(self, vendor: str, timeout: float, transport: Optional[httpx.BaseTransport] = None):
        self.vendor = vendor
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None
        self._lock = threading.Lock()

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            with self._lock:
                if self._client is None:
                    self._client = httpx.Client(timeout=self._timeout, trust_env=False, transport=self._transport)
        return self._client

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def request_json(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        payload: Optional[Dict[str, Any]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Dict[str, Any]:
        """发送一次请求并返回 JSON 响应体。

        使用流式打开响应，这样在读取响应体期间取消可以直接关闭连接。
        """

        token = cancel or CancelToken()
        token.raise_if_cancelled()
        try:
            with self.client.stream(method, url, json=payload, headers=headers) as resp:
                unregister = token.on_cancel(resp.close)
                try:
                    resp.read()
                finally:
                    unregister()
                if token.cancelled:
                    # 连接被取消回调关闭，读到的响应体不完整
                    raise Canceled(message=token.reason or "request canceled", vendor=self.vendor)
                raise_for_status(self.vendor, resp)
                try:
                    data = resp.json()
                except (json.JSONDecodeError, UnicodeDecodeError) as e:
                    raise VendorFault(message=f"malformed response body: {e}", vendor=self.vendor)
        except BusinessError:
            raise
        except Exception as e:  # noqa: BLE001
            raise self.translate(e, token) from e
        if not isinstance(data, dict):
            raise VendorFault(message="unexpected response shape", vendor=self.vendor)
        return data

    def stream_lines(
        self,
        url: str,
        headers: Dict[str, str],
        payload: Dict[str, Any],
        cancel: Optional[CancelToken] = None,
    ) -> Iterator[str]:
        """以 POST 打开流式响应并逐行产出；关闭生成器即关闭连接。"""

        token = cancel or CancelToken()
        token.raise_if_cancelled()
        try:
            with self.client.stream("POST", url, json=payload, headers=headers) as resp:
                unregister = token.on_cancel(resp.close)
                try:
                    if resp.status_code >= 400:
                        resp.read()
                        raise_for_status(self.vendor, resp)
                    for line in resp.iter_lines():
                        yield line
                    if token.cancelled:
                        raise Canceled(message=token.reason or "request canceled", vendor=self.vendor)
                finally:
                    unregister()
        except BusinessError:
            raise
        except Exception as e:  # noqa: BLE001
            raise self.translate(e, token) from e

    def translate(self, exc: Exception, token: CancelToken) -> BusinessError:
        """把传输层异常映射为规范错误；取消引起的连接关闭一律视为 Canceled。"""

        if token.cancelled:
            return Canceled(message=token.reason or "request canceled", vendor=self.vendor)
        if isinstance(exc, httpx.TimeoutException):
            return VendorFault(message=f"{self.vendor} timed out: {exc}", timeout=True, vendor=self.vendor)
        if isinstance(exc, (httpx.HTTPError, httpx.StreamError)):
            return VendorFault(message=f"{self.vendor} transport error: {exc}", vendor=self.vendor)
        return VendorFault(message=f"{self.vendor} unexpected error: {exc!r}", vendor=self.vendor)


class ModelCache:
    """模型列表的 TTL 缓存；加载过程不持锁，避免把锁带进网络调用。"""

    def __init__(self, ttl: float):
        self._ttl = ttl
        self._lock = threading.Lock()
        self._models: Optional[List[str]] = None
        self._loaded_at = 0.0

    def get_or_load(self, loader: Callable[[], List[str]]) -> List[str]:
        with self._lock:
            if self._models is not None and time.monotonic() - self._loaded_at < self._ttl:
                return list(self._models)
        models = loader()
        with self._lock:
            self._models = list(models)
            self._loaded_at = time.monotonic()
        return list(models)

    def invalidate(self) -> None:
        with self._lock:
            self._models = None
