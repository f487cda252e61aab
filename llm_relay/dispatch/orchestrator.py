"""Dispatch Orchestrator：调用方唯一需要的门面。

给定组装好的 ChatRequest 与目标 vendor/模型：
1. 通过 Registry 找到适配器。
2. 按 request.options.stream 走阻塞调用（返回 ChatResponse）或流式调用（返回 ChatStream）。
3. 按 RetryPolicy 处理 RateLimited / VendorFault，其他错误原样抛给调用方。

重试对调用方不可见，只增加延迟；流式调用一旦交付了第一个增量就不再重试。
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from llm_relay.config.settings import settings
from llm_relay.dispatch.retry import RetryPolicy
from llm_relay.domain.cancellation import CancelToken
from llm_relay.domain.exceptions import BusinessError, Canceled, VendorFault
from llm_relay.domain.models import ChatRequest, ChatResponse
from llm_relay.infrastructure.logging.logger import logger
from llm_relay.providers.base import ProviderClient
from llm_relay.providers.registry import ProviderRegistry
from llm_relay.streaming.multiplexer import ChatStream


class Dispatcher:
    def __init__(
        self,
        registry: ProviderRegistry,
        retry_policy: Optional[RetryPolicy] = None,
        cfg=None,
    ):
        self._registry = registry
        self._settings = cfg or settings
        self._retry = retry_policy or RetryPolicy.from_settings(self._settings)
        self._deadline = getattr(self._settings, "call_deadline", 300.0)
        # 阻塞调用放到工作线程里执行，这样取消可以立即返回
        self._pool = ThreadPoolExecutor(
            max_workers=getattr(self._settings, "dispatch_workers", 32),
            thread_name_prefix="llm-relay-send",
        )

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def dispatch(
        self,
        request: ChatRequest,
        vendor: Optional[str] = None,
        model: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Union[ChatResponse, ChatStream]:
        """按 request.options.stream 选择阻塞或流式调用。"""

        if request.options.stream:
            return self.stream(request, vendor, model, cancel)
        return self.send(request, vendor, model, cancel)

    def send(
        self,
        request: ChatRequest,
        vendor: Optional[str] = None,
        model: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ChatResponse:
        adapter, req, name = self._prepare(request, vendor, model)
        token = cancel.child() if cancel is not None else CancelToken()
        state = self._retry.new_state()
        log_ctx: Dict[str, Any] = {"trace_id": f"tr-{uuid4().hex}", "vendor": name, "model": req.model}
        try:
            while True:
                attempt = state.attempts
                start_time = time.time()
                try:
                    resp = self._call_blocking(adapter, req, token)
                except BusinessError as err:
                    self._log(
                        logging.WARNING,
                        "Vendor call failed",
                        log_ctx,
                        attempt=attempt,
                        error=err.code,
                        detail=err.message,
                        elapsed_seconds=round(time.time() - start_time, 3),
                    )
                    if isinstance(err, Canceled) or token.cancelled:
                        raise
                    delay = state.next_delay(err)
                    if delay is None:
                        raise
                    if token.wait(delay):
                        raise Canceled(message=token.reason or "request canceled", vendor=name)
                    continue
                self._log(
                    logging.INFO,
                    "Vendor call completed",
                    log_ctx,
                    attempt=attempt,
                    finish_reason=resp.finish_reason,
                    elapsed_seconds=round(time.time() - start_time, 3),
                )
                return resp
        finally:
            # 只释放本次调用派生的 token，不影响调用方的 token
            token.cancel("call finished")

    def stream(
        self,
        request: ChatRequest,
        vendor: Optional[str] = None,
        model: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ChatStream:
        adapter, req, name = self._prepare(request, vendor, model)
        self._log(logging.INFO, "Opening stream", {"vendor": name, "model": req.model})
        return ChatStream(
            lambda token: adapter.send_stream(req, token),
            cancel=cancel,
            retry=self._retry,
            buffer_size=getattr(self._settings, "stream_buffer_size", 64),
            poll_interval=getattr(self._settings, "stream_poll_interval", 0.05),
            idle_timeout=getattr(self._settings, "stream_idle_timeout", None),
            vendor=name,
            model=req.model,
        )

    def list_models(self, vendor: str) -> List[str]:
        return self._registry.list_models(vendor)

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    # ---- 内部 ----

    def _prepare(
        self, request: ChatRequest, vendor: Optional[str], model: Optional[str]
    ) -> Tuple[ProviderClient, ChatRequest, str]:
        name = (vendor or getattr(self._settings, "default_vendor", "") or "").lower()
        adapter = self._registry.resolve(name)
        target = model or request.model or getattr(self._settings, "default_model", "")
        req = request if target == request.model else request.with_model(target)
        return adapter, req, name

    def _call_blocking(self, adapter: ProviderClient, req: ChatRequest, token: CancelToken) -> ChatResponse:
        token.raise_if_cancelled()
        # 每次尝试单独的 token：超时只中断本次尝试，不影响后续重试
        attempt_token = token.child()
        future = self._pool.submit(adapter.send, req, attempt_token)
        done = threading.Event()
        future.add_done_callback(lambda _: done.set())
        unregister = attempt_token.on_cancel(done.set)
        try:
            finished = done.wait(self._deadline)
        finally:
            unregister()
        if not future.done():
            if token.cancelled:
                future.cancel()
                raise Canceled(message=token.reason or "request canceled", vendor=adapter.name)
            if not finished:
                attempt_token.cancel("deadline exceeded")
                future.cancel()
                raise VendorFault(message=f"{adapter.name} did not answer within {self._deadline}s", timeout=True, vendor=adapter.name)
        try:
            return future.result()
        except BusinessError:
            raise
        except Exception as e:  # noqa: BLE001
            # 适配器漏掉的异常按 VendorFault 处理，不让厂商细节穿透
            raise VendorFault(message=f"unexpected error from {adapter.name}: {e!r}", vendor=adapter.name) from e
        finally:
            attempt_token.cancel("attempt finished")

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
