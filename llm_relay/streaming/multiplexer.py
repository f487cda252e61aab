"""流式多路器。

把一次适配器 send_stream 调用包装成调用方可迭代、可取消的 ChatStream：

- 后台 pump 线程从适配器拉取增量，放进有界队列；消费方慢时 pump 阻塞（背压）。
- 只产出一个 is_final 增量；适配器没给结束标记就自然结束时，补一个 finish_reason="stop"。
- 取消（调用方 token 或 ChatStream.cancel）在 poll_interval 内生效：消费方拿到 Canceled，
  token 回调关闭底层连接，pump 线程随之退出。
- 流中途出错：先交付错误之前已产生的全部增量，再抛出该错误（带 partial_text），
  不会产出 stop 结束增量，避免看起来像正常结束。
- 重试只发生在第一个增量产生之前。
"""

import queue
import threading
import time
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, List, Optional

from llm_relay.domain.cancellation import CancelToken
from llm_relay.domain.exceptions import BusinessError, Canceled, InvalidRequest, VendorFault
from llm_relay.domain.models import ChatResponse, ChatStreamDelta, ChatUsage
from llm_relay.infrastructure.logging.logger import logger

if TYPE_CHECKING:
    from llm_relay.dispatch.retry import RetryPolicy

StreamSource = Callable[[CancelToken], Iterable[ChatStreamDelta]]

_END = object()


class _Failure:
    def __init__(self, error: BusinessError):
        self.error = error


class ChatStream:
    """一次流式调用的结果，只能被消费一次。"""

    def __init__(
        self,
        source: StreamSource,
        cancel: Optional[CancelToken] = None,
        retry: Optional["RetryPolicy"] = None,
        buffer_size: int = 64,
        poll_interval: float = 0.05,
        idle_timeout: Optional[float] = None,
        vendor: str = "",
        model: str = "",
    ):
        self._source = source
        self._token = cancel.child() if cancel is not None else CancelToken()
        self._retry = retry
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max(buffer_size, 1))
        self._poll = poll_interval
        self._idle_timeout = idle_timeout
        self._thread = threading.Thread(target=self._pump, name=f"llm-relay-stream-{vendor or 'vendor'}", daemon=True)
        self._pump_done = threading.Event()
        self._started = False
        self._consumed = False
        self._closed = False
        self._parts: List[str] = []
        self.vendor = vendor
        self.model = model
        self.finish_reason: Optional[str] = None
        self.usage: Optional[ChatUsage] = None
        self.error: Optional[BusinessError] = None

    # ---- 消费方 ----

    def __iter__(self) -> Iterator[ChatStreamDelta]:
        if self._consumed:
            raise RuntimeError("a ChatStream can only be consumed once")
        self._consumed = True
        return self._iterate()

    def _iterate(self) -> Iterator[ChatStreamDelta]:
        self._start()
        try:
            while True:
                item = self._next_item()
                if item is _END:
                    final = ChatStreamDelta.final("stop")
                    self.finish_reason = "stop"
                    yield final
                    return
                if isinstance(item, _Failure):
                    raise self._fail(item.error)
                if item.is_final:
                    if item.finish_reason == "error":
                        # error 只能以异常结束，不能伪装成正常的结束增量
                        raise self._fail(InvalidRequest(message=f"{self.vendor or 'vendor'} ended the stream with an error", vendor=self.vendor))
                    if item.text:
                        self._parts.append(item.text)
                    self.finish_reason = item.finish_reason or "stop"
                    self.usage = item.usage
                    yield item
                    return
                self._parts.append(item.text)
                yield item
        finally:
            # 正常结束、出错或消费方提前退出都会走到这里，释放底层连接
            self.close()

    def _next_item(self) -> Any:
        deadline = time.monotonic() + self._idle_timeout if self._idle_timeout else None
        while True:
            if self._token.cancelled:
                raise self._fail(Canceled(message=self._token.reason or "stream canceled", vendor=self.vendor))
            try:
                return self._queue.get(timeout=self._poll)
            except queue.Empty:
                if deadline is not None and time.monotonic() > deadline:
                    err = VendorFault(
                        message=f"no data from {self.vendor or 'vendor'} for {self._idle_timeout}s",
                        timeout=True,
                        vendor=self.vendor,
                    )
                    self._token.cancel("stream idle timeout")
                    raise self._fail(err)

    def _fail(self, err: BusinessError) -> BusinessError:
        err.extra["partial_text"] = self.text
        err.extra.setdefault("vendor", self.vendor)
        self.error = err
        self.finish_reason = "error"
        return err

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def collect(self) -> ChatResponse:
        """消费整个流并合成 ChatResponse；出错时抛出与迭代相同的错误。"""

        for _ in self:
            pass
        return ChatResponse(
            text=self.text,
            finish_reason=self.finish_reason or "stop",
            usage=self.usage,
            vendor=self.vendor,
            model=self.model,
        )

    def cancel(self, reason: str = "canceled by caller") -> None:
        self._token.cancel(reason)

    def close(self) -> None:
        """释放底层连接；不会抛出错误。"""

        if self._closed:
            return
        self._closed = True
        self._token.cancel("stream closed")

    def join(self, timeout: Optional[float] = None) -> bool:
        """等待 pump 线程退出，返回是否已退出。"""

        if not self._started:
            return True
        return self._pump_done.wait(timeout)

    def __enter__(self) -> "ChatStream":
        return self

    def __exit__(self, *exc) -> bool:
        self.close()
        return False

    # ---- pump 线程 ----

    def _start(self) -> None:
        if not self._started:
            self._started = True
            self._thread.start()

    def _pump(self) -> None:
        state = self._retry.new_state() if self._retry is not None else None
        produced = False
        try:
            while True:
                source: Optional[Iterable[ChatStreamDelta]] = None
                try:
                    source = self._source(self._token)
                    for delta in source:
                        if self._token.cancelled:
                            return
                        if delta.is_final:
                            self._put(delta)
                            return
                        if not delta.text:
                            continue
                        produced = True
                        if not self._put(delta):
                            return
                    if self._token.cancelled:
                        return
                    self._put(_END)
                    return
                except Exception as e:  # noqa: BLE001
                    if self._token.cancelled:
                        return
                    err = e if isinstance(e, BusinessError) else VendorFault(
                        message=f"unexpected error from {self.vendor or 'vendor'}: {e!r}", vendor=self.vendor
                    )
                    delay = state.next_delay(err) if state is not None and not produced else None
                    if delay is None:
                        self._put(_Failure(err))
                        return
                    logger.warning(
                        "Retrying stream",
                        extra={"extra": {"vendor": self.vendor, "model": self.model, "error": err.code, "delay": delay, "attempt": state.attempts}},
                    )
                    if self._token.wait(delay):
                        return
                finally:
                    close = getattr(source, "close", None)
                    if callable(close):
                        close()
        finally:
            self._pump_done.set()

    def _put(self, item: Any) -> bool:
        # 队列满时等待消费方，期间持续检查取消
        while not self._token.cancelled:
            try:
                self._queue.put(item, timeout=self._poll)
                return True
            except queue.Full:
                continue
        return False
