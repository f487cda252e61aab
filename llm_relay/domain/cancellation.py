"""请求级取消信号。

CancelToken 在调用方、Dispatcher、流式多路器与适配器之间共享：

- 调用方（或 ChatStream.cancel）调用 cancel()。
- 适配器在打开 HTTP 流之后通过 on_cancel(response.close) 注册回调，
  取消时底层连接会被立即关闭，阻塞中的读操作随之失败。
- 子 token 随父 token 一起取消，反之不会。
"""

import threading
from typing import Callable, List, Optional

from llm_relay.domain.exceptions import Canceled
from llm_relay.infrastructure.logging.logger import logger


class CancelToken:
    def __init__(self, parent: Optional["CancelToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason = ""
        self._detach: Callable[[], None] = lambda: None
        if parent is not None:
            self._detach = parent.on_cancel(lambda: self.cancel(parent.reason))

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "canceled by caller") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        # 子 token 自行取消后不再挂在父 token 上
        self._detach()
        # 回调在锁外执行，回调里可能再次访问 token
        for cb in callbacks:
            try:
                cb()
            except Exception:  # noqa: BLE001
                # 关闭连接时的异常与取消结果无关，只记录
                logger.debug("cancel callback failed", exc_info=True)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """注册取消回调，返回注销函数；已取消时立即执行。"""

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return unregister
        callback()
        return lambda: None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """等待取消，返回是否已取消；用作可被取消的 sleep。"""

        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Canceled(message=self.reason or "request canceled")

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)
