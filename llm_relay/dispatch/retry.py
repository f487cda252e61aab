"""重试策略。

- RateLimited：最多 max_attempts 次尝试（含首次），等待时间优先用厂商给的
  retry_after，否则按 default_backoff 指数增长，单次不超过 max_backoff。
- VendorFault（含超时）：只重试 fault_retries 次，固定等待 fault_backoff。
- 其他错误一律不重试。
"""

from dataclasses import dataclass
from typing import Optional

from llm_relay.domain.exceptions import RateLimited, is_retryable


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    default_backoff: float = 1.0
    max_backoff: float = 30.0
    fault_retries: int = 1
    fault_backoff: float = 0.5

    @classmethod
    def from_settings(cls, cfg) -> "RetryPolicy":
        return cls(
            max_attempts=getattr(cfg, "retry_max_attempts", 3),
            default_backoff=getattr(cfg, "retry_default_backoff", 1.0),
            max_backoff=getattr(cfg, "retry_max_backoff", 30.0),
            fault_backoff=getattr(cfg, "retry_fault_backoff", 0.5),
        )

    def new_state(self) -> "RetryState":
        return RetryState(self)


class RetryState:
    """单次逻辑调用的重试计数。"""

    def __init__(self, policy: RetryPolicy):
        self.policy = policy
        self.rate_limited = 0
        self.faults = 0

    @property
    def attempts(self) -> int:
        return 1 + self.rate_limited + self.faults

    def next_delay(self, err: BaseException) -> Optional[float]:
        """返回下一次重试前的等待秒数；None 表示不再重试。"""

        if not is_retryable(err):
            return None
        policy = self.policy
        if isinstance(err, RateLimited):
            self.rate_limited += 1
            if self.rate_limited >= policy.max_attempts:
                return None
            if err.retry_after is not None:
                delay = err.retry_after
            else:
                delay = policy.default_backoff * (2 ** (self.rate_limited - 1))
            return min(delay, policy.max_backoff)
        # 剩下的只有 VendorFault
        self.faults += 1
        if self.faults > policy.fault_retries:
            return None
        return policy.fault_backoff
