"""统一业务异常模型。

所有跨模块抛出的错误都继承自 BusinessError，便于 CLI / HTTP 层统一捕获与提示。

厂商适配器必须把各家 HTTP 状态码、错误 JSON、传输异常翻译为下面几种规范错误，
厂商特有的异常类型不允许穿过适配器边界：

- AuthError: 凭证缺失或无效。
- RateLimited: 厂商限流/过载，可携带 retry_after 提示。
- InvalidRequest: 厂商拒绝请求的结构或内容。
- VendorFault: 5xx、传输失败、超时（timeout=True）以及无法识别的错误。
- Canceled: 调用方取消。

Registry / 组装层另有 UnknownVendor、DuplicateVendor、VendorUnavailable、TemplateError。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "RATE_LIMIT"）。
        message: 用户可读错误信息，尽量保留厂商返回的原始描述。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 vendor、partial_text 等）。
    """

    code = "BUSINESS_ERROR"
    default_http_status = 400

    def __init__(self, code: Optional[str] = None, message: str = "", http_status: Optional[int] = None, **extra):
        self.code = code or type(self).code
        self.message = message
        self.http_status = http_status if http_status is not None else type(self).default_http_status
        self.extra = extra
        super().__init__(message)

    @property
    def vendor(self) -> Optional[str]:
        return self.extra.get("vendor")

    @property
    def partial_text(self) -> str:
        """流式调用中断前已经交付给调用方的文本。"""

        return self.extra.get("partial_text", "")

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}" if self.message else f"[{self.code}]"


class UnknownVendor(BusinessError):
    """Registry 中不存在该 vendor。"""

    code = "UNKNOWN_VENDOR"
    default_http_status = 404


class DuplicateVendor(BusinessError):
    """重复注册同名 vendor（且未显式要求覆盖）。"""

    code = "DUPLICATE_VENDOR"
    default_http_status = 409


class VendorUnavailable(BusinessError):
    """厂商无法提供模型列表等元信息，不影响 Registry 本身。"""

    code = "VENDOR_UNAVAILABLE"
    default_http_status = 503


class AuthError(BusinessError):
    """凭证缺失或被厂商拒绝。"""

    code = "AUTH_ERROR"
    default_http_status = 401


class InvalidRequest(BusinessError):
    """厂商拒绝了请求的结构或内容。"""

    code = "INVALID_REQUEST"


class RateLimited(BusinessError):
    """Provider 限流错误，由 Dispatcher 负责重试/退避。"""

    code = "RATE_LIMIT"
    default_http_status = 429

    def __init__(self, code: Optional[str] = None, message: str = "", retry_after: Optional[float] = None, **kwargs):
        super().__init__(code=code, message=message, **kwargs)
        self.retry_after = retry_after


class VendorFault(BusinessError):
    """厂商 5xx、网络层错误（连接失败、超时等）或无法映射的错误。"""

    code = "VENDOR_FAULT"
    default_http_status = 502

    def __init__(self, code: Optional[str] = None, message: str = "", timeout: bool = False, **kwargs):
        if timeout:
            code = code or "VENDOR_TIMEOUT"
            kwargs.setdefault("http_status", 504)
        super().__init__(code=code, message=message, **kwargs)
        self.timeout = timeout


class Canceled(BusinessError):
    """调用方取消了请求。"""

    code = "CANCELED"
    default_http_status = 499


class TemplateError(BusinessError):
    """模板引用了未提供的变量。"""

    code = "TEMPLATE_ERROR"

    def __init__(self, code: Optional[str] = None, message: str = "", variable: Optional[str] = None, **kwargs):
        super().__init__(code=code, message=message, **kwargs)
        self.variable = variable


def is_retryable(err: BaseException) -> bool:
    """只有限流与厂商故障有资格重试。"""

    return isinstance(err, (RateLimited, VendorFault))
