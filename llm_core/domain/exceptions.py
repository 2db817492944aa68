"""统一错误分类模型。

所有跨模块抛出的错误都继承自 BusinessError。各 Provider 适配器负责在
边界处把厂商 / httpx 的异常翻译成这里的类型，上层（Client、重试控制器、
Conversation）只按类型分支，不关心具体厂商。
"""

from typing import Any, Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "RATE_LIMIT_EXCEEDED"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        provider: 产生错误的 Provider 名称（可选）。
        extra: 其他补充字段（例如 model、status 等）。
    """

    default_code = "BUSINESS_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        http_status: int = 400,
        provider: Optional[str] = None,
        **extra: Any,
    ):
        self.code = code or self.default_code
        self.message = message
        self.http_status = http_status
        self.provider = provider
        self.extra = extra
        super().__init__(message)

    def __str__(self) -> str:
        if self.provider:
            return f"[{self.provider}] {self.code}: {self.message}"
        return f"{self.code}: {self.message}"


class InvalidConfigError(BusinessError):
    """配置缺失或非法（API key 为空、未初始化等）。"""

    default_code = "INVALID_CONFIG"


class AuthenticationError(BusinessError):
    """鉴权失败，需要调用方处理，不重试。"""

    default_code = "AUTHENTICATION_FAILED"


class RateLimitError(BusinessError):
    """Provider 限流错误，由重试控制器负责退避。

    retry_after: Provider 建议的等待秒数（来自 Retry-After 头或错误文本）。
    """

    default_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs: Any):
        kwargs.setdefault("http_status", 429)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class QuotaExceededError(BusinessError):
    """配额耗尽。重试控制器会切换到备用模型。"""

    default_code = "QUOTA_EXCEEDED"


class ModelNotFoundError(BusinessError):
    """模型不存在或没有 Provider 提供该模型。"""

    default_code = "MODEL_NOT_FOUND"


class InvalidRequestError(BusinessError):
    """请求参数非法。"""

    default_code = "INVALID_REQUEST"


class ServerError(BusinessError):
    """Provider 服务端错误（5xx、任务失败等），可重试。"""

    default_code = "SERVER_ERROR"


class NetworkError(ServerError):
    """网络层错误，例如 DNS 失败、连接被拒绝。"""

    default_code = "NETWORK_ERROR"


class RequestTimeoutError(BusinessError):
    """请求或轮询超时，可重试。"""

    default_code = "TIMEOUT"


class TokenLimitExceededError(BusinessError):
    """超出 token 预算（会话预算或模型上下文）。"""

    default_code = "TOKEN_LIMIT_EXCEEDED"


class ContentFilteredError(BusinessError):
    """内容被 Provider 的安全策略拦截。"""

    default_code = "CONTENT_FILTERED"


class CancelledError(BusinessError):
    """调用方取消了请求（cancel_event 被置位）。"""

    default_code = "CANCELLED"


class DuplicateProviderError(BusinessError):
    """同名 Provider 已注册。"""

    default_code = "DUPLICATE_PROVIDER"


class MiddlewareError(BusinessError):
    """中间件处理请求或响应时失败。"""

    default_code = "MIDDLEWARE_FAILED"


class RetryExhaustedError(BusinessError):
    """重试次数用尽。code 沿用最后一次错误的 code，attempts 为调用次数。"""

    default_code = "RETRY_EXHAUSTED"

    def __init__(self, message: str, attempts: int, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.attempts = attempts


_QUOTA_MARKERS = ("quota", "insufficient_quota", "billing")


def error_from_status(
    status: int,
    body: str,
    provider: str,
    retry_after: Optional[float] = None,
    **extra: Any,
) -> BusinessError:
    """把 HTTP 状态码与响应体翻译为统一的错误类型。"""

    text = (body or "").strip() or f"HTTP {status}"
    lowered = text.lower()
    kwargs: dict = {"http_status": status, "provider": provider, **extra}
    if status in (401, 403):
        return AuthenticationError(text, **kwargs)
    if status == 404:
        return ModelNotFoundError(text, **kwargs)
    if status == 429:
        if any(marker in lowered for marker in _QUOTA_MARKERS):
            return QuotaExceededError(text, **kwargs)
        return RateLimitError(text, retry_after=retry_after, **kwargs)
    if status in (408, 504):
        return RequestTimeoutError(text, **kwargs)
    if status >= 500:
        return ServerError(text, **kwargs)
    if status in (400, 422):
        if "context length" in lowered or "maximum context" in lowered:
            return TokenLimitExceededError(text, **kwargs)
        return InvalidRequestError(text, **kwargs)
    return BusinessError(text, code="API_ERROR", **kwargs)
