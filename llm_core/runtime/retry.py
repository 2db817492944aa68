"""带退避与模型回退的重试控制器。

每次失败按以下顺序决策：

1. 不可重试（鉴权、非法请求、模型不存在等）：立即抛出原错误。
2. 配额耗尽：切换到 fallback_models 中下一个未尝试的模型并立即重试；
   没有可用的回退模型时抛 QuotaExceededError。
3. 可重试（限流、5xx、超时、网络）：优先使用 Provider 建议的等待时间
   （Retry-After 或错误文本里的 "retry in Xs"）加 1 秒缓冲，否则按
   base_delay * 2^(attempt-1) 指数退避，不超过 max_delay。

等待期间 cancel_event 被置位时立即抛 CancelledError。次数用尽后抛
RetryExhaustedError，__cause__ 为最后一次错误。

重试循环由 tenacity.Retrying 驱动，这里只提供 retry / wait / sleep /
before_sleep 四个钩子。调用方传入的 request 对象不会被修改。
"""

import enum
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence, Tuple, TypeVar

from tenacity import RetryCallState, RetryError, Retrying, stop_after_attempt, wait_exponential

from llm_core.domain.exceptions import (
    AuthenticationError,
    BusinessError,
    CancelledError,
    ContentFilteredError,
    InvalidConfigError,
    InvalidRequestError,
    ModelNotFoundError,
    QuotaExceededError,
    RateLimitError,
    RetryExhaustedError,
    TokenLimitExceededError,
)
from llm_core.domain.models import CompletionRequest

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_BUFFER = 1.0

_RETRY_IN = re.compile(r"[Rr]etry in (\d+\.?\d*)s")

NON_RETRYABLE_TYPES: Tuple[type, ...] = (
    AuthenticationError,
    InvalidRequestError,
    ModelNotFoundError,
    InvalidConfigError,
    TokenLimitExceededError,
    ContentFilteredError,
)

# 非本库错误（例如调用方自己的函数抛出的异常）按文本匹配
NON_RETRYABLE_PATTERNS = (
    "invalid_api_key",
    "authentication",
    "unauthorized",
    "permission denied",
    "invalid request",
    "bad request",
    "not found",
)
RETRYABLE_PATTERNS = (
    "429",
    "500",
    "502",
    "503",
    "504",
    "timeout",
    "deadline exceeded",
    "connection",
    "rate",
    "quota",
    "server_error",
    "temporarily unavailable",
)


class ErrorClass(enum.Enum):
    NON_RETRYABLE = "non_retryable"
    QUOTA = "quota"
    RETRYABLE = "retryable"
    CANCELLED = "cancelled"


@dataclass
class RetryConfig:
    max_attempts: int = 5
    base_delay: float = 2.0
    max_delay: float = 30.0
    fallback_models: Sequence[str] = field(default_factory=tuple)

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryConfig":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            fallback_models=tuple(settings.retry_fallback_models),
        )


def classify_error(exc: BaseException) -> ErrorClass:
    """错误分类：先按错误类型，再按文本；无法识别的默认可重试。"""

    if isinstance(exc, CancelledError):
        return ErrorClass.CANCELLED
    if isinstance(exc, QuotaExceededError):
        return ErrorClass.QUOTA
    if isinstance(exc, NON_RETRYABLE_TYPES):
        return ErrorClass.NON_RETRYABLE
    if isinstance(exc, BusinessError):
        return ErrorClass.RETRYABLE

    text = str(exc).lower()
    if any(p in text for p in NON_RETRYABLE_PATTERNS):
        return ErrorClass.NON_RETRYABLE
    if "quota" in text:
        return ErrorClass.QUOTA
    if any(p in text for p in RETRYABLE_PATTERNS):
        return ErrorClass.RETRYABLE
    # 未知错误乐观重试
    return ErrorClass.RETRYABLE


def is_retryable_error(exc: BaseException) -> bool:
    return classify_error(exc) in (ErrorClass.RETRYABLE, ErrorClass.QUOTA)


def is_quota_exceeded_error(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorClass.QUOTA


def parse_rate_limit_delay(exc: BaseException) -> Optional[float]:
    """提取 Provider 建议的等待秒数（不含缓冲），没有时返回 None。"""

    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        return exc.retry_after
    match = _RETRY_IN.search(str(exc))
    if match:
        return float(match.group(1))
    return None


class _RetryRun:
    """单次 run() 的可变状态：当前请求副本与回退进度。"""

    def __init__(self, request: CompletionRequest, config: RetryConfig):
        self.request = request.copy()
        self.config = config
        self.fallback_index = 0

    def has_fallback(self) -> bool:
        return self.fallback_index < len(self.config.fallback_models)


class RetryController:
    def __init__(self, config: Optional[RetryConfig] = None):
        self.config = config or RetryConfig()

    def run(
        self,
        request: CompletionRequest,
        fn: Callable[[CompletionRequest], T],
        cancel_event: Optional[threading.Event] = None,
    ) -> T:
        cfg = self.config
        max_attempts = cfg.max_attempts if cfg.max_attempts > 0 else 5
        state = _RetryRun(request, cfg)
        backoff = wait_exponential(multiplier=cfg.base_delay, exp_base=2, max=cfg.max_delay)

        def should_retry(retry_state: RetryCallState) -> bool:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            if exc is None:
                return False
            kind = classify_error(exc)
            if kind is ErrorClass.QUOTA:
                return state.has_fallback()
            if kind is ErrorClass.NON_RETRYABLE:
                logger.error(
                    "Non-retryable error, aborting",
                    extra={"extra": {"attempt": retry_state.attempt_number, "error": str(exc)}},
                )
            return kind is ErrorClass.RETRYABLE

        def compute_wait(retry_state: RetryCallState) -> float:
            exc = retry_state.outcome.exception()
            if is_quota_exceeded_error(exc):
                return 0.0
            suggested = parse_rate_limit_delay(exc)
            if suggested is not None:
                return suggested + RATE_LIMIT_BUFFER
            return backoff(retry_state)

        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            info = {
                "attempt": retry_state.attempt_number,
                "max_attempts": max_attempts,
                "model": state.request.model,
                "delay": retry_state.upcoming_sleep,
                "error": str(exc),
            }
            if is_quota_exceeded_error(exc):
                fallback = cfg.fallback_models[state.fallback_index]
                state.fallback_index += 1
                info["fallback_model"] = fallback
                logger.warning("Quota exceeded, falling back to different model", extra={"extra": info})
                state.request = state.request.with_model(fallback)
            else:
                logger.warning("Operation failed, retrying with backoff", extra={"extra": info})

        def sleep(seconds: float) -> None:
            if cancel_event is None:
                time.sleep(seconds)
            elif cancel_event.wait(seconds):
                raise CancelledError("retry cancelled by caller")

        retrying = Retrying(
            stop=stop_after_attempt(max_attempts),
            retry=should_retry,
            wait=compute_wait,
            sleep=sleep,
            before_sleep=before_sleep,
        )
        try:
            return retrying(lambda: fn(state.request))
        except QuotaExceededError as e:
            logger.error(
                "Quota exceeded and no more fallback models available",
                extra={"extra": {"model": state.request.model, "error": str(e)}},
            )
            raise QuotaExceededError(
                f"quota exceeded for model {state.request.model} and no fallback models remain: {e.message}",
                provider=e.provider,
                http_status=e.http_status,
                model=state.request.model,
            ) from e
        except RetryError as e:
            last = e.last_attempt.exception()
            code = last.code if isinstance(last, BusinessError) else None
            provider = last.provider if isinstance(last, BusinessError) else None
            raise RetryExhaustedError(
                f"operation failed after {max_attempts} attempts: {last}",
                attempts=max_attempts,
                code=code,
                provider=provider,
            ) from last


def with_retry(
    request: CompletionRequest,
    fn: Callable[[CompletionRequest], T],
    config: Optional[RetryConfig] = None,
    cancel_event: Optional[threading.Event] = None,
) -> T:
    """RetryController(config).run(...) 的函数式入口。"""

    return RetryController(config).run(request, fn, cancel_event)
