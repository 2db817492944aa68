"""Client 中间件。

中间件按注册顺序依次处理请求、响应和流式 chunk。任何一个中间件抛出异常，
Client 都会把它包装成 MiddlewareError 再向上抛。
"""

import logging
import threading
import time
from typing import Optional

from llm_core.domain.models import CompletionRequest, CompletionResponse, StreamResponse


class Middleware:
    """中间件基类，默认全部原样透传，子类按需覆盖。"""

    def process_request(self, request: CompletionRequest, provider_name: str) -> CompletionRequest:
        return request

    def process_response(self, response: CompletionResponse, provider_name: str) -> CompletionResponse:
        return response

    def process_stream_chunk(self, chunk: StreamResponse, provider_name: str) -> StreamResponse:
        return chunk


class LoggingMiddleware(Middleware):
    """记录每次调用的模型、Provider、finish_reason、usage 与耗时。

    同一个实例会被多个线程共享；一次调用的请求与响应总在同一线程里处理，
    所以开始时间按线程保存。
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._local = threading.local()

    def process_request(self, request: CompletionRequest, provider_name: str) -> CompletionRequest:
        self._local.started = time.monotonic()
        self.logger.info(
            "LLM request",
            extra={
                "extra": {
                    "provider": provider_name,
                    "model": request.model,
                    "messages": len(request.messages),
                    "max_tokens": request.max_tokens,
                }
            },
        )
        return request

    def process_response(self, response: CompletionResponse, provider_name: str) -> CompletionResponse:
        self.logger.info("LLM response", extra={"extra": self._summary(response, provider_name)})
        return response

    def process_stream_chunk(self, chunk: StreamResponse, provider_name: str) -> StreamResponse:
        if chunk.is_final:
            self.logger.info("LLM stream finished", extra={"extra": self._summary(chunk, provider_name)})
        return chunk

    def _summary(self, result, provider_name: str) -> dict:
        summary = {
            "provider": provider_name,
            "model": result.model,
            "finish_reason": result.finish_reason,
        }
        if result.usage is not None:
            summary["total_tokens"] = result.usage.total_tokens
        started = getattr(self._local, "started", None)
        if started is not None:
            summary["elapsed_ms"] = int((time.monotonic() - started) * 1000)
            self._local.started = None
        return summary
