"""Provider 适配器抽象接口。

上层 Client 不直接依赖具体厂商的 HTTP API，而是依赖此接口：

- 每个厂商实现一个 ProviderAdapter（如 OpenAIAdapter、ReplicateAdapter）。
- 负责：把 CompletionRequest 转成具体 API 请求，把响应 JSON 解析为
  CompletionResponse，并把厂商错误翻译成 domain.exceptions 中的类型。
- stream() 无论底层是原生 token 流、同步单次回复还是异步任务轮询，都必须
  遵守同一个回调协议（见 providers.streaming.StreamPipe）。

这样可以在不改 Client 代码的前提下接入更多厂商。
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

from llm_core.domain.exceptions import InvalidConfigError, ModelNotFoundError
from llm_core.domain.models import CompletionRequest, CompletionResponse, Message, Model, StreamResponse
from llm_core.domain.tokens import estimate_messages_tokens

StreamCallback = Callable[[StreamResponse], None]


@dataclass
class ProviderConfig:
    """各 Provider 通用的配置字段，厂商专属字段由子类扩展。"""

    provider: str
    api_key: str = ""
    base_url: str = ""
    timeout: float = 30.0
    max_retries: int = 0

    def validate(self) -> None:
        if not self.provider:
            raise InvalidConfigError("provider is required")
        if not self.api_key:
            raise InvalidConfigError("api_key is required", provider=self.provider)


class ProviderAdapter(ABC):
    """LLM Provider 适配器基类。

    实现者需要提供：
    - name: Provider 名称，用于注册、日志与错误信息。
    - initialize(config): 校验配置并准备客户端。
    - get_models / complete / stream / validate_model。

    estimate_tokens 与 close 有默认实现。
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def initialize(self, config: ProviderConfig) -> None:
        ...

    @abstractmethod
    def get_models(self, cancel_event: Optional[threading.Event] = None) -> List[Model]:
        ...

    @abstractmethod
    def complete(
        self,
        request: CompletionRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> CompletionResponse:
        ...

    @abstractmethod
    def stream(
        self,
        request: CompletionRequest,
        callback: StreamCallback,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """执行一次流式调用。

        回调被调用零到多次（非终止 chunk），最后恰好一次终止 chunk。回调抛出
        的异常会终止流，并作为本方法的异常原样抛出。
        """

        ...

    def estimate_tokens(self, messages: List[Message], model: str) -> int:
        return estimate_messages_tokens(messages)

    @abstractmethod
    def validate_model(self, model: str) -> None:
        """模型不受支持时抛 ModelNotFoundError。"""

        ...

    def close(self) -> None:
        return None

    def _model_not_found(self, model: str) -> ModelNotFoundError:
        return ModelNotFoundError(f"model {model} not supported by {self.name} provider", provider=self.name)

    def _not_initialized(self) -> InvalidConfigError:
        return InvalidConfigError("provider not initialized", provider=self.name)
