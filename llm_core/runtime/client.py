"""统一的 LLM Client。

Client 是上层唯一需要依赖的入口：

1. apply_defaults：填充未设置的 model / max_tokens / temperature。
2. 按模型 ID 解析 Provider：先查注册表索引，再退回 default_provider。
3. 请求依次经过中间件，交给适配器执行，响应（或每个流式 chunk）再按
   同样的顺序经过中间件。

Client 自身没有可变的会话状态，可以被多个线程、多个 Conversation 共享。
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

from llm_core.domain.exceptions import (
    BusinessError,
    InvalidConfigError,
    InvalidRequestError,
    MiddlewareError,
    ModelNotFoundError,
)
from llm_core.domain.models import CompletionRequest, CompletionResponse, Message, Model, StreamResponse
from llm_core.providers.base import ProviderAdapter, ProviderConfig, StreamCallback
from llm_core.providers.google_client import GoogleAdapter, GoogleConfig
from llm_core.providers.openai_client import (
    GLM_PRESET,
    KIMI_PRESET,
    OPENAI_PRESET,
    CompatiblePreset,
    OpenAIAdapter,
    OpenAIConfig,
)
from llm_core.providers.registry import ProviderRegistry
from llm_core.providers.replicate_client import ReplicateAdapter, ReplicateConfig
from llm_core.runtime.middleware import Middleware
from llm_core.runtime.retry import RetryConfig, with_retry


@dataclass
class ClientConfig:
    default_provider: str = ""
    default_model: str = ""
    default_max_tokens: int = 4096
    default_temperature: float = 0.7


class Client:
    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        config: Optional[ClientConfig] = None,
        middleware: Sequence[Middleware] = (),
        logger: Optional[logging.Logger] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.registry = registry or ProviderRegistry()
        self.config = config or ClientConfig()
        self.middleware: List[Middleware] = list(middleware)
        self.logger = logger or logging.getLogger(__name__)
        self.retry_config = retry_config

    # ---- Provider 管理 ----

    def register_provider(self, adapter: ProviderAdapter, config: Optional[ProviderConfig] = None) -> None:
        """注册适配器；传入 config 时先 initialize。"""

        if config is not None:
            adapter.initialize(config)
        self.registry.register_provider(adapter)

    def add_middleware(self, middleware: Middleware) -> None:
        self.middleware.append(middleware)

    def get_models(self) -> List[Model]:
        return self.registry.models()

    def get_provider_for_model(self, model: str) -> Tuple[str, ProviderAdapter]:
        """解析模型对应的 Provider：索引命中优先，其次 default_provider。"""

        name = self.registry.provider_for_model(model)
        if name is None and self.config.default_provider and self.registry.has_provider(self.config.default_provider):
            name = self.config.default_provider
        if name is None:
            raise ModelNotFoundError(f"no provider found for model {model}")
        return name, self.registry.get_provider(name)

    def validate_model(self, model: str) -> None:
        _, adapter = self.get_provider_for_model(model)
        adapter.validate_model(model)

    def estimate_tokens(self, messages: List[Message], model: str) -> int:
        _, adapter = self.get_provider_for_model(model)
        return adapter.estimate_tokens(messages, model)

    def apply_defaults(self, request: CompletionRequest) -> CompletionRequest:
        """返回填充了默认值的请求副本，不修改调用方的对象。"""

        resolved = request.copy()
        if not resolved.model:
            resolved.model = self.config.default_model
        if not resolved.model:
            raise InvalidRequestError("model is required and no default model is configured")
        if resolved.max_tokens is None:
            resolved.max_tokens = self.config.default_max_tokens
        if resolved.temperature is None:
            resolved.temperature = self.config.default_temperature
        return resolved

    # ---- 调用 ----

    def complete(
        self,
        request: CompletionRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> CompletionResponse:
        req = self.apply_defaults(request)
        name, adapter = self.get_provider_for_model(req.model)
        req = self._run_request_middleware(req, name)
        self.logger.debug("Dispatching completion", extra={"extra": {"provider": name, "model": req.model}})
        response = adapter.complete(req, cancel_event)
        for mw in self.middleware:
            response = self._call_middleware(mw, name, mw.process_response, response)
        return response

    def stream(
        self,
        request: CompletionRequest,
        callback: StreamCallback,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        req = self.apply_defaults(request)
        name, adapter = self.get_provider_for_model(req.model)
        req = self._run_request_middleware(req, name)
        self.logger.debug("Dispatching stream", extra={"extra": {"provider": name, "model": req.model}})

        def on_chunk(chunk: StreamResponse) -> None:
            for mw in self.middleware:
                chunk = self._call_middleware(mw, name, mw.process_stream_chunk, chunk)
            callback(chunk)

        adapter.stream(req, on_chunk, cancel_event)

    def complete_with_retry(
        self,
        request: CompletionRequest,
        retry_config: Optional[RetryConfig] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CompletionResponse:
        return with_retry(
            request,
            lambda req: self.complete(req, cancel_event),
            retry_config or self.retry_config,
            cancel_event,
        )

    def close(self) -> None:
        self.registry.close()

    # ---- 内部 ----

    def _run_request_middleware(self, request: CompletionRequest, provider_name: str) -> CompletionRequest:
        for mw in self.middleware:
            request = self._call_middleware(mw, provider_name, mw.process_request, request)
        return request

    @staticmethod
    def _call_middleware(mw: Middleware, provider_name: str, hook: Callable[[Any, str], Any], value: Any) -> Any:
        try:
            return hook(value, provider_name)
        except Exception as e:
            raise MiddlewareError(
                f"middleware {type(mw).__name__} failed: {e}",
                provider=provider_name,
            ) from e


class ClientBuilder:
    """链式构造 Client。build() 时依次 initialize 并注册每个 Provider。"""

    def __init__(self) -> None:
        self._config = ClientConfig()
        self._providers: List[Tuple[ProviderAdapter, ProviderConfig]] = []
        self._middleware: List[Middleware] = []
        self._logger: Optional[logging.Logger] = None
        self._retry_config: Optional[RetryConfig] = None

    def with_default_provider(self, name: str) -> "ClientBuilder":
        self._config.default_provider = name
        return self

    def with_default_model(self, model: str) -> "ClientBuilder":
        self._config.default_model = model
        return self

    def with_default_max_tokens(self, max_tokens: int) -> "ClientBuilder":
        self._config.default_max_tokens = max_tokens
        return self

    def with_default_temperature(self, temperature: float) -> "ClientBuilder":
        self._config.default_temperature = temperature
        return self

    def with_openai(self, api_key: str, base_url: str = "", **options: Any) -> "ClientBuilder":
        return self._with_compatible(OPENAI_PRESET, api_key, base_url, **options)

    def with_kimi(self, api_key: str, base_url: str = "", **options: Any) -> "ClientBuilder":
        return self._with_compatible(KIMI_PRESET, api_key, base_url, **options)

    def with_glm(self, api_key: str, base_url: str = "", **options: Any) -> "ClientBuilder":
        return self._with_compatible(GLM_PRESET, api_key, base_url, **options)

    def with_replicate(self, api_token: str, base_url: str = "", **options: Any) -> "ClientBuilder":
        config = ReplicateConfig(api_key=api_token, base_url=base_url, **options)
        return self.with_provider(ReplicateAdapter(), config)

    def with_google(self, api_key: str, base_url: str = "", **options: Any) -> "ClientBuilder":
        config = GoogleConfig(api_key=api_key, base_url=base_url, **options)
        return self.with_provider(GoogleAdapter(), config)

    def with_provider(self, adapter: ProviderAdapter, config: ProviderConfig) -> "ClientBuilder":
        self._providers.append((adapter, config))
        return self

    def with_middleware(self, middleware: Middleware) -> "ClientBuilder":
        self._middleware.append(middleware)
        return self

    def with_logger(self, logger: logging.Logger) -> "ClientBuilder":
        self._logger = logger
        return self

    def with_retry(self, retry_config: RetryConfig) -> "ClientBuilder":
        self._retry_config = retry_config
        return self

    def build(self) -> Client:
        registry = ProviderRegistry()
        for adapter, config in self._providers:
            try:
                adapter.initialize(config)
            except BusinessError as e:
                raise InvalidConfigError(
                    f"failed to initialize provider {adapter.name}: {e.message}",
                    provider=adapter.name,
                ) from e
            registry.register_provider(adapter)
        return Client(
            registry=registry,
            config=ClientConfig(**vars(self._config)),
            middleware=self._middleware,
            logger=self._logger,
            retry_config=self._retry_config,
        )

    def _with_compatible(
        self, preset: CompatiblePreset, api_key: str, base_url: str = "", **options: Any
    ) -> "ClientBuilder":
        config = OpenAIConfig(provider=preset.name, api_key=api_key, base_url=base_url, **options)
        return self.with_provider(OpenAIAdapter(preset), config)
