"""对外 API 服务模块。

提供从配置一步构造 Client / Conversation / ChatSession 的函数，
供上层应用调用。这里不保存任何全局单例，调用方持有返回的对象。
"""

import logging
from typing import Iterable, Optional

from llm_core.config.settings import Settings
from llm_core.domain.conversation import Conversation
from llm_core.providers import configured_providers, create_provider
from llm_core.runtime.chat import ChatSession
from llm_core.runtime.client import Client, ClientConfig
from llm_core.runtime.middleware import LoggingMiddleware
from llm_core.runtime.retry import RetryConfig

logger = logging.getLogger(__name__)


def build_client(settings: Settings, providers: Optional[Iterable[str]] = None) -> Client:
    """按配置创建 Client，并注册所有配置了凭据（或显式指定）的 Provider。

    Args:
        settings: 运行时配置。
        providers: 需要注册的 Provider 名称；为空时自动选择已配置凭据的 Provider。

    Raises:
        InvalidConfigError: Provider 名称未知或凭据缺失。
    """

    client = Client(
        config=ClientConfig(
            default_provider=settings.default_provider,
            default_model=settings.default_model,
            default_max_tokens=settings.default_max_tokens,
            default_temperature=settings.default_temperature,
        ),
        middleware=[LoggingMiddleware()],
        retry_config=RetryConfig.from_settings(settings),
    )
    names = list(providers) if providers is not None else configured_providers(settings)
    for name in names:
        client.register_provider(create_provider(name, settings))
    logger.info("Client ready", extra={"extra": {"providers": names}})
    return client


def new_chat(
    client: Client,
    settings: Settings,
    system_prompt: str = "",
    model: Optional[str] = None,
    resources_enabled: bool = False,
    auto_truncate: bool = False,
) -> ChatSession:
    """创建一个使用配置中 token 预算的新会话。"""

    conversation = Conversation(
        system_prompt=system_prompt,
        max_tokens=settings.conversation_max_tokens,
        resources_enabled=resources_enabled,
    )
    return ChatSession(
        client,
        conversation,
        model=model,
        retry_config=RetryConfig.from_settings(settings),
        auto_truncate=auto_truncate,
    )
