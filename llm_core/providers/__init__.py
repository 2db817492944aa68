"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base) 与流式投递协议 (streaming)。
- 维护 Provider 注册表与模型索引 (registry)。
- 提供各厂商的具体实现 (openai_client、replicate_client、google_client)。
"""

from typing import List, Literal

from llm_core.config.settings import Settings
from llm_core.domain.exceptions import InvalidConfigError
from llm_core.providers.base import ProviderAdapter
from llm_core.providers.google_client import GoogleAdapter, GoogleConfig
from llm_core.providers.openai_client import PRESETS, OpenAIAdapter, OpenAIConfig
from llm_core.providers.replicate_client import ReplicateAdapter, ReplicateConfig

ProviderName = Literal["openai", "kimi", "glm", "replicate", "google"]
PROVIDER_NAMES = ("openai", "kimi", "glm", "replicate", "google")


def create_provider(name: str, settings: Settings) -> ProviderAdapter:
    """根据名称与配置创建并初始化 Provider。"""

    provider_name = name.lower()
    timeout = settings.http_timeout
    if provider_name in PRESETS:
        adapter: ProviderAdapter = OpenAIAdapter(PRESETS[provider_name])
        config = OpenAIConfig(
            provider=provider_name,
            api_key=getattr(settings, f"{provider_name}_api_key") or "",
            base_url=getattr(settings, f"{provider_name}_base_url"),
            timeout=timeout,
            organization=settings.openai_organization if provider_name == "openai" else "",
        )
    elif provider_name == "replicate":
        adapter = ReplicateAdapter()
        config = ReplicateConfig(
            api_key=settings.replicate_api_token or "",
            base_url=settings.replicate_base_url,
            timeout=timeout,
            poll_interval=settings.replicate_poll_interval,
            poll_timeout=settings.replicate_poll_timeout,
        )
    elif provider_name == "google":
        adapter = GoogleAdapter()
        config = GoogleConfig(
            api_key=settings.google_api_key or "",
            base_url=settings.google_base_url,
            timeout=timeout,
        )
    else:
        raise InvalidConfigError(f"unknown provider: {name}", provider=name)
    adapter.initialize(config)
    return adapter


def configured_providers(settings: Settings) -> List[str]:
    """返回配置了凭据的 Provider 名称。"""

    keys = {
        "openai": settings.openai_api_key,
        "kimi": settings.kimi_api_key,
        "glm": settings.glm_api_key,
        "replicate": settings.replicate_api_token,
        "google": settings.google_api_key,
    }
    return [name for name in PROVIDER_NAMES if keys[name]]
