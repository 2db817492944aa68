"""Provider 注册表与模型索引。

注册表维护两份数据：

- providers: 名称 -> ProviderAdapter。
- 模型索引: 模型 ID -> Provider 名称，注册时通过 get_models 建立。

上层按模型 ID 查找 Provider 时只查这份索引，不再向厂商发请求。
注册、注销走写锁；查询走读锁，可以并发。
"""

import logging
from typing import Dict, List, Optional

from llm_core.domain.exceptions import DuplicateProviderError, ModelNotFoundError, ServerError
from llm_core.domain.locks import ReadWriteLock
from llm_core.domain.models import Model
from llm_core.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)


class ProviderRegistry:
    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._providers: Dict[str, ProviderAdapter] = {}
        self._models: Dict[str, Model] = {}
        self._model_index: Dict[str, str] = {}

    def register_provider(self, adapter: ProviderAdapter) -> None:
        """注册一个已初始化的适配器，并把它的模型加入索引。

        模型列表拉取失败只记 warning，Provider 仍然保留（只是不贡献索引项）。
        同一个模型 ID 被多个 Provider 提供时，先注册者生效。
        """

        name = adapter.name
        with self._lock.write():
            if name in self._providers:
                raise DuplicateProviderError(f"provider {name} already registered", provider=name)
            self._providers[name] = adapter

        models = self._fetch_models(adapter)
        with self._lock.write():
            if self._providers.get(name) is adapter:
                self._index_locked(name, models)
        logger.info(
            "Registered provider",
            extra={"extra": {"provider": name, "models": len(models)}},
        )

    def refresh_models(self, name: str) -> List[Model]:
        adapter = self.get_provider(name)
        models = self._fetch_models(adapter)
        with self._lock.write():
            self._drop_index_locked(name)
            self._index_locked(name, models)
        return models

    def unregister(self, name: str) -> None:
        with self._lock.write():
            adapter = self._providers.pop(name, None)
            if adapter is None:
                raise ModelNotFoundError(f"provider {name} not registered", provider=name)
            self._drop_index_locked(name)
        adapter.close()

    # ---- 查询 ----

    def get_provider(self, name: str) -> ProviderAdapter:
        with self._lock.read():
            adapter = self._providers.get(name)
        if adapter is None:
            raise ModelNotFoundError(f"provider {name} not registered", provider=name)
        return adapter

    def has_provider(self, name: str) -> bool:
        with self._lock.read():
            return name in self._providers

    def list_providers(self) -> List[str]:
        with self._lock.read():
            return list(self._providers)

    def models(self) -> List[Model]:
        with self._lock.read():
            return list(self._models.values())

    def provider_for_model(self, model_id: str) -> Optional[str]:
        """只查索引；未命中返回 None。"""

        with self._lock.read():
            return self._model_index.get(model_id)

    def close(self) -> None:
        """关闭全部适配器；任意一个失败都会在最后合并成一个 ServerError 抛出。"""

        with self._lock.write():
            adapters = list(self._providers.values())
            self._providers.clear()
            self._models.clear()
            self._model_index.clear()
        errors = []
        for adapter in adapters:
            try:
                adapter.close()
            except Exception as e:
                errors.append(f"{adapter.name}: {e}")
        if errors:
            raise ServerError("failed to close providers: " + "; ".join(errors))

    # ---- 内部 ----

    @staticmethod
    def _fetch_models(adapter: ProviderAdapter) -> List[Model]:
        try:
            return adapter.get_models()
        except Exception as e:
            logger.warning(
                "Failed to load models for provider",
                extra={"extra": {"provider": adapter.name, "error": str(e)}},
            )
            return []

    def _index_locked(self, name: str, models: List[Model]) -> None:
        for model in models:
            if model.id in self._model_index:
                continue
            self._model_index[model.id] = name
            self._models[model.id] = model

    def _drop_index_locked(self, name: str) -> None:
        for model_id in [m for m, p in self._model_index.items() if p == name]:
            del self._model_index[model_id]
            self._models.pop(model_id, None)
