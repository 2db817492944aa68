"""Replicate 适配器（异步任务型后端）。

Replicate 没有 chat/completions 接口，一次调用分两步：
1. 提交 prediction：POST /models/{owner}/{name}/predictions
   （模型写成 owner/name:version 时改为 POST /predictions 并带 version）。
2. 按 poll_interval 轮询 GET /predictions/{id}，直到状态为
   succeeded / failed / canceled。

对话历史被拼成 System:/Human:/Assistant: 形式的单个 prompt。
流式调用是模拟的：轮询到终态后一次性投递全文，再投递终止 chunk。
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from llm_core.domain.exceptions import (
    CancelledError,
    InvalidConfigError,
    NetworkError,
    RequestTimeoutError,
    ServerError,
    error_from_status,
)
from llm_core.domain.models import Capability, CompletionRequest, CompletionResponse, Message, Model, Usage
from llm_core.domain.tokens import CHARS_PER_TOKEN
from llm_core.providers.base import ProviderAdapter, ProviderConfig, StreamCallback
from llm_core.providers.streaming import StreamPipe, raise_if_cancelled

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.replicate.com/v1"
TERMINAL_STATUSES = ("succeeded", "failed", "canceled")

_CHAT_CAPS = (Capability.CHAT, Capability.STREAMING)

SUPPORTED_MODELS: List[Model] = [
    Model(
        id="meta/meta-llama-3-8b-instruct",
        provider="replicate",
        name="Meta Llama 3 8B Instruct",
        description="Llama 3 8B instruction-tuned model",
        max_tokens=8192,
        capabilities=_CHAT_CAPS,
    ),
    Model(
        id="meta/meta-llama-3-70b-instruct",
        provider="replicate",
        name="Meta Llama 3 70B Instruct",
        description="Llama 3 70B instruction-tuned model",
        max_tokens=8192,
        capabilities=_CHAT_CAPS,
    ),
    Model(
        id="mistralai/mistral-7b-instruct-v0.2",
        provider="replicate",
        name="Mistral 7B Instruct",
        description="Mistral 7B instruction-tuned model",
        max_tokens=32768,
        capabilities=_CHAT_CAPS,
    ),
    Model(
        id="mistralai/mixtral-8x7b-instruct-v0.1",
        provider="replicate",
        name="Mixtral 8x7B Instruct",
        description="Mixtral 8x7B mixture-of-experts model",
        max_tokens=32768,
        capabilities=_CHAT_CAPS,
    ),
]


@dataclass
class ReplicateConfig(ProviderConfig):
    provider: str = "replicate"
    poll_interval: float = 1.0
    poll_timeout: float = 300.0
    webhook_url: str = ""
    extra_inputs: Dict[str, Any] = field(default_factory=dict)


def build_prompt(messages: List[Message]) -> str:
    """把消息历史拼成单个 prompt，末尾留出 Assistant: 供模型续写。"""

    labels = {"system": "System", "user": "Human", "assistant": "Assistant"}
    parts = []
    for message in messages:
        text = message.text()
        label = labels.get(message.role)
        if not text or label is None:
            continue
        parts.append(f"{label}: {text}")
    return "\n\n".join(parts) + "\n\nAssistant: "


class ReplicateAdapter(ProviderAdapter):
    def __init__(self) -> None:
        self._config: Optional[ReplicateConfig] = None

    @property
    def name(self) -> str:
        return "replicate"

    def initialize(self, config: ProviderConfig) -> None:
        if not isinstance(config, ReplicateConfig):
            raise InvalidConfigError("invalid config type for replicate provider", provider=self.name)
        config.validate()
        if config.poll_interval < 0 or config.poll_timeout <= 0:
            raise InvalidConfigError("poll_interval and poll_timeout must be positive", provider=self.name)
        self._config = config

    def get_models(self, cancel_event: Optional[threading.Event] = None) -> List[Model]:
        self._require_config()
        return list(SUPPORTED_MODELS)

    def validate_model(self, model: str) -> None:
        base = model.split(":", 1)[0]
        if base not in {m.id for m in SUPPORTED_MODELS}:
            raise self._model_not_found(model)

    def complete(
        self,
        request: CompletionRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> CompletionResponse:
        cfg = self._require_config()
        raise_if_cancelled(cancel_event, self.name)
        try:
            with httpx.Client(timeout=cfg.timeout, trust_env=False) as client:
                prediction = self._submit(client, request)
                prediction = self._wait(client, prediction, request.model, cancel_event)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(str(e), provider=self.name)
        except httpx.RequestError as e:
            raise NetworkError(str(e), provider=self.name)
        return self._to_response(prediction, request.model)

    def stream(
        self,
        request: CompletionRequest,
        callback: StreamCallback,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        pipe = StreamPipe(self.name, request.model, callback, cancel_event)
        pipe.emit_single_shot(self.complete(request, cancel_event))

    # ---- 提交与轮询 ----

    def _submit(self, client: httpx.Client, request: CompletionRequest) -> Dict[str, Any]:
        cfg = self._require_config()
        body: Dict[str, Any] = {"input": self._build_input(request)}
        if cfg.webhook_url:
            body["webhook"] = cfg.webhook_url
            body["webhook_events_filter"] = ["completed"]
        model, _, version = request.model.partition(":")
        if version:
            body["version"] = version
            url = f"{self._base_url()}/predictions"
        else:
            url = f"{self._base_url()}/models/{model}/predictions"
        resp = client.post(url, json=body, headers=self._headers())
        self._raise_for_status(resp, request.model)
        return resp.json()

    def _wait(
        self,
        client: httpx.Client,
        prediction: Dict[str, Any],
        model: str,
        cancel_event: Optional[threading.Event],
    ) -> Dict[str, Any]:
        cfg = self._require_config()
        deadline = time.monotonic() + cfg.poll_timeout
        while prediction.get("status") not in TERMINAL_STATUSES:
            if time.monotonic() >= deadline:
                self._cancel(client, prediction)
                raise RequestTimeoutError(
                    f"prediction {prediction.get('id')} did not finish within {cfg.poll_timeout}s",
                    provider=self.name,
                    model=model,
                )
            if self._pause(cfg.poll_interval, cancel_event):
                self._cancel(client, prediction)
                raise CancelledError("request cancelled by caller", provider=self.name)
            resp = client.get(f"{self._base_url()}/predictions/{prediction['id']}", headers=self._headers())
            if resp.status_code >= 400:
                self._cancel(client, prediction)
                raise self._poll_error(resp, model)
            prediction = resp.json()
            logger.debug(
                "Polled prediction",
                extra={"extra": {"prediction_id": prediction.get("id"), "status": prediction.get("status")}},
            )

        status = prediction["status"]
        if status == "failed":
            raise ServerError(
                f"prediction failed: {prediction.get('error') or 'unknown error'}",
                provider=self.name,
                model=model,
            )
        if status == "canceled":
            raise CancelledError(f"prediction {prediction.get('id')} was canceled", provider=self.name)
        return prediction

    @staticmethod
    def _pause(seconds: float, cancel_event: Optional[threading.Event]) -> bool:
        """等待一个轮询间隔，期间被取消时返回 True。"""

        if cancel_event is None:
            time.sleep(seconds)
            return False
        return cancel_event.wait(seconds)

    def _cancel(self, client: httpx.Client, prediction: Dict[str, Any]) -> None:
        # 尽力取消远端任务，失败只记日志
        try:
            client.post(f"{self._base_url()}/predictions/{prediction['id']}/cancel", headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning(
                "Failed to cancel prediction",
                extra={"extra": {"prediction_id": prediction.get("id"), "error": str(e)}},
            )

    # ---- 转换 ----

    def _build_input(self, req: CompletionRequest) -> Dict[str, Any]:
        cfg = self._require_config()
        inputs: Dict[str, Any] = {"prompt": build_prompt(req.messages)}
        optional = {
            "max_new_tokens": req.max_tokens,
            "temperature": req.temperature,
            "top_p": req.top_p,
            "top_k": req.top_k,
            "seed": req.seed,
        }
        inputs.update({k: v for k, v in optional.items() if v is not None})
        if req.stop:
            inputs["stop_sequences"] = ",".join(req.stop)
        inputs.update(cfg.extra_inputs)
        return inputs

    def _to_response(self, prediction: Dict[str, Any], model: str) -> CompletionResponse:
        output = prediction.get("output")
        if isinstance(output, list):
            content = "".join(part for part in output if isinstance(part, str))
        elif isinstance(output, str):
            content = output
        else:
            content = ""
        # Replicate 不返回 token 统计，按字符数粗略估算
        metrics = prediction.get("metrics") or {}
        completion_tokens = int(metrics.get("output_token_count") or len(content) // CHARS_PER_TOKEN)
        prompt_tokens = int(metrics.get("input_token_count") or 0)
        return CompletionResponse(
            id=prediction.get("id") or "",
            model=model,
            provider=self.name,
            message=Message(role="assistant", content=content),
            finish_reason="stop",
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            raw=prediction,
        )

    def _raise_for_status(self, resp: Any, model: str) -> None:
        if resp.status_code >= 400:
            raise error_from_status(resp.status_code, resp.text, self.name, model=model)

    def _poll_error(self, resp: Any, model: str) -> Exception:
        """轮询失败的翻译：prediction 已经提交，404 等不代表模型不存在。"""

        if resp.status_code in (401, 403, 408, 429, 504):
            return error_from_status(resp.status_code, resp.text, self.name, model=model)
        return ServerError(
            f"polling prediction failed: {(resp.text or '').strip() or f'HTTP {resp.status_code}'}",
            http_status=resp.status_code,
            provider=self.name,
            model=model,
        )

    def _require_config(self) -> ReplicateConfig:
        if self._config is None:
            raise self._not_initialized()
        return self._config

    def _base_url(self) -> str:
        return (self._require_config().base_url or DEFAULT_BASE_URL).rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._require_config().api_key}",
            "Content-Type": "application/json",
        }
