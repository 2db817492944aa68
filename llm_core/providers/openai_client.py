"""OpenAI 兼容协议的 Provider 适配器。

OpenAI、Kimi (Moonshot)、GLM (BigModel) 都使用同一套 chat/completions 端点：
- URL: {base_url}/chat/completions，模型列表 {base_url}/models
- 认证: Authorization: Bearer <api_key>
- 流式: SSE，每行 `data: {...}`，以 `data: [DONE]` 结束

本模块负责：
1. 把统一的 CompletionRequest 转成 chat/completions 请求 JSON。
2. 发送 HTTP 请求，把网络 / HTTP 错误翻译为统一错误类型。
3. 把响应 JSON（含工具调用）解析为 CompletionResponse；流式时逐个增量投递给 StreamPipe。
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

from llm_core.domain.exceptions import (
    InvalidConfigError,
    NetworkError,
    RequestTimeoutError,
    ServerError,
    error_from_status,
)
from llm_core.domain.models import (
    Capability,
    CompletionRequest,
    CompletionResponse,
    ImagePart,
    Message,
    Model,
    TextPart,
    Usage,
)
from llm_core.providers.base import ProviderAdapter, ProviderConfig, StreamCallback
from llm_core.providers.streaming import StreamPipe, iter_sse_data, raise_if_cancelled
from llm_core.tools.definitions import ToolCall, ToolDef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompatiblePreset:
    """某个 OpenAI 兼容厂商的默认地址与已知模型。"""

    name: str
    base_url: str
    models: Dict[str, int]  # model id -> 最大上下文 token
    stream_usage: bool = False


OPENAI_PRESET = CompatiblePreset(
    name="openai",
    base_url="https://api.openai.com/v1",
    models={
        "gpt-4": 8192,
        "gpt-4-turbo": 128000,
        "gpt-4o": 128000,
        "gpt-4o-mini": 128000,
        "gpt-5": 200000,
        "o1-preview": 128000,
        "o1-mini": 128000,
        "o3-mini": 200000,
    },
    stream_usage=True,
)

KIMI_PRESET = CompatiblePreset(
    name="kimi",
    base_url="https://api.moonshot.cn/v1",
    models={"kimi-k2-turbo-preview": 131072, "moonshot-v1-8k": 8192, "moonshot-v1-32k": 32768},
)

GLM_PRESET = CompatiblePreset(
    name="glm",
    base_url="https://open.bigmodel.cn/api/paas/v4",
    models={"glm-4.6": 131072, "glm-4-flash": 131072},
)

PRESETS: Dict[str, CompatiblePreset] = {p.name: p for p in (OPENAI_PRESET, KIMI_PRESET, GLM_PRESET)}


@dataclass
class OpenAIConfig(ProviderConfig):
    """OpenAI 兼容 Provider 的配置。"""

    provider: str = "openai"
    organization: str = ""
    project: str = ""
    user: str = ""
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    extra_headers: Dict[str, str] = field(default_factory=dict)


def _capabilities_for(model_id: str) -> Tuple[str, ...]:
    caps = [Capability.CHAT, Capability.STREAMING, Capability.TOOLS]
    if any(tag in model_id for tag in ("gpt-4", "gpt-5", "o1", "o3")):
        caps.append(Capability.JSON)
    if "4o" in model_id or "gpt-5" in model_id:
        caps.append(Capability.VISION)
    return tuple(caps)


def _retry_after(resp: Any) -> Optional[float]:
    headers = getattr(resp, "headers", None) or {}
    value = headers.get("retry-after") or headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class OpenAIAdapter(ProviderAdapter):
    """OpenAI 兼容协议的客户端实现（openai / kimi / glm 共用）。"""

    def __init__(self, preset: CompatiblePreset = OPENAI_PRESET):
        self._preset = preset
        self._config: Optional[OpenAIConfig] = None
        self._known_models: Dict[str, int] = dict(preset.models)

    @property
    def name(self) -> str:
        return self._preset.name

    def initialize(self, config: ProviderConfig) -> None:
        if not isinstance(config, OpenAIConfig):
            raise InvalidConfigError(f"invalid config type for {self.name} provider", provider=self.name)
        config.validate()
        self._config = config

    # ---- 模型 ----

    def get_models(self, cancel_event: Optional[threading.Event] = None) -> List[Model]:
        cfg = self._require_config()
        raise_if_cancelled(cancel_event, self.name)
        try:
            with httpx.Client(timeout=cfg.timeout, trust_env=False) as client:
                resp = client.get(f"{self._base_url()}/models", headers=self._headers())
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(str(e), provider=self.name)
        except httpx.RequestError as e:
            raise NetworkError(str(e), provider=self.name)
        if resp.status_code >= 400:
            raise error_from_status(resp.status_code, resp.text, self.name, retry_after=_retry_after(resp))
        models: List[Model] = []
        for item in resp.json().get("data", []):
            model_id = item.get("id")
            if not model_id:
                continue
            max_tokens = self._known_models.get(model_id, 0)
            self._known_models.setdefault(model_id, max_tokens)
            models.append(
                Model(
                    id=model_id,
                    provider=self.name,
                    name=model_id,
                    description=f"{self.name} model: {model_id}",
                    max_tokens=max_tokens,
                    capabilities=_capabilities_for(model_id),
                )
            )
        return models

    def validate_model(self, model: str) -> None:
        if model not in self._known_models:
            raise self._model_not_found(model)

    # ---- 非流式 ----

    def complete(
        self,
        request: CompletionRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> CompletionResponse:
        cfg = self._require_config()
        payload = self._build_payload(request, stream=False)
        raise_if_cancelled(cancel_event, self.name)
        try:
            with httpx.Client(timeout=cfg.timeout, trust_env=False) as client:
                resp = client.post(
                    f"{self._base_url()}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(str(e), provider=self.name)
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接被拒绝等
            raise NetworkError(str(e), provider=self.name)
        if resp.status_code >= 400:
            raise error_from_status(
                resp.status_code, resp.text, self.name, retry_after=_retry_after(resp), model=request.model
            )
        return self._parse_response(resp.json(), request)

    # ---- 流式 ----

    def stream(
        self,
        request: CompletionRequest,
        callback: StreamCallback,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        cfg = self._require_config()
        payload = self._build_payload(request, stream=True)
        pipe = StreamPipe(self.name, request.model, callback, cancel_event)
        raise_if_cancelled(cancel_event, self.name)
        finish_reason = ""
        usage: Optional[Usage] = None
        tool_fragments: Dict[int, Dict[str, Any]] = {}
        try:
            with httpx.Client(timeout=cfg.timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    f"{self._base_url()}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        raise error_from_status(
                            resp.status_code,
                            resp.text,
                            self.name,
                            retry_after=_retry_after(resp),
                            model=request.model,
                        )
                    for data in iter_sse_data(resp.iter_lines()):
                        pipe.response_id = data.get("id") or pipe.response_id
                        chunk_usage = Usage.from_dict(data.get("usage"))
                        if chunk_usage is not None:
                            usage = chunk_usage
                        for choice in data.get("choices", [])[:1]:
                            delta = choice.get("delta") or {}
                            self._collect_tool_fragments(delta, tool_fragments)
                            pipe.emit_delta(delta.get("content") or "")
                            if choice.get("finish_reason"):
                                finish_reason = choice["finish_reason"]
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(str(e), provider=self.name)
        except httpx.RequestError as e:
            raise NetworkError(str(e), provider=self.name)
        calls = [self._finish_tool_call(i, f) for i, f in sorted(tool_fragments.items())]
        pipe.finish(finish_reason or "stop", usage, calls)

    # ---- 辅助方法 ----

    def _require_config(self) -> OpenAIConfig:
        if self._config is None:
            raise self._not_initialized()
        return self._config

    def _base_url(self) -> str:
        cfg = self._require_config()
        return (cfg.base_url or self._preset.base_url).rstrip("/")

    def _headers(self) -> Dict[str, str]:
        cfg = self._require_config()
        headers = {
            "Authorization": f"Bearer {cfg.api_key}",
            "Content-Type": "application/json",
        }
        if cfg.organization:
            headers["OpenAI-Organization"] = cfg.organization
        if cfg.project:
            headers["OpenAI-Project"] = cfg.project
        headers.update(cfg.extra_headers)
        return headers

    def _build_payload(self, req: CompletionRequest, stream: bool) -> Dict[str, Any]:
        """将 CompletionRequest 转成 chat/completions 请求 JSON，未设置的参数不下发。"""

        cfg = self._require_config()
        payload: Dict[str, Any] = {
            "model": req.model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "stream": stream,
        }
        optional = {
            "max_tokens": req.max_tokens,
            "temperature": req.temperature,
            "top_p": req.top_p,
            "seed": req.seed,
            "presence_penalty": cfg.presence_penalty,
            "frequency_penalty": cfg.frequency_penalty,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        if req.stop:
            payload["stop"] = list(req.stop)
        if cfg.user:
            payload["user"] = cfg.user
        if req.response_format:
            payload["response_format"] = {"type": req.response_format}
        # 工具调用：按 function tool 规范转换
        if req.tools:
            payload["tools"] = [self._serialize_tool(tool) for tool in req.tools]
            payload["tool_choice"] = req.tool_choice
        if stream and self._preset.stream_usage:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _parse_response(self, data: dict, req: CompletionRequest) -> CompletionResponse:
        choices = data.get("choices") or []
        if not choices:
            raise ServerError("response contained no choices", provider=self.name, model=req.model)
        choice = choices[0]
        return CompletionResponse(
            id=data.get("id") or "",
            model=data.get("model") or req.model,
            provider=self.name,
            message=self._build_message(choice.get("message") or {}),
            finish_reason=choice.get("finish_reason") or "stop",
            usage=Usage.from_dict(data.get("usage")),
            created=data.get("created"),
            raw=data,
        )

    def _build_message(self, payload: Dict[str, Any]) -> Message:
        """把单条厂商 message 转换为 Message，兼容 tool_calls 与旧版 function_call。"""

        tool_calls: List[ToolCall] = []
        for idx, call in enumerate(payload.get("tool_calls") or []):
            func = call.get("function") or {}
            tool_calls.append(
                ToolCall(
                    id=call.get("id") or f"tool_call_{idx}",
                    name=func.get("name") or call.get("name") or "",
                    arguments=self._parse_arguments(func.get("arguments")),
                )
            )
        function_call = payload.get("function_call")
        if function_call:
            tool_calls.append(
                ToolCall(
                    id=function_call.get("id") or "function_call",
                    name=function_call.get("name") or "",
                    arguments=self._parse_arguments(function_call.get("arguments")),
                )
            )
        return Message(
            role=payload.get("role") or "assistant",
            content=payload.get("content") or "",
            tool_calls=tuple(tool_calls) or None,
        )

    @staticmethod
    def _collect_tool_fragments(delta: Dict[str, Any], fragments: Dict[int, Dict[str, Any]]) -> None:
        # 流式工具调用按 index 分片下发，arguments 需要拼接
        for call in delta.get("tool_calls") or []:
            slot = fragments.setdefault(call.get("index", 0), {"id": "", "name": "", "arguments": ""})
            func = call.get("function") or {}
            slot["id"] = call.get("id") or slot["id"]
            slot["name"] = func.get("name") or slot["name"]
            slot["arguments"] += func.get("arguments") or ""

    def _finish_tool_call(self, index: int, fragment: Dict[str, Any]) -> ToolCall:
        return ToolCall(
            id=fragment["id"] or f"tool_call_{index}",
            name=fragment["name"],
            arguments=self._parse_arguments(fragment["arguments"]),
        )

    @staticmethod
    def _parse_arguments(raw: Any) -> Dict[str, Any]:
        """arguments 通常是 JSON 字符串，解析失败时保留原文到 `_raw`。"""

        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str) and raw:
            try:
                return json.loads(raw)
            except json.JSONDecodeError:
                return {"_raw": raw}
        return {}

    def _message_to_payload(self, message: Message) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": message.role}
        if message.parts and not message.content:
            payload["content"] = [self._part_to_payload(p) for p in message.parts]
        elif message.content:
            payload["content"] = message.content
        if message.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments, ensure_ascii=False),
                    },
                }
                for call in message.tool_calls
            ]
        if message.tool_result is not None:
            payload["tool_call_id"] = message.tool_result.call_id
            payload["content"] = message.tool_result.content
        return payload

    @staticmethod
    def _part_to_payload(part: Any) -> Dict[str, Any]:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text}
        if isinstance(part, ImagePart):
            url = part.url or f"data:image/jpeg;base64,{part.base64}"
            return {"type": "image_url", "image_url": {"url": url, "detail": part.detail}}
        raise InvalidConfigError(f"unsupported content part: {part!r}")

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.json_schema(),
            },
        }
