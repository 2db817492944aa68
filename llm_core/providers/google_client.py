"""Google Gemini 适配器（REST 接口）。

- 非流式: POST {base_url}/models/{model}:generateContent
- 流式:   POST {base_url}/models/{model}:streamGenerateContent?alt=sse
- 模型:   GET  {base_url}/models
- 认证:   x-goog-api-key 请求头

Gemini 的消息结构与 OpenAI 不同：system 消息放进 systemInstruction，
assistant 角色叫 model，工具调用是 functionCall / functionResponse。
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from llm_core.domain.exceptions import (
    ContentFilteredError,
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
from llm_core.tools.definitions import ToolCall

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

# Gemini finishReason -> 统一 finish_reason
FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
    "MALFORMED_FUNCTION_CALL": "error",
}

_GEMINI_CAPS = (
    Capability.CHAT,
    Capability.STREAMING,
    Capability.VISION,
    Capability.TOOLS,
    Capability.JSON,
)

KNOWN_MODELS: Dict[str, Tuple[int, Tuple[str, ...]]] = {
    "gemini-3-pro-preview": (1048576, _GEMINI_CAPS + (Capability.THINKING,)),
    "gemini-3-flash-preview": (1048576, _GEMINI_CAPS + (Capability.THINKING,)),
    "gemini-2.5-pro": (1048576, _GEMINI_CAPS + (Capability.THINKING,)),
    "gemini-2.5-flash": (1048576, _GEMINI_CAPS + (Capability.THINKING,)),
    "gemini-2.5-flash-lite": (1048576, _GEMINI_CAPS),
    "gemma-3-27b-it": (8192, (Capability.CHAT, Capability.STREAMING)),
    "gemma-3-12b-it": (8192, (Capability.CHAT, Capability.STREAMING)),
}


@dataclass
class GoogleConfig(ProviderConfig):
    provider: str = "google"


class GoogleAdapter(ProviderAdapter):
    def __init__(self) -> None:
        self._config: Optional[GoogleConfig] = None
        self._known_models: Dict[str, Tuple[int, Tuple[str, ...]]] = dict(KNOWN_MODELS)

    @property
    def name(self) -> str:
        return "google"

    def initialize(self, config: ProviderConfig) -> None:
        if not isinstance(config, GoogleConfig):
            raise InvalidConfigError("invalid config type for google provider", provider=self.name)
        config.validate()
        self._config = config

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
            raise error_from_status(resp.status_code, resp.text, self.name)

        models: List[Model] = []
        for item in resp.json().get("models", []):
            if "generateContent" not in item.get("supportedGenerationMethods", ["generateContent"]):
                continue
            model_id = (item.get("name") or "").split("/", 1)[-1]
            if not model_id:
                continue
            max_tokens, caps = self._known_models.get(
                model_id, (int(item.get("inputTokenLimit") or 0), (Capability.CHAT, Capability.STREAMING))
            )
            self._known_models.setdefault(model_id, (max_tokens, caps))
            models.append(
                Model(
                    id=model_id,
                    provider=self.name,
                    name=item.get("displayName") or model_id,
                    description=item.get("description") or "",
                    max_tokens=max_tokens,
                    capabilities=caps,
                )
            )
        return models

    def validate_model(self, model: str) -> None:
        if model not in self._known_models:
            raise self._model_not_found(model)

    def complete(
        self,
        request: CompletionRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> CompletionResponse:
        cfg = self._require_config()
        payload = self._build_payload(request)
        raise_if_cancelled(cancel_event, self.name)
        try:
            with httpx.Client(timeout=cfg.timeout, trust_env=False) as client:
                resp = client.post(
                    f"{self._base_url()}/models/{request.model}:generateContent",
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(str(e), provider=self.name)
        except httpx.RequestError as e:
            raise NetworkError(str(e), provider=self.name)
        if resp.status_code >= 400:
            raise error_from_status(resp.status_code, resp.text, self.name, model=request.model)

        data = resp.json()
        self._raise_if_blocked(data, request.model)
        candidates = data.get("candidates") or []
        if not candidates:
            raise ServerError("response contained no candidates", provider=self.name, model=request.model)
        candidate = candidates[0]
        raw_reason = candidate.get("finishReason") or "STOP"
        finish_reason = FINISH_REASONS.get(raw_reason, raw_reason.lower())
        if finish_reason == "content_filter":
            raise ContentFilteredError(
                f"response blocked by safety filters ({raw_reason})",
                provider=self.name,
                model=request.model,
            )
        return CompletionResponse(
            id=data.get("responseId") or "",
            model=data.get("modelVersion") or request.model,
            provider=self.name,
            message=self._candidate_message(candidate),
            finish_reason=finish_reason,
            usage=self._usage(data.get("usageMetadata")),
            raw=data,
        )

    def stream(
        self,
        request: CompletionRequest,
        callback: StreamCallback,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        cfg = self._require_config()
        payload = self._build_payload(request)
        pipe = StreamPipe(self.name, request.model, callback, cancel_event)
        raise_if_cancelled(cancel_event, self.name)
        finish_reason = ""
        usage: Optional[Usage] = None
        tool_calls: List[ToolCall] = []
        try:
            with httpx.Client(timeout=cfg.timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    f"{self._base_url()}/models/{request.model}:streamGenerateContent",
                    params={"alt": "sse"},
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        raise error_from_status(resp.status_code, resp.text, self.name, model=request.model)
                    for data in iter_sse_data(resp.iter_lines()):
                        self._raise_if_blocked(data, request.model)
                        pipe.response_id = data.get("responseId") or pipe.response_id
                        usage = self._usage(data.get("usageMetadata")) or usage
                        for candidate in (data.get("candidates") or [])[:1]:
                            raw_reason = candidate.get("finishReason") or ""
                            if raw_reason:
                                finish_reason = FINISH_REASONS.get(raw_reason, raw_reason.lower())
                            # 被过滤的回复与 complete 一致：整个流以错误结束
                            if finish_reason == "content_filter":
                                raise ContentFilteredError(
                                    f"response blocked by safety filters ({raw_reason})",
                                    provider=self.name,
                                    model=request.model,
                                )
                            message = self._candidate_message(candidate)
                            tool_calls.extend(message.tool_calls or ())
                            pipe.emit_delta(message.content)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(str(e), provider=self.name)
        except httpx.RequestError as e:
            raise NetworkError(str(e), provider=self.name)
        pipe.finish(finish_reason or "stop", usage, tool_calls)

    # ---- 转换 ----

    def _build_payload(self, req: CompletionRequest) -> Dict[str, Any]:
        system_texts: List[str] = []
        contents: List[Dict[str, Any]] = []
        for message in req.messages:
            if message.role == "system":
                system_texts.append(message.text())
                continue
            role = "model" if message.role == "assistant" else "user"
            parts = self._message_parts(message)
            if parts:
                contents.append({"role": role, "parts": parts})

        payload: Dict[str, Any] = {"contents": contents}
        if system_texts:
            payload["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_texts)}]}

        generation = {
            "maxOutputTokens": req.max_tokens,
            "temperature": req.temperature,
            "topP": req.top_p,
            "topK": req.top_k,
            "seed": req.seed,
        }
        config = {k: v for k, v in generation.items() if v is not None}
        if req.stop:
            config["stopSequences"] = list(req.stop)
        if req.response_format == "json_object":
            config["responseMimeType"] = "application/json"
        if config:
            payload["generationConfig"] = config

        if req.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.json_schema()}
                        for t in req.tools
                    ]
                }
            ]
            mode = {"auto": "AUTO", "none": "NONE", "required": "ANY"}[req.tool_choice]
            payload["toolConfig"] = {"functionCallingConfig": {"mode": mode}}
        return payload

    @staticmethod
    def _message_parts(message: Message) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = []
        if message.content:
            parts.append({"text": message.content})
        for part in message.parts if not message.content else ():
            if isinstance(part, TextPart):
                parts.append({"text": part.text})
            elif isinstance(part, ImagePart):
                if part.base64:
                    parts.append({"inlineData": {"mimeType": "image/jpeg", "data": part.base64}})
                else:
                    parts.append({"fileData": {"mimeType": "image/jpeg", "fileUri": part.url}})
        for call in message.tool_calls or ():
            parts.append({"functionCall": {"name": call.name, "args": call.arguments}})
        if message.tool_result is not None:
            result = message.tool_result
            response = {"error": result.error} if result.error else {"content": result.content}
            parts = [{"functionResponse": {"name": result.call_id, "response": response}}]
        return parts

    @staticmethod
    def _candidate_message(candidate: Dict[str, Any]) -> Message:
        texts: List[str] = []
        calls: List[ToolCall] = []
        for idx, part in enumerate((candidate.get("content") or {}).get("parts") or []):
            if part.get("thought"):
                continue
            if "text" in part:
                texts.append(part["text"])
            elif "functionCall" in part:
                fn = part["functionCall"]
                calls.append(
                    ToolCall(id=fn.get("id") or f"call_{idx}", name=fn.get("name") or "", arguments=fn.get("args") or {})
                )
        return Message(role="assistant", content="".join(texts), tool_calls=tuple(calls) or None)

    @staticmethod
    def _usage(meta: Optional[Dict[str, Any]]) -> Optional[Usage]:
        if not meta:
            return None
        prompt = int(meta.get("promptTokenCount") or 0)
        completion = int(meta.get("candidatesTokenCount") or 0)
        total = int(meta.get("totalTokenCount") or 0) or prompt + completion
        return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    def _raise_if_blocked(self, data: Dict[str, Any], model: str) -> None:
        reason = (data.get("promptFeedback") or {}).get("blockReason")
        if reason:
            raise ContentFilteredError(f"prompt blocked by safety filters ({reason})", provider=self.name, model=model)

    def _require_config(self) -> GoogleConfig:
        if self._config is None:
            raise self._not_initialized()
        return self._config

    def _base_url(self) -> str:
        return (self._require_config().base_url or DEFAULT_BASE_URL).rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": self._require_config().api_key,
            "Content-Type": "application/json",
        }
