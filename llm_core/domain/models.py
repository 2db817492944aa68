"""统一的消息、请求与响应数据模型。

本模块定义了在不同 Provider 之间共享的标准数据结构：

- Message: 一条对话消息（system/user/assistant/tool），追加到 Conversation 后不可变。
- CompletionRequest / CompletionResponse: 一次完整的补全请求与结果。
- StreamResponse: 流式回调中的单个增量；finish_reason 只在最后一个 chunk 上非空。
- Model / ModelCatalog: 模型描述及按 Provider、能力查询的目录。

所有 Provider 适配器都只依赖这些模型，并负责在各自的 API JSON 与这些模型之间做转换。
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from llm_core.tools.definitions import ToolCall, ToolDef, ToolResult


# 消息角色（与 OpenAI 等厂商的 role 字段对应）
Role = Literal["system", "user", "assistant", "tool"]
ROLES: Tuple[str, ...] = ("system", "user", "assistant", "tool")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TextPart:
    """结构化内容中的文本片段。"""

    text: str
    type: str = "text"


@dataclass(frozen=True)
class ImagePart:
    """结构化内容中的图片，URL 与 base64 二选一。"""

    url: str = ""
    base64: str = ""
    detail: str = "auto"
    type: str = "image"


ContentPart = Union[TextPart, ImagePart]


@dataclass(frozen=True)
class Message:
    """一条对话消息，既可用于请求，也可用于响应。

    - content: 纯文本内容（简单消息只用这个字段）。
    - parts: 结构化内容（文本 + 图片），content 为空时从这里取文本。
    - tool_calls: assistant 消息里模型发起的工具调用。
    - tool_result: role="tool" 时回填的工具结果。
    - meta: 附加元数据，不发给 Provider，主要用于日志与上层展示。
    """

    role: Role
    content: str = ""
    parts: Tuple[ContentPart, ...] = ()
    tool_calls: Optional[Tuple[ToolCall, ...]] = None
    tool_result: Optional[ToolResult] = None
    meta: Dict[str, Any] = field(default_factory=dict, compare=False)
    timestamp: datetime = field(default_factory=_utcnow, compare=False)

    @classmethod
    def text_message(cls, role: Role, text: str, **meta: Any) -> "Message":
        return cls(role=role, content=text, meta=dict(meta))

    @classmethod
    def content_message(cls, role: Role, parts: List[ContentPart]) -> "Message":
        return cls(role=role, parts=tuple(parts))

    def text(self) -> str:
        """返回消息的文本：优先 content，其次第一个文本片段。"""

        if self.content:
            return self.content
        for part in self.parts:
            if isinstance(part, TextPart):
                return part.text
        if self.tool_result is not None:
            return self.tool_result.content
        return ""

    def has_images(self) -> bool:
        return any(isinstance(part, ImagePart) for part in self.parts)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "role": self.role,
            "content": self.text(),
            "timestamp": self.timestamp.isoformat(),
        }
        if self.tool_calls:
            payload["tool_calls"] = [
                {"id": c.id, "name": c.name, "arguments": c.arguments} for c in self.tool_calls
            ]
        if self.tool_result is not None:
            payload["tool_result"] = {
                "call_id": self.tool_result.call_id,
                "content": self.tool_result.content,
                "error": self.tool_result.error,
            }
        if self.meta:
            payload["meta"] = dict(self.meta)
        return payload


@dataclass
class CompletionRequest:
    """一次完整的补全请求。

    未设置的采样参数保持 None，由 Client.apply_defaults 用全局默认值填充，
    或由适配器直接省略。
    """

    messages: List[Message]
    model: str = ""
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    seed: Optional[int] = None
    stop: List[str] = field(default_factory=list)
    tools: Optional[List[ToolDef]] = None
    tool_choice: Literal["auto", "none", "required"] = "auto"
    response_format: Optional[str] = None  # "text" / "json_object"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def with_model(self, model: str) -> "CompletionRequest":
        return replace(self, model=model)

    def copy(self) -> "CompletionRequest":
        return replace(
            self,
            messages=list(self.messages),
            stop=list(self.stop),
            metadata=dict(self.metadata),
        )


@dataclass(frozen=True)
class Usage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional["Usage"]:
        if not raw:
            return None
        prompt = int(raw.get("prompt_tokens", 0) or 0)
        completion = int(raw.get("completion_tokens", 0) or 0)
        total = int(raw.get("total_tokens", 0) or 0) or prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass
class CompletionResponse:
    """一次补全调用的最终结果。raw 保留原始响应 JSON，用于调试。"""

    id: str
    model: str
    provider: str
    message: Message
    finish_reason: str = "stop"
    usage: Optional[Usage] = None
    created: Optional[int] = None
    raw: Optional[dict] = None

    @property
    def text(self) -> str:
        return self.message.text()


@dataclass
class StreamResponse:
    """流式回调的单个 chunk。

    非终止 chunk：delta 文本非空，finish_reason 为空串。
    终止 chunk：finish_reason 非空；usage 仅在 Provider 上报时存在，
    流式拼装完成的工具调用放在终止 chunk 的 delta.tool_calls 上。
    """

    id: str
    model: str
    provider: str
    delta: Message
    finish_reason: str = ""
    usage: Optional[Usage] = None

    @property
    def is_final(self) -> bool:
        return bool(self.finish_reason)

    @property
    def text(self) -> str:
        return self.delta.text()


class Capability:
    """模型能力常量。"""

    CHAT = "chat"
    COMPLETION = "completion"
    VISION = "vision"
    AUDIO = "audio"
    TOOLS = "tools"
    STREAMING = "streaming"
    JSON = "json"
    THINKING = "thinking"


@dataclass
class Model:
    """单个模型的描述。"""

    id: str
    provider: str
    name: str = ""
    description: str = ""
    max_tokens: int = 0
    capabilities: Tuple[str, ...] = (Capability.CHAT,)
    input_cost: float = 0.0  # 每 1M token 的价格
    output_cost: float = 0.0

    def has_capability(self, capability: str) -> bool:
        return capability in self.capabilities

    @property
    def full_name(self) -> str:
        return f"{self.provider}/{self.id}"

    def __str__(self) -> str:
        return self.full_name


class ModelCatalog:
    """按 provider/id 索引的模型目录。"""

    def __init__(self) -> None:
        self._models: Dict[str, Model] = {}

    def register(self, model: Model) -> None:
        self._models[model.full_name] = model

    def get(self, provider: str, model_id: str) -> Optional[Model]:
        return self._models.get(f"{provider}/{model_id}")

    def by_provider(self, provider: str) -> List[Model]:
        return [m for m in self._models.values() if m.provider == provider]

    def by_capability(self, capability: str) -> List[Model]:
        return [m for m in self._models.values() if m.has_capability(capability)]

    def list(self) -> List[Model]:
        return list(self._models.values())

    def __len__(self) -> int:
        return len(self._models)
