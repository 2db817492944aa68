"""工具调用相关的数据结构。

- ToolDef / ToolParam: 随 CompletionRequest 一起声明给模型的可调用工具。
- ToolCall: 模型在回复中发起的一次工具调用。
- ToolResult: 调用方执行工具后回填给模型的结果（role="tool" 的消息携带）。

各 Provider 适配器负责把 ToolDef 序列化为自己的 schema。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolDef:
    """一个可供 LLM 调用的工具定义。"""

    name: str
    description: str
    params: Dict[str, ToolParam] = field(default_factory=dict)

    def json_schema(self) -> Dict[str, Any]:
        """参数的 JSON Schema（object 类型），供各厂商复用。"""

        properties: Dict[str, Any] = {}
        required: List[str] = []
        for name, param in self.params.items():
            schema = dict(param.schema or {"type": "string"})
            if param.description:
                schema["description"] = param.description
            properties[name] = schema
            if param.required:
                required.append(name)
        return {"type": "object", "properties": properties, "required": required}


@dataclass(frozen=True)
class ToolCall:
    """模型发起的一次工具调用请求。"""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    """工具执行结果的封装（文本形式）。"""

    call_id: str
    content: str
    error: Optional[str] = None
