"""Token 估算。

不依赖具体厂商的分词器：按约 4 个字符一个 token 估算，并给每条消息
加上固定的角色/分隔符开销。Conversation 的预算只需要一个稳定、可加的
估算值，所以同一条消息总是得到同一个结果。
"""

import json
import math
from typing import Iterable

from llm_core.domain.models import Message

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4
IMAGE_TOKENS = 85


def estimate_text_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(message: Message) -> int:
    """估算单条消息的 token 数（文本 + 工具调用参数 + 图片 + 固定开销）。"""

    tokens = MESSAGE_OVERHEAD_TOKENS + estimate_text_tokens(message.text())
    for call in message.tool_calls or ():
        tokens += estimate_text_tokens(call.name)
        tokens += estimate_text_tokens(json.dumps(call.arguments, ensure_ascii=False))
    if message.has_images():
        tokens += IMAGE_TOKENS * sum(1 for p in message.parts if p.type == "image")
    return tokens


def estimate_messages_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)
