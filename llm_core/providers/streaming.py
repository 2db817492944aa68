"""流式输出的统一管道。

三种底层形态被归一到同一个回调协议：

1. 原生 token 流（OpenAI / Gemini 的 SSE）：每个增量调用一次 emit_delta。
2. 同步单次回复：emit_single_shot，一个完整增量 + 一个终止 chunk。
3. 提交任务后轮询（Replicate）：轮询到终态后同样走 emit_single_shot。

协议：
- 非终止 chunk 的 delta 文本非空、finish_reason 为空；
- 最后恰好一次终止 chunk（finish_reason 非空，usage 与拼装完成的工具调用如果有则随之上报）；
- 回调抛异常后不再投递任何 chunk，异常原样向上抛；
- 每次投递前检查 cancel_event，取消后抛 CancelledError。

回调是同步的，适配器读下一个 chunk 之前一定会等回调返回，所以不会堆积未投递的数据。
"""

import json
import logging
import threading
from typing import Any, Dict, Iterator, Optional, Sequence

from llm_core.domain.exceptions import CancelledError
from llm_core.domain.models import CompletionResponse, Message, StreamResponse, Usage
from llm_core.providers.base import StreamCallback
from llm_core.tools.definitions import ToolCall

logger = logging.getLogger(__name__)


def raise_if_cancelled(cancel_event: Optional[threading.Event], provider: Optional[str] = None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise CancelledError("request cancelled by caller", provider=provider)


class StreamPipe:
    """单次流式调用的投递器（单生产者 / 单消费者）。"""

    def __init__(
        self,
        provider: str,
        model: str,
        callback: StreamCallback,
        cancel_event: Optional[threading.Event] = None,
        response_id: str = "",
    ):
        self.provider = provider
        self.model = model
        self.response_id = response_id
        self._callback = callback
        self._cancel_event = cancel_event
        self._parts: list = []
        self._finished = False
        self._failed = False

    @property
    def text(self) -> str:
        """已投递的所有非终止增量按顺序拼接的文本。"""

        return "".join(self._parts)

    @property
    def finished(self) -> bool:
        return self._finished

    def emit_delta(self, text: str) -> None:
        """投递一个非终止增量；空文本直接丢弃。"""

        if not text:
            return
        self._deliver(
            StreamResponse(
                id=self.response_id,
                model=self.model,
                provider=self.provider,
                delta=Message(role="assistant", content=text),
            )
        )
        self._parts.append(text)

    def finish(
        self,
        finish_reason: str = "stop",
        usage: Optional[Usage] = None,
        tool_calls: Optional[Sequence[ToolCall]] = None,
    ) -> None:
        """投递唯一的终止 chunk；工具调用只随终止 chunk 上报。"""

        if self._finished:
            raise RuntimeError("stream already finished")
        self._deliver(
            StreamResponse(
                id=self.response_id,
                model=self.model,
                provider=self.provider,
                delta=Message(role="assistant", tool_calls=tuple(tool_calls) if tool_calls else None),
                finish_reason=finish_reason or "stop",
                usage=usage,
            )
        )
        self._finished = True

    def emit_single_shot(self, response: CompletionResponse) -> None:
        """没有原生流的后端：整段文本作为一个增量，紧跟终止 chunk。"""

        if response.id:
            self.response_id = response.id
        self.emit_delta(response.text)
        self.finish(response.finish_reason, response.usage, response.message.tool_calls)

    def _deliver(self, chunk: StreamResponse) -> None:
        if self._finished or self._failed:
            raise RuntimeError("stream is closed, no more chunks can be delivered")
        try:
            raise_if_cancelled(self._cancel_event, self.provider)
            self._callback(chunk)
        except BaseException:
            self._failed = True
            raise


def iter_sse_data(lines: Iterator[str]) -> Iterator[Dict[str, Any]]:
    """解析 SSE 文本行，逐个产出 data: 负载的 JSON。

    跳过空行、注释行、非 JSON 行和 [DONE] 标记。
    """

    for line in lines:
        if not line:
            continue
        data_str = line
        if data_str.startswith(":"):
            continue
        if data_str.startswith("data:"):
            data_str = data_str[5:].strip()
        else:
            data_str = data_str.strip()
        if not data_str or data_str == "[DONE]":
            continue
        try:
            yield json.loads(data_str)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON stream line: %s", data_str[:80])
            continue
