"""绑定 Conversation 的一问一答。

ChatSession 负责把“追加 user 消息 -> 调用模型 -> 追加 assistant 回复”
作为一个整体：调用失败（含取消、回调异常、空回复）时撤回刚追加的 user
消息，会话里只保留完整的轮次。
"""

import logging
import threading
from typing import Optional

from llm_core.domain.conversation import Conversation
from llm_core.domain.exceptions import ServerError
from llm_core.domain.models import CompletionRequest, CompletionResponse, Message, StreamResponse
from llm_core.providers.base import StreamCallback
from llm_core.runtime.client import Client
from llm_core.runtime.retry import RetryConfig

logger = logging.getLogger(__name__)


class ChatSession:
    def __init__(
        self,
        client: Client,
        conversation: Conversation,
        model: Optional[str] = None,
        retry_config: Optional[RetryConfig] = None,
        auto_truncate: bool = False,
        use_retry: bool = True,
    ):
        self.client = client
        self.conversation = conversation
        self.model = model
        self.retry_config = retry_config
        self.auto_truncate = auto_truncate
        self.use_retry = use_retry

    def send(self, user_text: str, cancel_event: Optional[threading.Event] = None) -> CompletionResponse:
        """发送一条 user 消息并把回复写回会话。"""

        self._add_user_message(user_text)
        try:
            request = self._build_request()
            if self.use_retry:
                response = self.client.complete_with_retry(request, self.retry_config, cancel_event)
            else:
                response = self.client.complete(request, cancel_event)
            if not response.text:
                raise ServerError("provider returned an empty reply", provider=response.provider)
            self.conversation.add_assistant_message(response.text)
        except BaseException:
            self._rollback()
            raise
        return response

    def send_stream(
        self,
        user_text: str,
        callback: StreamCallback,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """流式发送；终止 chunk 到达后才把完整回复写入会话。

        Returns:
            拼接后的完整回复文本。
        """

        self._add_user_message(user_text)
        parts = []
        finished = threading.Event()

        def on_chunk(chunk: StreamResponse) -> None:
            if chunk.is_final:
                finished.set()
            elif chunk.text:
                parts.append(chunk.text)
            callback(chunk)

        try:
            self.client.stream(self._build_request(), on_chunk, cancel_event)
            text = "".join(parts)
            if not finished.is_set() or not text:
                raise ServerError("stream ended without a complete reply")
            self.conversation.add_assistant_message(text)
        except BaseException:
            self._rollback()
            raise
        return text

    def _add_user_message(self, text: str) -> None:
        message = Message.text_message("user", text)
        if self.auto_truncate:
            # 先淘汰旧消息腾出空间，再追加新消息
            self.conversation.truncate_to_fit(reserve=self.conversation.estimate_tokens(message))
        self.conversation.append(message)

    def _build_request(self) -> CompletionRequest:
        return CompletionRequest(messages=self.conversation.get_messages(), model=self.model or "")

    def _rollback(self) -> None:
        if self.conversation.remove_last_message_if_role("user"):
            logger.info(
                "Removed unanswered user message",
                extra={"extra": {"conversation_id": self.conversation.id}},
            )
