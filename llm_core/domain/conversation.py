"""带 token 预算的会话历史。

Conversation 保存一段有序的消息历史，以及一个运行中的 token 估算总数。
不变式：token_count 永远等于当前所有消息估算值之和。

- 所有修改操作（append / seed / truncate_to_fit / remove_last_message_if_role /
  clear）在同一把写锁内完成“检查 + 提交”，失败时状态保持原样。
- 读操作（get_messages / get_last_message 等）只持有读锁，并且总是返回副本。
- 锁由 Conversation 自己持有，不与 Client 或其他会话共享。
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from uuid import uuid4

from llm_core.domain.exceptions import InvalidRequestError, TokenLimitExceededError
from llm_core.domain.locks import ReadWriteLock
from llm_core.domain.models import Message, Role
from llm_core.domain.tokens import estimate_message_tokens

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 100_000

TokenEstimator = Callable[[Message], int]
SeedPairs = Union[Mapping[str, str], Iterable[Tuple[str, str]]]


class Conversation:
    """一次聊天会话的消息历史与 token 预算。"""

    def __init__(
        self,
        system_prompt: str = "",
        max_tokens: int = DEFAULT_MAX_TOKENS,
        resources_enabled: bool = False,
        estimator: TokenEstimator = estimate_message_tokens,
        conversation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.id = conversation_id or f"c-{uuid4().hex}"
        self.resources_enabled = resources_enabled
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self.created_at = datetime.now(timezone.utc)
        self.updated_at = self.created_at
        self._estimator = estimator
        self._max_tokens = max_tokens if max_tokens > 0 else DEFAULT_MAX_TOKENS
        self._lock = ReadWriteLock()
        # _costs 与 _messages 一一对应，保存追加时的估算值
        self._messages: List[Message] = []
        self._costs: List[int] = []
        self._token_count = 0
        if system_prompt:
            self.append(Message.text_message("system", system_prompt))

    # ---- 修改 ----

    def append(self, message: Message) -> None:
        """追加一条消息；超出预算时抛 TokenLimitExceededError，状态不变。"""

        with self._lock.write():
            self._append_locked(message)

    def add_user_message(self, text: str) -> Message:
        message = Message.text_message("user", text)
        self.append(message)
        return message

    def add_assistant_message(self, text: str) -> Message:
        message = Message.text_message("assistant", text)
        self.append(message)
        return message

    def add_system_message(self, text: str) -> Message:
        message = Message.text_message("system", text)
        self.append(message)
        return message

    def add_reference(self, source: str, content: str) -> Message:
        """把外部资源（文件 / URL）提取出的文本作为一条 user 消息注入。"""

        if not self.resources_enabled:
            raise InvalidRequestError(f"resource injection is disabled for conversation {self.id}")
        message = Message.text_message(
            "user",
            f"Reference {source}:\n{content}",
            reference=source,
        )
        self.append(message)
        return message

    def seed(self, pairs: SeedPairs) -> int:
        """批量写入 (user, assistant) 示例对，全部成功或全部不生效。

        Returns:
            写入的消息条数。
        """

        items = list(pairs.items()) if isinstance(pairs, Mapping) else list(pairs)
        with self._lock.write():
            snapshot = self._snapshot_locked()
            try:
                for user_text, assistant_text in items:
                    self._append_locked(Message.text_message("user", user_text))
                    self._append_locked(Message.text_message("assistant", assistant_text))
            except TokenLimitExceededError:
                self._restore_locked(snapshot)
                raise
        return len(items) * 2

    def remove_last_message_if_role(self, role: Role) -> bool:
        """若最后一条消息的角色匹配则移除它。

        用于补偿：user 消息已追加但 Provider 调用失败时，把这条消息撤回，
        保证会话里不会留下没有回复的半轮对话。
        """

        with self._lock.write():
            if not self._messages or self._messages[-1].role != role:
                return False
            self._pop_locked(len(self._messages) - 1)
            return True

    def truncate_to_fit(self, preserve_system: bool = True, reserve: int = 0) -> List[Message]:
        """从最旧的消息开始淘汰，直到估算总数加上 reserve 不超过预算。

        preserve_system=True 时保留开头的 system 消息。reserve 用于在追加新消息
        之前预留空间。若可淘汰的消息耗尽仍超出预算，
        抛 TokenLimitExceededError 并恢复调用前的状态。

        Returns:
            被淘汰的消息，按从旧到新的顺序。
        """

        with self._lock.write():
            snapshot = self._snapshot_locked()
            evicted: List[Message] = []
            while self._token_count + reserve > self._max_tokens:
                index = self._oldest_removable_locked(preserve_system)
                if index is None:
                    self._restore_locked(snapshot)
                    raise TokenLimitExceededError(
                        f"cannot fit conversation within {self._max_tokens} tokens "
                        f"({self._token_count} estimated after evicting {len(evicted)} messages)"
                    )
                evicted.append(self._pop_locked(index))
        if evicted:
            logger.info(
                "Truncated conversation",
                extra={"extra": {"conversation_id": self.id, "evicted": len(evicted)}},
            )
        return evicted

    def estimate_tokens(self, message: Message) -> int:
        return self._estimator(message)

    def set_max_tokens(self, max_tokens: int) -> None:
        if max_tokens <= 0:
            raise InvalidRequestError("max_tokens must be positive")
        with self._lock.write():
            self._max_tokens = max_tokens

    def clear(self, keep_system: bool = True) -> None:
        with self._lock.write():
            keep = 1 if keep_system and self._messages and self._messages[0].role == "system" else 0
            del self._messages[keep:]
            del self._costs[keep:]
            self._token_count = sum(self._costs)
            self._touch()

    # ---- 读取 ----

    def get_messages(self) -> List[Message]:
        with self._lock.read():
            return list(self._messages)

    def get_last_message(self) -> Optional[Message]:
        with self._lock.read():
            return self._messages[-1] if self._messages else None

    def get_messages_by_role(self, role: Role) -> List[Message]:
        with self._lock.read():
            return [m for m in self._messages if m.role == role]

    @property
    def token_count(self) -> int:
        with self._lock.read():
            return self._token_count

    @property
    def max_tokens(self) -> int:
        with self._lock.read():
            return self._max_tokens

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._messages)

    def export(self) -> Dict[str, Any]:
        """导出为可 JSON 序列化的 dict（仅用于展示 / 调试，不做持久化）。"""

        with self._lock.read():
            return {
                "id": self.id,
                "messages": [m.to_dict() for m in self._messages],
                "max_tokens": self._max_tokens,
                "estimated_tokens": self._token_count,
                "resources_enabled": self.resources_enabled,
                "created_at": self.created_at.isoformat(),
                "updated_at": self.updated_at.isoformat(),
                "metadata": dict(self.metadata),
            }

    def clone(self) -> "Conversation":
        """复制出一个新会话（新 id、新锁），消息与预算相同。"""

        with self._lock.read():
            copy = Conversation(
                max_tokens=self._max_tokens,
                resources_enabled=self.resources_enabled,
                estimator=self._estimator,
                metadata=self.metadata,
            )
            copy._messages = list(self._messages)
            copy._costs = list(self._costs)
            copy._token_count = self._token_count
        return copy

    # ---- 内部方法（调用方必须已持有写锁）----

    def _append_locked(self, message: Message) -> None:
        cost = self._estimator(message)
        attempted = self._token_count + cost
        if attempted > self._max_tokens:
            raise TokenLimitExceededError(
                f"appending {message.role} message needs {cost} tokens, "
                f"{self._token_count}/{self._max_tokens} already used",
                attempted_tokens=attempted,
            )
        self._messages.append(message)
        self._costs.append(cost)
        self._token_count = attempted
        self._touch()

    def _pop_locked(self, index: int) -> Message:
        message = self._messages.pop(index)
        self._token_count -= self._costs.pop(index)
        self._touch()
        return message

    def _oldest_removable_locked(self, preserve_system: bool) -> Optional[int]:
        start = 1 if preserve_system and self._messages and self._messages[0].role == "system" else 0
        return start if start < len(self._messages) else None

    def _snapshot_locked(self) -> Tuple[List[Message], List[int], int, datetime]:
        return list(self._messages), list(self._costs), self._token_count, self.updated_at

    def _restore_locked(self, snapshot: Tuple[List[Message], List[int], int, datetime]) -> None:
        self._messages, self._costs, self._token_count, self.updated_at = (
            list(snapshot[0]),
            list(snapshot[1]),
            snapshot[2],
            snapshot[3],
        )

    def _touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)


def new_conversation(system_prompt: str, max_tokens: int, resources_enabled: bool) -> Conversation:
    """按 (system_prompt, max_tokens, resources_enabled) 创建会话。"""

    return Conversation(
        system_prompt=system_prompt,
        max_tokens=max_tokens,
        resources_enabled=resources_enabled,
    )
