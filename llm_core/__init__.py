"""LLM Core 顶层包。

通过统一接口向多个大模型后端发起补全与流式请求，
包括 Provider 适配、注册表与中间件、带 token 预算的会话、
带退避与模型回退的重试控制，以及流式输出归一化。
"""

from llm_core.domain.conversation import Conversation, new_conversation
from llm_core.domain.models import CompletionRequest, CompletionResponse, Message, Model, StreamResponse
from llm_core.runtime.chat import ChatSession
from llm_core.runtime.client import Client, ClientBuilder, ClientConfig
from llm_core.runtime.retry import RetryConfig, with_retry

__all__ = [
    "ChatSession",
    "Client",
    "ClientBuilder",
    "ClientConfig",
    "CompletionRequest",
    "CompletionResponse",
    "Conversation",
    "Message",
    "Model",
    "RetryConfig",
    "StreamResponse",
    "new_conversation",
    "with_retry",
]
