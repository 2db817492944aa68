"""领域层模型与协议。

包含：
- models: 统一的 Message / CompletionRequest / CompletionResponse / StreamResponse / Model。
- conversation: 带 token 预算的会话历史。
- exceptions: 统一错误分类。
- tokens / locks: token 估算与读写锁。
"""
