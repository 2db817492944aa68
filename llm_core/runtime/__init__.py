"""运行时：Client 分发、中间件、重试控制与会话绑定的对话。"""
