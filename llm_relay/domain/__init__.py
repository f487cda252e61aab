"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / ChatRequest / ChatResponse / ChatStreamDelta 模型。
- cancellation: 请求级取消信号 CancelToken。
- exceptions: 规范错误类型定义。
"""
