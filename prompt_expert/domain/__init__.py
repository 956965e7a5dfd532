"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / ChatRequest / ChatResult 以及会话状态模型。
- evaluation: A/B 评测请求与判定结果模型。
- exceptions: 业务异常类型与 ErrorKind 分类。
"""
