"""Provider 抽象接口。

上层编排器与评测器不直接依赖具体厂商的 HTTP 接口，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 AnthropicClient）。
- 负责：将 ChatRequest 转成具体 API 请求，并把响应 JSON 解析为 ChatResult。
"""

from typing import Protocol
from prompt_expert.domain.models import ChatRequest, ChatResult


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/统计。
    - chat(req): 执行一次非流式对话调用，返回统一的 ChatResult。
    """

    name: str

    async def chat(self, req: ChatRequest) -> ChatResult:
        ...
