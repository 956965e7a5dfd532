"""统一的对话与结果数据模型。

本模块定义了各 Provider 与编排层共享的标准数据结构：

- ChatMessage: 一条对话消息（user/assistant/tool_result/...）。
- ChatRequest: 发给底层 LLM Provider 的完整请求。
- ChatResult: 从 Provider 解析后的统一响应结果。
- Command / ConversationState / OrchestrationResult: 一次专家会话的输入、状态与输出。

所有 Provider 适配器都必须只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Literal, Optional, Any, Dict, List, TYPE_CHECKING

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from prompt_expert.tools.definitions import ToolCall, ToolDef, ToolResult, ToolExecution


# LLM 消息角色类型
# tool_result: 一轮内所有工具结果合并成的一条消息（Anthropic 风格）
Role = Literal["system", "user", "assistant", "tool", "tool_result"]

SessionStatus = Literal["running", "completed", "max_iterations", "fatal_error"]


@dataclass
class ChatMessage:
    """一条对话消息，既可用于请求，也可用于响应。

    - role: 消息角色，如 user/assistant/tool_result。
    - content: 纯文本内容。
    - tool_calls: 当 role 为 "assistant" 且模型触发工具调用时，保存工具调用列表。
    - tool_results: 当 role 为 "tool_result" 时，按调用顺序保存本轮全部结果。
    - tool_call_id: 当 role 为 "tool" 时，用于关联某一次工具调用。
    """

    role: Role
    content: str
    tool_calls: Optional[List["ToolCall"]] = None
    tool_results: Optional[List["ToolResult"]] = None
    tool_call_id: Optional[str] = None


@dataclass
class ChatRequest:
    """一次完整的聊天请求。

    system 与 messages 分开保存：历史裁剪只作用于 messages。
    """

    provider: str  # 逻辑 Provider 名，如 "anthropic"
    model: str  # 逻辑模型名，如 "expert-chat"（再由 registry 映射为真实模型名）
    messages: List[ChatMessage]
    system: Optional[str] = None
    temperature: float = 0.7
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    # 工具定义列表：当模型支持工具调用时，会通过 Provider 转成对应 schema
    tools: Optional[List["ToolDef"]] = None
    # 模型是否必须/禁止使用工具
    tool_choice: Literal["auto", "none", "required"] = "auto"


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatChoice:
    """单个候选回答（目前通常只用 index=0 的一条）。"""

    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """一次对话调用的最终结果。

    - provider: 逻辑 Provider 名。
    - model: 逻辑模型名。
    - choices: 一个或多个候选回答。
    - usage: 可选的 token 使用统计。
    - raw: 原始响应 JSON，用于调试或日志记录。
    - text_segments: 模型返回的各段文本（Anthropic 可能返回多个 text block）。
    """

    provider: str
    model: str
    choices: List[ChatChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None
    text_segments: List[str] = field(default_factory=list)

    @property
    def message(self) -> ChatMessage:
        if self.choices:
            return self.choices[0].message
        return ChatMessage(role="assistant", content="")


@dataclass
class Command:
    """外部评论解析后的指令。"""

    expert_id: str
    instruction_text: str
    options: Dict[str, Any] = field(default_factory=dict)
    mode: str = "default"
    context_paths: List[str] = field(default_factory=list)


@dataclass
class ConversationState:
    """单次会话的状态，只由 ConversationOrchestrator 修改。"""

    session_id: str
    messages: List[ChatMessage]
    iteration_count: int = 0
    max_iterations: int = 10
    status: SessionStatus = "running"


@dataclass
class OrchestrationResult:
    """ConversationOrchestrator.run 的返回值。"""

    final_text: Optional[str]
    tool_executions: List["ToolExecution"]
    status: SessionStatus
    state: ConversationState
    error: Optional[str] = None
