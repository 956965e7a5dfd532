"""工具数据结构定义。

这些 dataclass 描述了“工具调用”的 schema，既用于：
- 将可用工具列表暴露给 LLM（ToolDef / ToolParam）。
- 在编排层中保存和执行模型触发的工具调用（ToolCall / ToolResult / ToolExecution）。
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from prompt_expert.domain.exceptions import ErrorKind


@dataclass
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any]


@dataclass
class ToolDef:
    """一个可供 LLM 调用的工具定义。"""

    name: str
    description: str
    params: Dict[str, ToolParam]

    def parameters_schema(self) -> Dict[str, Any]:
        """JSON schema（object）形式的参数定义，各家 Provider 共用。"""

        properties: Dict[str, Any] = {}
        required = []
        for name, param in self.params.items():
            schema = param.schema or {"type": "string"}
            if param.description:
                schema = {**schema, "description": param.description}
            properties[name] = schema
            if param.required:
                required.append(name)
        return {"type": "object", "properties": properties, "required": required}


@dataclass
class ToolCall:
    """模型发起的一次工具调用请求。

    turn 为发起该调用的模型轮次（从 1 开始），由编排层填写。
    """

    id: str
    name: str
    arguments: Dict[str, Any]
    turn: int = 0


@dataclass
class ToolResult:
    """工具执行结果。

    success=True 时 payload 为工具返回值；否则 error_message / error_kind 描述失败原因。
    attempts 记录实际执行次数（包含重试）。
    """

    call_id: str
    success: bool
    payload: Any = None
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    attempts: int = 1

    @property
    def content(self) -> str:
        """发回给模型的文本形式。失败时为 {"error": ..., "message": ...} JSON。"""

        if self.success:
            if isinstance(self.payload, str):
                return self.payload
            return json.dumps(self.payload, ensure_ascii=False, default=str)
        kind = self.error_kind.value.upper() if self.error_kind else "ERROR"
        return json.dumps({"error": kind, "message": self.error_message or ""}, ensure_ascii=False)


@dataclass
class ToolExecution:
    """一次已完成的工具调用：调用本身、结果、所属轮次与耗时。"""

    call: ToolCall
    result: ToolResult
    iteration: int
    duration_ms: int = 0
