"""工具注册表。

每个工具由 ToolSpec 描述：参数结构用 pydantic 模型声明，
暴露给模型的 JSON schema 由该模型生成，执行前也用它做校验。
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel

from prompt_expert.tools.definitions import ToolDef, ToolParam

ToolHandler = Callable[[Any], Awaitable[Any]]


@dataclass
class ToolSpec:
    name: str
    description: str
    args_model: Type[BaseModel]
    handler: ToolHandler

    def to_tool_def(self) -> ToolDef:
        schema = self.args_model.model_json_schema()
        required = set(schema.get("required") or [])
        params: Dict[str, ToolParam] = {}
        for name, prop in (schema.get("properties") or {}).items():
            prop = {k: v for k, v in prop.items() if k != "title"}
            description = prop.pop("description", "")
            params[name] = ToolParam(
                name=name,
                description=description,
                required=name in required,
                schema=prop,
            )
        return ToolDef(name=self.name, description=self.description, params=params)


class ToolRegistry:
    def __init__(self, specs: Optional[List[ToolSpec]] = None):
        self._specs: Dict[str, ToolSpec] = {}
        for spec in specs or []:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Tool already registered: {spec.name!r}")
        self._specs[spec.name] = spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._specs.get(name)

    def names(self) -> List[str]:
        return list(self._specs)

    def tool_defs(self) -> List[ToolDef]:
        return [spec.to_tool_def() for spec in self._specs.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)
