"""ToolDispatcher：执行模型发起的工具调用。

除了 FatalToolError 之外从不抛异常，所有失败都以 success=False 的 ToolResult 返回：

- 未注册的工具、参数不合法：VALIDATION，立即返回，不重试。
- 瞬时错误：按 RetryPolicy 指数退避重试，每次尝试都记日志。
- 其他错误：PERMANENT，直接返回。
- 认证失败、工作区未初始化：包装成 FatalToolError 上抛给编排层。
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import pydantic

from prompt_expert.domain.exceptions import ErrorKind, FatalToolError
from prompt_expert.infrastructure.logging.logger import logger
from prompt_expert.infrastructure.retry import RetryPolicy, call_with_retry, classify_error
from prompt_expert.tools.definitions import ToolCall, ToolResult
from prompt_expert.tools.registry import ToolRegistry


def _format_validation_error(exc: pydantic.ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {err.get('msg')}")
    return "Invalid arguments: " + "; ".join(parts)


class ToolDispatcher:
    def __init__(
        self,
        registry: ToolRegistry,
        policy: Optional[RetryPolicy] = None,
        sleep=asyncio.sleep,
    ):
        self._registry = registry
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute(self, call: ToolCall, log_ctx: Optional[Dict[str, Any]] = None) -> ToolResult:
        ctx = dict(log_ctx or {})
        ctx.update(tool_name=call.name, call_id=call.id)
        spec = self._registry.get(call.name)
        if spec is None:
            self._log(logging.WARNING, "Unknown tool requested", ctx)
            return ToolResult(
                call_id=call.id,
                success=False,
                error_message=f"Tool not registered: {call.name}",
                error_kind=ErrorKind.VALIDATION,
                attempts=0,
            )

        try:
            args = spec.args_model.model_validate(call.arguments or {})
        except pydantic.ValidationError as exc:
            message = _format_validation_error(exc)
            self._log(logging.INFO, "Tool arguments rejected", ctx, error=message)
            return ToolResult(
                call_id=call.id,
                success=False,
                error_message=message,
                error_kind=ErrorKind.VALIDATION,
                attempts=0,
            )

        start = time.monotonic()
        try:
            payload, attempts = await call_with_retry(
                lambda: spec.handler(args),
                self._policy,
                operation=f"tool.{call.name}",
                log_ctx=ctx,
                sleep=self._sleep,
            )
        except Exception as exc:
            kind = classify_error(exc)
            attempts = getattr(exc, "attempts", 1)
            if kind == ErrorKind.FATAL:
                self._log(logging.ERROR, "Fatal tool error", ctx, error=str(exc), attempts=attempts)
                raise FatalToolError(
                    code=getattr(exc, "code", "FATAL_TOOL_ERROR"),
                    message=str(exc),
                    tool_name=call.name,
                ) from exc
            self._log(
                logging.WARNING,
                "Tool call failed",
                ctx,
                error_kind=kind.value,
                error=str(exc),
                attempts=attempts,
                exc_type=type(exc).__name__,
            )
            return ToolResult(
                call_id=call.id,
                success=False,
                error_message=str(exc),
                error_kind=kind,
                attempts=attempts,
            )

        self._log(
            logging.INFO,
            "Tool call finished",
            ctx,
            attempts=attempts,
            elapsed_ms=int((time.monotonic() - start) * 1000),
        )
        return ToolResult(call_id=call.id, success=True, payload=payload, attempts=attempts)

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
