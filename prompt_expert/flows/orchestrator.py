"""ConversationOrchestrator：多轮工具调用会话。

实现流程：
1. 由 Command 构造首条 user 消息
2. 调用模型（附带全部工具 schema）
3. 如果有 tool_calls，并发执行并把结果按 call_id 合并成一条 tool_result 消息
4. 重复 2-3，直到模型不再调用工具、达到 max_iterations 或出现致命错误

状态机由 LangGraph 驱动（见 flows.graph），本模块只提供节点实现。
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
from uuid import uuid4

from prompt_expert.domain.exceptions import BusinessError, FatalToolError
from prompt_expert.domain.models import (
    ChatMessage,
    ChatRequest,
    Command,
    ConversationState,
    OrchestrationResult,
)
from prompt_expert.flows.graph import build_graph, recursion_limit
from prompt_expert.flows.history import compact_history
from prompt_expert.flows.state import OrchestratorState
from prompt_expert.infrastructure.logging.logger import logger
from prompt_expert.infrastructure.retry import RetryPolicy, call_with_retry
from prompt_expert.prompts import load_system_prompt
from prompt_expert.providers.base import ProviderClient
from prompt_expert.tools.definitions import ToolCall, ToolExecution
from prompt_expert.tools.dispatcher import ToolDispatcher


@dataclass
class OrchestratorConfig:
    provider: str = "anthropic"
    model: str = "expert-chat"
    agent_type: str = "prompt-expert"
    max_iterations: int = 10
    history_cap: int = 20  # 超过该条数触发裁剪
    history_keep_recent: int = 15
    tool_concurrency: int = 4
    temperature: float = 0.3
    model_retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_settings(cls, cfg) -> "OrchestratorConfig":
        return cls(
            provider=cfg.default_provider,
            model=cfg.default_model,
            max_iterations=cfg.max_iterations,
            history_cap=cfg.history_cap,
            history_keep_recent=cfg.history_keep_recent,
            tool_concurrency=cfg.tool_concurrency,
            model_retry=RetryPolicy(
                max_attempts=cfg.tool_max_attempts,
                base_delay=cfg.retry_base_delay,
                max_delay=cfg.retry_max_delay,
            ),
        )


def build_initial_message(command: Command) -> str:
    lines = [f"Expert: {command.expert_id}"]
    if command.mode and command.mode != "default":
        lines.append(f"Mode: {command.mode}")
    if command.options:
        opts = ", ".join(f"{k}={v}" for k, v in sorted(command.options.items()))
        lines.append(f"Options: {opts}")
    if command.context_paths:
        lines.append("Context files: " + ", ".join(command.context_paths))
    lines.append("")
    lines.append(command.instruction_text.strip())
    return "\n".join(lines)


def _unique_call_ids(calls: List[ToolCall], turn: int) -> List[ToolCall]:
    # 模型给出的 id 也可能与生成的后缀相同，所以对所有已分配的 id 判重
    taken = {c.id for c in calls if c.id}
    assigned: set = set()
    out: List[ToolCall] = []
    for idx, call in enumerate(calls):
        base = call.id or f"call_{turn}_{idx}"
        call_id = base
        suffix = 0
        while call_id in assigned or (call_id != call.id and call_id in taken):
            suffix += 1
            call_id = f"{base}_{suffix}"
        assigned.add(call_id)
        out.append(replace(call, id=call_id, turn=turn))
    return out


class ConversationOrchestrator:
    def __init__(
        self,
        provider_client: ProviderClient,
        dispatcher: ToolDispatcher,
        config: Optional[OrchestratorConfig] = None,
        system_prompt: Optional[str] = None,
        sleep=asyncio.sleep,
    ):
        self._provider_client = provider_client
        self._dispatcher = dispatcher
        self._config = config or OrchestratorConfig(provider=provider_client.name)
        self._system_prompt = system_prompt if system_prompt is not None else load_system_prompt(self._config.agent_type)
        self._sleep = sleep
        self._tool_defs = dispatcher.registry.tool_defs()
        self._graph = build_graph(self._model_node, self._tools_node)

    async def run(self, command: Command) -> OrchestrationResult:
        """执行一次完整会话。达到 max_iterations 或致命错误时返回相应 status，不抛异常。"""

        start_time = time.time()
        session_id = f"sess-{uuid4().hex}"
        log_ctx = {"session_id": session_id, "expert_id": command.expert_id, "mode": command.mode}
        self._log(logging.INFO, "Session started", log_ctx, max_iterations=self._config.max_iterations)

        initial: OrchestratorState = {
            "session_id": session_id,
            "messages": [ChatMessage(role="user", content=build_initial_message(command))],
            "iteration_count": 0,
            "max_iterations": self._config.max_iterations,
            "status": "running",
            "pending_calls": [],
            "tool_executions": [],
            "final_text": None,
            "error": None,
        }
        final = await self._graph.ainvoke(
            initial,
            config={"recursion_limit": recursion_limit(self._config.max_iterations)},
        )

        state = ConversationState(
            session_id=session_id,
            messages=list(final["messages"]),
            iteration_count=final["iteration_count"],
            max_iterations=final["max_iterations"],
            status=final["status"],
        )
        executions = list(final.get("tool_executions") or [])
        self._log(
            logging.INFO if state.status != "fatal_error" else logging.ERROR,
            "Session finished",
            log_ctx,
            status=state.status,
            iterations=state.iteration_count,
            tool_calls=len(executions),
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        return OrchestrationResult(
            final_text=final.get("final_text"),
            tool_executions=executions,
            status=state.status,
            state=state,
            error=final.get("error"),
        )

    # ---- graph nodes ----

    async def _model_node(self, state: OrchestratorState) -> Dict[str, Any]:
        log_ctx = {"session_id": state["session_id"]}
        if state["iteration_count"] >= state["max_iterations"]:
            self._log(logging.WARNING, "Max iterations reached", log_ctx, iterations=state["iteration_count"])
            return {"status": "max_iterations", "pending_calls": []}

        messages, trimmed = compact_history(
            state["messages"], self._config.history_cap, self._config.history_keep_recent
        )
        if trimmed:
            self._log(logging.INFO, "Truncated context", log_ctx, trimmed=trimmed, kept=len(messages))

        iteration = state["iteration_count"] + 1
        self._log(
            logging.INFO,
            "Model round",
            log_ctx,
            iteration=iteration,
            max_iterations=state["max_iterations"],
            messages=len(messages),
        )
        req = ChatRequest(
            provider=self._config.provider,
            model=self._config.model,
            messages=messages,
            system=self._system_prompt,
            temperature=self._config.temperature,
            tools=self._tool_defs or None,
            tool_choice="auto",
        )
        try:
            result, _ = await call_with_retry(
                lambda: self._provider_client.chat(req),
                self._config.model_retry,
                operation="model.chat",
                log_ctx=log_ctx,
                sleep=self._sleep,
            )
        except BusinessError as exc:
            self._log(logging.ERROR, "Model call failed", log_ctx, code=exc.code, error=exc.message)
            return {
                "messages": messages,
                "iteration_count": iteration,
                "status": "fatal_error",
                "pending_calls": [],
                "error": f"{exc.code}: {exc.message}",
            }

        reply = result.message
        calls = _unique_call_ids(reply.tool_calls or [], iteration)
        assistant = ChatMessage(role="assistant", content=reply.content, tool_calls=calls or None)
        update: Dict[str, Any] = {
            "messages": messages + [assistant],
            "iteration_count": iteration,
            "final_text": reply.content or state.get("final_text"),
            "pending_calls": calls,
        }
        if not calls:
            update["status"] = "completed"
            update["final_text"] = reply.content
        else:
            self._log(logging.INFO, "Executing tool calls", log_ctx, call_count=len(calls))
        return update

    async def _tools_node(self, state: OrchestratorState) -> Dict[str, Any]:
        log_ctx = {"session_id": state["session_id"], "iteration": state["iteration_count"]}
        calls = list(state.get("pending_calls") or [])
        iteration = state["iteration_count"]
        semaphore = asyncio.Semaphore(self._config.tool_concurrency)

        async def _run_one(call: ToolCall) -> ToolExecution:
            async with semaphore:
                started = time.monotonic()
                result = await self._dispatcher.execute(call, log_ctx)
                return ToolExecution(
                    call=call,
                    result=result,
                    iteration=iteration,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )

        outcomes = await asyncio.gather(*(_run_one(c) for c in calls), return_exceptions=True)

        executions: List[ToolExecution] = []
        fatal: Optional[FatalToolError] = None
        for outcome in outcomes:
            if isinstance(outcome, FatalToolError):
                fatal = fatal or outcome
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            executions.append(outcome)

        all_executions = list(state.get("tool_executions") or []) + executions
        if fatal is not None:
            self._log(logging.ERROR, "Fatal tool error", log_ctx, tool_name=fatal.tool_name, error=fatal.message)
            return {
                "status": "fatal_error",
                "error": f"{fatal.code}: {fatal.message}",
                "tool_executions": all_executions,
                "pending_calls": [],
            }

        by_id = {e.call.id: e.result for e in executions}
        results_msg = ChatMessage(
            role="tool_result",
            content="",
            tool_results=[by_id[c.id] for c in calls],
        )
        return {
            "messages": list(state["messages"]) + [results_msg],
            "tool_executions": all_executions,
            "pending_calls": [],
        }

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
