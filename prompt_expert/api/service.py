"""对外 API 服务模块。

提供简化的函数接口供上层（评论机器人、工作流脚本）调用：

- create_runtime(): 按配置组装缓存、预算、评测器、工具和编排器。
- run_command(): 执行一条解析后的评论指令。
- evaluate_prompts(): 直接运行一次 A/B 评测。
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from prompt_expert.budget.guard import SizeBudgetGuard
from prompt_expert.cache.content_cache import ContentCache
from prompt_expert.cache.loaders import ContentLoader, FileSystemLoader, GitRevisionLoader, RoutingLoader
from prompt_expert.config.settings import Settings, settings
from prompt_expert.domain.evaluation import EvaluationRequest
from prompt_expert.domain.models import Command, OrchestrationResult
from prompt_expert.evaluation.evaluator import ComparativeEvaluator, EvaluatorConfig
from prompt_expert.flows.orchestrator import ConversationOrchestrator, OrchestratorConfig
from prompt_expert.infrastructure.logging.logger import logger
from prompt_expert.infrastructure.retry import RetryPolicy
from prompt_expert.providers import create_provider
from prompt_expert.providers.base import ProviderClient
from prompt_expert.tools.builtin import builtin_tools
from prompt_expert.tools.dispatcher import ToolDispatcher
from prompt_expert.tools.registry import ToolRegistry


@dataclass
class Runtime:
    """一个进程内共享的组件集合。

    缓存在这里显式共享，而不是全局单例；budget 只提供上限，每次评测运行 fork 出独立实例。
    """

    cache: ContentCache
    budget: SizeBudgetGuard
    evaluator: ComparativeEvaluator
    dispatcher: ToolDispatcher
    orchestrator: ConversationOrchestrator


def create_runtime(
    cfg: Optional[Settings] = None,
    provider_client: Optional[ProviderClient] = None,
    remote_loader: Optional[ContentLoader] = None,
) -> Runtime:
    cfg = cfg or settings
    provider = provider_client or create_provider(cfg.default_provider, cfg)
    retry = RetryPolicy(
        max_attempts=cfg.tool_max_attempts,
        base_delay=cfg.retry_base_delay,
        max_delay=cfg.retry_max_delay,
    )
    loader = RoutingLoader(
        local=FileSystemLoader(cfg.workspace_root, allow_absolute=cfg.allow_tool_absolute_path),
        versioned=GitRevisionLoader(cfg.workspace_root),
        remote=remote_loader,
    )
    cache = ContentCache(loader, ttl=timedelta(days=cfg.cache_ttl_days), retry_policy=retry)
    budget = SizeBudgetGuard.from_settings(cfg)
    evaluator = ComparativeEvaluator(provider, cache, budget, EvaluatorConfig.from_settings(cfg))
    registry = ToolRegistry(
        builtin_tools(
            cache,
            workspace_root=cfg.workspace_root,
            allow_absolute=cfg.allow_tool_absolute_path,
            evaluator=evaluator,
        )
    )
    dispatcher = ToolDispatcher(registry, retry)
    orchestrator = ConversationOrchestrator(provider, dispatcher, OrchestratorConfig.from_settings(cfg))
    return Runtime(
        cache=cache,
        budget=budget,
        evaluator=evaluator,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
    )


def _result_to_dict(result: OrchestrationResult) -> Dict[str, Any]:
    return {
        "session_id": result.state.session_id,
        "status": result.status,
        "final_text": result.final_text,
        "iterations": result.state.iteration_count,
        "error": result.error,
        "tool_executions": [
            {
                "call_id": e.call.id,
                "tool": e.call.name,
                "iteration": e.iteration,
                "success": e.result.success,
                "attempts": e.result.attempts,
                "error_kind": e.result.error_kind.value if e.result.error_kind else None,
                "duration_ms": e.duration_ms,
            }
            for e in result.tool_executions
        ],
    }


async def run_command(runtime: Runtime, command: Command) -> Dict[str, Any]:
    """执行一条评论指令，返回可直接序列化的结果字典。

    Raises:
        各种 domain.exceptions 中定义的异常（仅限编排之外的错误）
    """
    try:
        result = await runtime.orchestrator.run(command)
    except Exception as e:
        logger.error(f"Command failed: {e}", extra={"extra": {
            "expert_id": command.expert_id,
            "error": str(e),
        }})
        raise
    return _result_to_dict(result)


async def evaluate_prompts(
    runtime: Runtime,
    rubric: str,
    baseline: str,
    variant: str,
    scenarios: Optional[List[str]] = None,
    context_paths: Optional[List[str]] = None,
    prior_suggest_cycles: Optional[int] = None,
) -> Dict[str, Any]:
    """运行一次 A/B 评测，返回判定与体积报告。"""

    request = EvaluationRequest.from_strings(
        rubric=rubric,
        candidate_a=baseline,
        candidate_b=variant,
        scenarios=scenarios,
        context_paths=context_paths,
        prior_suggest_cycles=prior_suggest_cycles,
    )
    outcome = await runtime.evaluator.run(request)
    return {
        "run_id": outcome.run_id,
        "verdict": outcome.verdict.to_dict(),
        "size_report": outcome.size_report,
        "fetch_failures": [
            {"ref": f.ref, "error_kind": f.error_kind.value, "message": f.message, "attempts": f.attempts}
            for f in outcome.failures
        ],
    }
