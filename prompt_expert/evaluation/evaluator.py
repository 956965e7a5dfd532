"""ComparativeEvaluator：三线程 A/B 评测。

- Thread A 只用候选 A 做 priming，Thread B 只用候选 B，二者针对同一场景、
  同一份上下文并发生成，彼此看不到对方。
- Thread C（评审）拿到 rubric 以及每个场景下 A/B 的输出，给出结构化结论。

每次运行从共享的 SizeBudgetGuard fork 出独立预算，并发运行互不影响；
rubric 与两个候选是必需内容，放不下直接报错，
上下文文件放不下则截断或跳过并写入报告。
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from prompt_expert.budget.guard import SizeBudgetGuard
from prompt_expert.cache.content_cache import ContentCache, FetchFailure
from prompt_expert.domain.evaluation import MAX_CONTEXT_REFS, EvaluationRequest, EvaluationVerdict
from prompt_expert.domain.exceptions import BusinessError, ValidationError
from prompt_expert.domain.models import ChatMessage, ChatRequest
from prompt_expert.evaluation.context import ContextAssembler, ContextBundle, LoadedText
from prompt_expert.evaluation.judge import DecisionThresholds, LeniencyPolicy, build_verdict
from prompt_expert.infrastructure.logging.logger import logger
from prompt_expert.infrastructure.retry import RetryPolicy, call_with_retry
from prompt_expert.prompts import load_prompt
from prompt_expert.providers.base import ProviderClient

DEFAULT_SCENARIO = "Analyze the command 'sudo rm -rf /var/lib/docker' in a production environment"


@dataclass
class EvaluatorConfig:
    provider: str = "anthropic"
    thread_model: str = "expert-judge"
    judge_model: str = "expert-judge"
    thread_temperature: float = 0.7
    judge_temperature: float = 0.2
    thresholds: DecisionThresholds = field(default_factory=DecisionThresholds)
    leniency: Optional[LeniencyPolicy] = None
    model_retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_settings(cls, cfg) -> "EvaluatorConfig":
        leniency = None
        if cfg.leniency_after_cycles is not None and cfg.leniency_merge_threshold is not None:
            leniency = LeniencyPolicy(
                min_cycles=cfg.leniency_after_cycles,
                merge_threshold=cfg.leniency_merge_threshold,
            )
        return cls(
            provider=cfg.default_provider,
            judge_model=cfg.judge_model,
            thread_model=cfg.judge_model,
            thresholds=DecisionThresholds(merge=cfg.merge_threshold, suggest=cfg.suggest_threshold),
            leniency=leniency,
            model_retry=RetryPolicy(
                max_attempts=cfg.tool_max_attempts,
                base_delay=cfg.retry_base_delay,
                max_delay=cfg.retry_max_delay,
            ),
        )


@dataclass
class ThreadRecord:
    """单个生成线程的输入摘要与输出。"""

    label: str  # "A" / "B"
    scenario: str
    context_keys: Tuple[str, ...]
    context_digest: str
    output: str = ""


@dataclass
class EvaluationOutcome:
    run_id: str
    verdict: EvaluationVerdict
    threads: List[ThreadRecord]
    judge_output: str
    size_report: Dict[str, Any]
    failures: List[FetchFailure] = field(default_factory=list)


def validate_request(request: EvaluationRequest) -> None:
    if str(request.candidate_a) == str(request.candidate_b):
        raise ValidationError(
            code="IDENTICAL_CANDIDATES",
            message="Baseline and variant reference the same content; nothing to compare",
        )
    if len(request.context_bundle) > MAX_CONTEXT_REFS:
        raise ValidationError(
            code="TOO_MANY_CONTEXT_PATHS",
            message=f"Too many context paths ({len(request.context_bundle)}), max {MAX_CONTEXT_REFS}",
        )
    if request.prior_suggest_cycles is not None and request.prior_suggest_cycles < 0:
        raise ValidationError(code="INVALID_CYCLES", message="prior_suggest_cycles must be >= 0")


class ComparativeEvaluator:
    def __init__(
        self,
        provider_client: ProviderClient,
        cache: ContentCache,
        budget: SizeBudgetGuard,
        config: Optional[EvaluatorConfig] = None,
        sleep=asyncio.sleep,
    ):
        self._provider_client = provider_client
        self._cache = cache
        self._budget = budget
        self._config = config or EvaluatorConfig(provider=provider_client.name)
        self._sleep = sleep

    async def evaluate(self, request: EvaluationRequest) -> EvaluationVerdict:
        outcome = await self.run(request)
        return outcome.verdict

    async def run(self, request: EvaluationRequest) -> EvaluationOutcome:
        validate_request(request)
        run_id = f"eval-{uuid4().hex}"
        log_ctx = {"run_id": run_id}
        start_time = time.time()
        failures_before = len(self._cache.failures)
        run_refs = {str(r) for r in (request.rubric_ref, request.candidate_a, request.candidate_b)}
        run_refs.update(str(r) for r in request.context_bundle)
        budget = self._budget.fork()
        assembler = ContextAssembler(self._cache, budget)
        self._log(
            logging.INFO,
            "Evaluation started",
            log_ctx,
            rubric=str(request.rubric_ref),
            candidate_a=str(request.candidate_a),
            candidate_b=str(request.candidate_b),
            context_refs=len(request.context_bundle),
        )

        rubric = await assembler.load_required(request.rubric_ref, "rubric")
        prompt_a = await assembler.load_required(request.candidate_a, "candidate_a")
        prompt_b = await assembler.load_required(request.candidate_b, "candidate_b")
        bundle = await assembler.build(request.context_bundle)

        scenarios = [s.strip() for s in request.scenarios if s and s.strip()] or [DEFAULT_SCENARIO]
        threads: List[ThreadRecord] = []
        for scenario in scenarios:
            rec_a = self._thread_record("A", scenario, bundle)
            rec_b = self._thread_record("B", scenario, bundle)
            self._check_fairness(rec_a, rec_b)
            out_a, out_b = await asyncio.gather(
                self._generate(prompt_a, scenario, bundle, log_ctx, "A"),
                self._generate(prompt_b, scenario, bundle, log_ctx, "B"),
            )
            threads.extend([replace(rec_a, output=out_a), replace(rec_b, output=out_b)])

        judge_output = await self._judge(rubric.text, threads, request, log_ctx)

        degradation = [t.ref for t in (rubric, prompt_a, prompt_b) if t.placeholder] + bundle.placeholders
        notes: List[str] = []
        if bundle.skipped:
            notes.append("context skipped by size budget: " + ", ".join(bundle.skipped))
        truncated = [i.ref for i in bundle.items if i.status == "truncated"]
        if truncated:
            notes.append("context truncated: " + ", ".join(truncated))
        verdict = build_verdict(
            judge_output,
            thresholds=self._config.thresholds,
            leniency=self._config.leniency,
            prior_cycles=request.prior_suggest_cycles,
            degradation=degradation,
            notes=notes,
        )
        self._log(
            logging.INFO,
            "Evaluation finished",
            log_ctx,
            decision=verdict.decision,
            winner=verdict.winner,
            score_a=verdict.score_a,
            score_b=verdict.score_b,
            confidence=verdict.confidence,
            degraded=verdict.degraded,
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        return EvaluationOutcome(
            run_id=run_id,
            verdict=verdict,
            threads=threads,
            judge_output=judge_output,
            size_report=budget.report(),
            failures=[f for f in self._cache.failures[failures_before:] if f.ref in run_refs],
        )

    # ---- threads ----

    @staticmethod
    def _thread_record(label: str, scenario: str, bundle: ContextBundle) -> ThreadRecord:
        return ThreadRecord(label=label, scenario=scenario, context_keys=bundle.keys, context_digest=bundle.digest())

    @staticmethod
    def _check_fairness(a: ThreadRecord, b: ThreadRecord) -> None:
        if a.context_keys != b.context_keys or a.context_digest != b.context_digest:
            raise BusinessError(
                code="CONTEXT_MISMATCH",
                message="Threads A and B were given different context",
                http_status=500,
            )

    async def _generate(
        self,
        prompt: LoadedText,
        scenario: str,
        bundle: ContextBundle,
        log_ctx: Dict[str, Any],
        label: str,
    ) -> str:
        rendered = bundle.render()
        content = load_prompt("thread_prime.md").format(
            prompt=prompt.text,
            context=f"\n{rendered}\n" if rendered else "",
            scenario=scenario,
        )
        req = ChatRequest(
            provider=self._config.provider,
            model=self._config.thread_model,
            messages=[ChatMessage(role="user", content=content)],
            temperature=self._config.thread_temperature,
        )
        return await self._complete(req, {**log_ctx, "thread": label})

    async def _judge(
        self,
        rubric_text: str,
        threads: List[ThreadRecord],
        request: EvaluationRequest,
        log_ctx: Dict[str, Any],
    ) -> str:
        thresholds = self._config.thresholds
        content = load_prompt("judge_framework.md").format(
            merge_threshold=f"{thresholds.merge:g}",
            suggest_threshold=f"{thresholds.suggest:g}",
            iteration_context=self._iteration_context(request.prior_suggest_cycles),
            rubric=rubric_text,
            comparisons=self._comparisons(threads),
        )
        req = ChatRequest(
            provider=self._config.provider,
            model=self._config.judge_model,
            messages=[ChatMessage(role="user", content=content)],
            temperature=self._config.judge_temperature,
        )
        return await self._complete(req, {**log_ctx, "thread": "C"})

    def _iteration_context(self, cycles: Optional[int]) -> str:
        leniency = self._config.leniency
        if leniency is None or not cycles:
            return ""
        lines = [
            "",
            "### ITERATION CONTEXT",
            f"This is improvement iteration #{cycles + 1}. The prompt has been revised {cycles} time(s) "
            "based on previous expert feedback.",
        ]
        if leniency.applies(cycles):
            lines.append(
                f"- Consider approving if the prompt is reasonably good ({leniency.merge_threshold:g}/10 or better) "
                "to avoid endless cycles"
            )
        return "\n".join(lines) + "\n"

    @staticmethod
    def _comparisons(threads: List[ThreadRecord]) -> str:
        by_scenario: Dict[str, Dict[str, str]] = {}
        for t in threads:
            by_scenario.setdefault(t.scenario, {})[t.label] = t.output
        parts = []
        for idx, (scenario, outputs) in enumerate(by_scenario.items(), start=1):
            parts.append(f'### Scenario {idx}: "{scenario}"')
            parts.append("")
            parts.append("**Candidate A (Current Implementation):**")
            parts.append(outputs.get("A", ""))
            parts.append("")
            parts.append("**Candidate B (Proposed Implementation):**")
            parts.append(outputs.get("B", ""))
            parts.append("")
        return "\n".join(parts)

    async def _complete(self, req: ChatRequest, log_ctx: Dict[str, Any]) -> str:
        result, _ = await call_with_retry(
            lambda: self._provider_client.chat(req),
            self._config.model_retry,
            operation="model.chat",
            log_ctx=log_ctx,
            sleep=self._sleep,
        )
        text = "\n".join(s for s in result.text_segments if s) or result.message.content
        self._log(logging.INFO, "Thread completed", log_ctx, chars=len(text))
        return text

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
