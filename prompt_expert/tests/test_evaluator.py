import asyncio

import pytest

from prompt_expert.budget.guard import SizeBudgetGuard
from prompt_expert.cache.content_cache import ContentCache
from prompt_expert.cache.loaders import FetchedContent
from prompt_expert.domain.evaluation import EvaluationRequest
from prompt_expert.domain.exceptions import BudgetExceededError, FetchError, ValidationError
from prompt_expert.domain.models import ChatChoice, ChatMessage, ChatResult
from prompt_expert.evaluation.evaluator import DEFAULT_SCENARIO, ComparativeEvaluator, EvaluatorConfig
from prompt_expert.evaluation.judge import LeniencyPolicy
from prompt_expert.infrastructure.retry import RetryPolicy

FILES = {
    "experts/programming-expert.md": b"# Programming expert\nScore for safety and clarity.",
    "prompts/base.md": b"BASELINE PROMPT: answer briefly.",
    "prompts/variant.md": b"VARIANT PROMPT: answer with safety checks.",
    "docs/ops.md": b"Production runbook.",
    "docs/style.md": b"Style guide.",
}

JUDGE_REPLY = """B is more careful about production risk.

=== EVALUATION RESULT ===
DECISION: SUGGEST
WINNER: B
SCORE_A: 6/10
SCORE_B: {score}/10
CONFIDENCE: high
IMPROVEMENTS NEEDED:
- Ask for a backup before deleting data
=== END RESULT ===
"""


class DictLoader:
    def __init__(self, files):
        self.files = files

    async def fetch(self, ref):
        data = self.files.get(ref.path)
        if data is None:
            raise FetchError(code="NOT_FOUND", message=f"missing {ref}", http_status=404)
        return FetchedContent(data=data, media_type="text/markdown")


class FakeProvider:
    name = "fake"

    def __init__(self, score=7.0):
        self.score = score
        self.requests = []

    async def chat(self, req):
        self.requests.append(req)
        content = req.messages[0].content
        if req.model == "judge":
            text = JUDGE_REPLY.format(score=self.score)
        elif "BASELINE PROMPT" in content:
            text = "answer from A"
        else:
            text = "answer from B"
        return ChatResult(
            provider="fake",
            model=req.model,
            choices=[ChatChoice(index=0, message=ChatMessage(role="assistant", content=text))],
        )


async def _no_sleep(_):
    return None


def _evaluator(provider, files=None, budget=None, leniency=None):
    cache = ContentCache(DictLoader(files or FILES), retry_policy=RetryPolicy(max_attempts=1), sleep=_no_sleep)
    budget = budget or SizeBudgetGuard(max_total_bytes=1_000_000, max_items=50, max_token_estimate=100_000)
    config = EvaluatorConfig(
        provider="fake",
        thread_model="thread",
        judge_model="judge",
        leniency=leniency,
        model_retry=RetryPolicy(max_attempts=1),
    )
    return ComparativeEvaluator(provider, cache, budget, config, sleep=_no_sleep), cache


def _request(**kw):
    params = dict(
        rubric="experts/programming-expert.md",
        candidate_a="prompts/base.md",
        candidate_b="prompts/variant.md",
        context_paths=["docs/ops.md", "docs/style.md"],
    )
    params.update(kw)
    return EvaluationRequest.from_strings(**params)


def test_threads_get_identical_context_and_own_prompt():
    provider = FakeProvider()
    evaluator, cache = _evaluator(provider)
    outcome = asyncio.run(evaluator.run(_request(scenarios=["deploy on friday", "drop a table"])))

    assert len(outcome.threads) == 4
    for a, b in zip(outcome.threads[::2], outcome.threads[1::2]):
        assert (a.label, b.label) == ("A", "B")
        assert a.scenario == b.scenario
        assert a.context_keys == b.context_keys
        assert a.context_digest == b.context_digest
        assert len(a.context_keys) == 2

    thread_reqs = [r for r in provider.requests if r.model == "thread"]
    assert len(thread_reqs) == 4
    for req in thread_reqs:
        content = req.messages[0].content
        assert "Production runbook." in content
        assert ("BASELINE PROMPT" in content) != ("VARIANT PROMPT" in content)
    # 所有引用都已释放
    assert all(e.ref_count == 0 for e in cache._entries.values())


def test_judge_receives_rubric_and_both_outputs():
    provider = FakeProvider(score=9.0)
    evaluator, _ = _evaluator(provider)
    outcome = asyncio.run(evaluator.run(_request(scenarios=["deploy on friday"])))

    judge_reqs = [r for r in provider.requests if r.model == "judge"]
    assert len(judge_reqs) == 1
    content = judge_reqs[0].messages[0].content
    assert "Programming expert" in content
    assert "answer from A" in content
    assert "answer from B" in content
    assert '"deploy on friday"' in content
    assert outcome.verdict.decision == "MERGE"
    assert outcome.verdict.winner == "B"
    assert outcome.verdict.degraded is False
    assert outcome.size_report["health"] == "healthy"


def test_default_scenario_used_when_none_given():
    provider = FakeProvider()
    evaluator, _ = _evaluator(provider)
    outcome = asyncio.run(evaluator.run(_request(scenarios=["  "])))
    assert {t.scenario for t in outcome.threads} == {DEFAULT_SCENARIO}
    assert outcome.verdict.decision == "SUGGEST"
    assert outcome.verdict.improvements == ["Ask for a backup before deleting data"]


def test_missing_context_degrades_verdict():
    provider = FakeProvider(score=9.0)
    evaluator, _ = _evaluator(provider)
    outcome = asyncio.run(evaluator.run(_request(context_paths=["docs/ops.md", "docs/missing.md"])))

    verdict = outcome.verdict
    assert verdict.degraded is True
    assert verdict.confidence == "medium"
    assert "docs/missing.md" in verdict.rationale
    assert [f.ref for f in outcome.failures] == ["docs/missing.md"]
    thread_req = next(r for r in provider.requests if r.model == "thread")
    assert "content unavailable: docs/missing.md" in thread_req.messages[0].content


def test_identical_candidates_rejected():
    evaluator, _ = _evaluator(FakeProvider())
    with pytest.raises(ValidationError) as info:
        asyncio.run(evaluator.run(_request(candidate_b="prompts/base.md")))
    assert info.value.code == "IDENTICAL_CANDIDATES"


def test_too_many_context_paths_rejected():
    provider = FakeProvider()
    evaluator, _ = _evaluator(provider)
    with pytest.raises(ValidationError) as info:
        asyncio.run(evaluator.run(_request(context_paths=[f"docs/f{i}.md" for i in range(21)])))
    assert info.value.code == "TOO_MANY_CONTEXT_PATHS"
    assert provider.requests == []


def test_required_content_over_budget_raises():
    files = dict(FILES)
    files["experts/programming-expert.md"] = b"x" * 5000
    budget = SizeBudgetGuard(max_total_bytes=250, max_items=10, max_token_estimate=10_000)
    provider = FakeProvider()
    evaluator, _ = _evaluator(provider, files=files, budget=budget)
    with pytest.raises(BudgetExceededError):
        asyncio.run(evaluator.run(_request()))
    assert provider.requests == []


def test_oversized_context_is_truncated_and_noted():
    files = dict(FILES)
    files["docs/big.md"] = b"y" * 50_000
    budget = SizeBudgetGuard(max_total_bytes=2000, max_items=10, max_token_estimate=100_000, max_item_chars=100_000)
    evaluator, _ = _evaluator(FakeProvider(), files=files, budget=budget)
    outcome = asyncio.run(evaluator.run(_request(context_paths=["docs/ops.md", "docs/big.md"])))

    assert len(outcome.threads[0].context_keys) == 2
    report = outcome.size_report
    assert [t["label"] for t in report["truncated"]] == ["docs/big.md"]
    assert any("context truncated: docs/big.md" in n for n in outcome.verdict.notes)


def test_leniency_only_with_policy():
    provider = FakeProvider(score=7.8)
    plain, _ = _evaluator(provider)
    assert asyncio.run(plain.evaluate(_request(prior_suggest_cycles=4))).decision == "SUGGEST"

    lenient, _ = _evaluator(FakeProvider(score=7.8), leniency=LeniencyPolicy(min_cycles=3, merge_threshold=7.5))
    verdict = asyncio.run(lenient.evaluate(_request(prior_suggest_cycles=4)))
    assert verdict.decision == "MERGE"
    assert any("Leniency" in n for n in verdict.notes)


class SlowLoader(DictLoader):
    def __init__(self, files, slow_path, delay):
        super().__init__(files)
        self.slow_path = slow_path
        self.delay = delay

    async def fetch(self, ref):
        if ref.path == self.slow_path:
            await asyncio.sleep(self.delay)
        return await super().fetch(ref)


def test_concurrent_runs_keep_separate_budgets():
    files = dict(FILES)
    files["prompts/other.md"] = b"OTHER PROMPT: answer tersely."
    cache = ContentCache(SlowLoader(files, "prompts/variant.md", 0.05), retry_policy=RetryPolicy(max_attempts=1))
    shared = SizeBudgetGuard(max_total_bytes=1_000_000, max_items=50, max_token_estimate=100_000)
    config = EvaluatorConfig(provider="fake", thread_model="thread", judge_model="judge", model_retry=RetryPolicy(max_attempts=1))
    evaluator = ComparativeEvaluator(FakeProvider(), cache, shared, config, sleep=_no_sleep)

    async def scenario():
        return await asyncio.gather(
            evaluator.run(_request(context_paths=[])),
            evaluator.run(_request(candidate_b="prompts/other.md", context_paths=["docs/ops.md"])),
        )

    first, second = asyncio.run(scenario())
    assert first.size_report["summary"]["total_items"] == 3
    assert second.size_report["summary"]["total_items"] == 4
    # 共享实例只提供上限，本身不记用量
    assert shared.usage().used_items == 0


def test_fork_keeps_limits_and_starts_empty():
    guard = SizeBudgetGuard(max_total_bytes=1000, max_items=5, max_token_estimate=500, critical_ratio=0.8)
    assert guard.reserve(600)
    forked = guard.fork()
    usage = forked.usage()
    assert (usage.max_total_bytes, usage.max_items, usage.max_token_estimate, usage.critical_ratio) == (1000, 5, 500, 0.8)
    assert usage.used_bytes == 0
    assert guard.usage().used_bytes == 600
