"""三线程 A/B 评测：上下文组装、生成、评审解析与判定。"""

from prompt_expert.evaluation.evaluator import (
    DEFAULT_SCENARIO,
    ComparativeEvaluator,
    EvaluationOutcome,
    EvaluatorConfig,
    ThreadRecord,
)
from prompt_expert.evaluation.judge import DecisionThresholds, LeniencyPolicy, build_verdict, parse_judge_output

__all__ = [
    "DEFAULT_SCENARIO",
    "ComparativeEvaluator",
    "DecisionThresholds",
    "EvaluationOutcome",
    "EvaluatorConfig",
    "LeniencyPolicy",
    "ThreadRecord",
    "build_verdict",
    "parse_judge_output",
]
