"""A/B 评测的请求与判定结果模型。"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional

from prompt_expert.cache.refs import ContentRef

Winner = Literal["A", "B", "tie"]
Confidence = Literal["high", "medium", "low"]
Decision = Literal["MERGE", "SUGGEST", "REJECT"]

MAX_CONTEXT_REFS = 20


@dataclass
class EvaluationRequest:
    """一次 A/B 评测请求。

    - rubric_ref: 专家定义（评分标准）。
    - candidate_a / candidate_b: 基线与候选 prompt。
    - scenarios: 测试场景；为空时由评测器使用默认场景。
    - context_bundle: 双方共用的上下文内容。
    - prior_suggest_cycles: 之前已连续 SUGGEST 的轮数，只有配置了 LeniencyPolicy 时才会用到。
    """

    rubric_ref: ContentRef
    candidate_a: ContentRef
    candidate_b: ContentRef
    scenarios: List[str] = field(default_factory=list)
    context_bundle: List[ContentRef] = field(default_factory=list)
    prior_suggest_cycles: Optional[int] = None

    @classmethod
    def from_strings(
        cls,
        rubric: str,
        candidate_a: str,
        candidate_b: str,
        scenarios: Optional[List[str]] = None,
        context_paths: Optional[List[str]] = None,
        prior_suggest_cycles: Optional[int] = None,
    ) -> "EvaluationRequest":
        return cls(
            rubric_ref=ContentRef.parse(rubric),
            candidate_a=ContentRef.parse(candidate_a),
            candidate_b=ContentRef.parse(candidate_b),
            scenarios=list(scenarios or []),
            context_bundle=[ContentRef.parse(p) for p in (context_paths or [])],
            prior_suggest_cycles=prior_suggest_cycles,
        )


@dataclass
class EvaluationVerdict:
    winner: Winner
    score_a: float
    score_b: float
    confidence: Confidence
    decision: Decision
    rationale: str
    improvements: List[str] = field(default_factory=list)
    degraded: bool = False
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
