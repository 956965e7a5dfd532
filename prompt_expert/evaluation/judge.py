"""Thread C（评审）输出解析与判定。

判定只看 score_b，阈值固定：

    score_b >= merge            -> MERGE
    suggest <= score_b < merge  -> SUGGEST（至少一条改进建议）
    score_b < suggest           -> REJECT

评审自己写的 DECISION 只作参考，不一致时记入 notes。
结构化结果块缺失或 B 的分数无法解析时，按 REJECT / low 处理。
旧格式只给出 "SCORE: x/10"（即候选 B），此时 score_a 记为 0 并在 notes 中说明，
winner 取评审写的 WINNER，其次按 DECISION 推断。
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from prompt_expert.domain.evaluation import Confidence, Decision, EvaluationVerdict, Winner

BLOCK_RE = re.compile(r"=== EVALUATION RESULT ===(.*?)=== END RESULT ===", re.DOTALL)
_SCORE_A_RE = re.compile(r"^\s*SCORE_A:\s*(\d+(?:\.\d+)?)\s*(?:/\s*10)?", re.MULTILINE | re.IGNORECASE)
# 兼容旧格式 "SCORE: x/10"（只给出候选 B 的分数）
_SCORE_B_RE = re.compile(r"^\s*SCORE(?:_B)?:\s*(\d+(?:\.\d+)?)\s*(?:/\s*10)?", re.MULTILINE | re.IGNORECASE)
_DECISION_RE = re.compile(r"^\s*DECISION:\s*\[?(MERGE|SUGGEST|REJECT)\]?", re.MULTILINE | re.IGNORECASE)
_WINNER_RE = re.compile(r"^\s*WINNER:\s*\[?(A|B|TIE)\]?\s*$", re.MULTILINE | re.IGNORECASE)
_CONFIDENCE_RE = re.compile(r"^\s*CONFIDENCE:\s*\[?(high|medium|low)\]?", re.MULTILINE | re.IGNORECASE)
_IMPROVEMENTS_RE = re.compile(r"IMPROVEMENTS NEEDED:(.*)$", re.DOTALL | re.IGNORECASE)
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.*\S)\s*$")
_PLACEHOLDER_RE = re.compile(r"^\[.*\]$|^(none|n/?a|-)\.?$", re.IGNORECASE)

MAX_RATIONALE_CHARS = 2000


@dataclass(frozen=True)
class DecisionThresholds:
    merge: float = 8.5
    suggest: float = 6.0

    def __post_init__(self):
        if self.suggest > self.merge:
            raise ValueError("suggest threshold must not exceed merge threshold")


@dataclass(frozen=True)
class LeniencyPolicy:
    """连续 SUGGEST 若干轮后放宽 MERGE 阈值。只有显式配置时才生效。"""

    min_cycles: int = 3
    merge_threshold: float = 7.5

    def applies(self, prior_cycles: Optional[int]) -> bool:
        return prior_cycles is not None and prior_cycles >= self.min_cycles


@dataclass
class JudgeBlock:
    score_a: Optional[float]
    score_b: float
    decision: Optional[str] = None
    winner: Optional[str] = None
    confidence: Optional[str] = None
    improvements: List[str] = field(default_factory=list)
    analysis: str = ""


def _score(pattern: re.Pattern, text: str) -> Optional[float]:
    m = pattern.search(text)
    if not m:
        return None
    value = float(m.group(1))
    if not 0.0 <= value <= 10.0:
        return None
    return value


def _improvements(block: str) -> List[str]:
    m = _IMPROVEMENTS_RE.search(block)
    if not m:
        return []
    items = []
    for line in m.group(1).splitlines():
        bm = _BULLET_RE.match(line)
        if not bm:
            continue
        item = bm.group(1).strip()
        if _PLACEHOLDER_RE.match(item):
            continue
        items.append(item)
    return items


def parse_judge_output(text: str) -> Optional[JudgeBlock]:
    """解析最后一个结构化结果块；缺块或缺 B 的分数时返回 None。"""

    blocks = BLOCK_RE.findall(text or "")
    if not blocks:
        return None
    block = blocks[-1]
    score_a = _score(_SCORE_A_RE, block)
    score_b = _score(_SCORE_B_RE, block)
    if score_b is None:
        return None
    decision = _DECISION_RE.search(block)
    winner = _WINNER_RE.search(block)
    confidence = _CONFIDENCE_RE.search(block)
    analysis = text[: text.rfind("=== EVALUATION RESULT ===")].strip()
    return JudgeBlock(
        score_a=score_a,
        score_b=score_b,
        decision=decision.group(1).upper() if decision else None,
        winner=winner.group(1).upper() if winner else None,
        confidence=confidence.group(1).lower() if confidence else None,
        improvements=_improvements(block),
        analysis=analysis,
    )


def decide(
    score_b: float,
    thresholds: DecisionThresholds = DecisionThresholds(),
    leniency: Optional[LeniencyPolicy] = None,
    prior_cycles: Optional[int] = None,
) -> Tuple[Decision, Optional[str]]:
    """返回 (decision, 说明)。说明非空表示放宽阈值生效。"""

    if score_b >= thresholds.merge:
        return "MERGE", None
    if leniency is not None and leniency.applies(prior_cycles) and score_b >= leniency.merge_threshold:
        return "MERGE", (
            f"Leniency applied after {prior_cycles} SUGGEST cycle(s): "
            f"merge threshold lowered to {leniency.merge_threshold:g}"
        )
    if score_b >= thresholds.suggest:
        return "SUGGEST", None
    return "REJECT", None


def _winner(block: JudgeBlock) -> Winner:
    if block.winner == "A":
        return "A"
    if block.winner == "B":
        return "B"
    if block.winner == "TIE":
        return "tie"
    if block.score_a is None:
        # 只有 B 的分数：MERGE 视为 B 胜出，REJECT 视为保留 A
        return {"MERGE": "B", "REJECT": "A"}.get(block.decision or "", "tie")
    if block.score_b > block.score_a:
        return "B"
    if block.score_a > block.score_b:
        return "A"
    return "tie"


def _cap_confidence(confidence: Confidence) -> Confidence:
    return "medium" if confidence == "high" else confidence


def build_verdict(
    judge_output: str,
    thresholds: DecisionThresholds = DecisionThresholds(),
    leniency: Optional[LeniencyPolicy] = None,
    prior_cycles: Optional[int] = None,
    degradation: Optional[List[str]] = None,
    notes: Optional[List[str]] = None,
) -> EvaluationVerdict:
    """把评审输出转换成 EvaluationVerdict。

    degradation 非空表示部分内容使用了占位文本：置信度最多 medium，
    并在 rationale 开头写明。
    """

    notes = list(notes or [])
    degradation = list(degradation or [])
    block = parse_judge_output(judge_output)

    if block is None:
        verdict = EvaluationVerdict(
            winner="tie",
            score_a=0.0,
            score_b=0.0,
            confidence="low",
            decision="REJECT",
            rationale="Judge output could not be parsed (missing or malformed EVALUATION RESULT block); "
            "failing closed to REJECT.",
            notes=notes + ["unparsable judge output"],
        )
    else:
        decision, leniency_note = decide(block.score_b, thresholds, leniency, prior_cycles)
        if leniency_note:
            notes.append(leniency_note)
        if block.score_a is None:
            notes.append("judge gave no score for candidate A")
        if block.decision and block.decision != decision:
            notes.append(f"Judge stated {block.decision}; score {block.score_b:g}/10 maps to {decision}")
        improvements: List[str] = []
        if decision == "SUGGEST":
            improvements = list(block.improvements) or [
                f"Raise Candidate B from {block.score_b:g}/10 to at least {thresholds.merge:g}/10 by "
                "addressing the weaknesses identified in the judge analysis."
            ]
        rationale = block.analysis or "No analysis provided by the judge."
        if len(rationale) > MAX_RATIONALE_CHARS:
            rationale = rationale[:MAX_RATIONALE_CHARS].rstrip() + " ..."
        verdict = EvaluationVerdict(
            winner=_winner(block),
            score_a=block.score_a if block.score_a is not None else 0.0,
            score_b=block.score_b,
            confidence=block.confidence or "medium",
            decision=decision,
            rationale=rationale,
            improvements=improvements,
            notes=notes,
        )

    if degradation:
        verdict.degraded = True
        verdict.confidence = _cap_confidence(verdict.confidence)
        verdict.rationale = (
            "WARNING: evaluated with degraded inputs (placeholder content used for: "
            + ", ".join(degradation)
            + ").\n\n"
            + verdict.rationale
        )
    return verdict
