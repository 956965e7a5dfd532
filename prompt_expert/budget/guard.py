"""上下文体积预算。

一次评测运行内，所有加载进上下文的内容都要先向 SizeBudgetGuard 预留额度：

- 预留只会累加，不会回退；被拒绝的预留不影响已有预留。
- 任一维度（字节/条目/token 估算）使用率达到 critical_ratio 后，拒绝后续所有预留。
- admit() 在预留失败时尝试截断（保留头尾），仍放不下则跳过并记入报告。
"""

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Literal, Optional

from prompt_expert.infrastructure.logging.logger import logger

CHARS_PER_TOKEN = 4
WARN_RATIO = 0.75
# 截断后剩余空间太小就不再尝试
MIN_TRUNCATED_CHARS = 200


@dataclass
class SizeBudget:
    """预算上限与当前用量的快照。"""

    max_total_bytes: int
    max_items: int
    max_token_estimate: int
    critical_ratio: float = 0.9
    used_bytes: int = 0
    used_items: int = 0
    used_tokens: int = 0

    def ratios(self) -> Dict[str, float]:
        return {
            "bytes": self.used_bytes / self.max_total_bytes,
            "items": self.used_items / self.max_items,
            "tokens": self.used_tokens / self.max_token_estimate,
        }

    @property
    def peak_ratio(self) -> float:
        return max(self.ratios().values())

    @property
    def remaining_bytes(self) -> int:
        return max(0, self.max_total_bytes - self.used_bytes)

    @property
    def remaining_tokens(self) -> int:
        return max(0, self.max_token_estimate - self.used_tokens)


@dataclass
class Admission:
    """admit() 的结果。status 为 skipped 时 text 为空串。"""

    label: str
    status: Literal["admitted", "truncated", "skipped"]
    text: str
    original_chars: int
    size_bytes: int = 0
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status != "skipped"


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_middle(text: str, limit: int) -> str:
    """保留开头约 50% 与结尾约 40%，中间替换为截断标记。"""

    if len(text) <= limit:
        return text
    head = int(limit * 0.5)
    tail = int(limit * 0.4)
    omitted = len(text) - head - tail
    marker = f"\n\n... truncated {omitted} characters ...\n\n"
    return text[:head] + marker + (text[-tail:] if tail else "")


class SizeBudgetGuard:
    def __init__(
        self,
        max_total_bytes: int,
        max_items: int,
        max_token_estimate: int,
        critical_ratio: float = 0.9,
        max_item_chars: int = 50_000,
    ):
        if not 0 < critical_ratio <= 1:
            raise ValueError("critical_ratio must be in (0, 1]")
        self._budget = SizeBudget(
            max_total_bytes=max_total_bytes,
            max_items=max_items,
            max_token_estimate=max_token_estimate,
            critical_ratio=critical_ratio,
        )
        self._max_item_chars = max_item_chars
        self._skipped: List[Dict[str, Any]] = []
        self._truncated: List[Dict[str, Any]] = []
        self._denied = 0

    @classmethod
    def from_settings(cls, cfg) -> "SizeBudgetGuard":
        return cls(
            max_total_bytes=int(cfg.budget_max_total_mb * 1024 * 1024),
            max_items=cfg.budget_max_items,
            max_token_estimate=cfg.budget_max_tokens,
            critical_ratio=cfg.budget_critical_ratio,
            max_item_chars=cfg.budget_max_item_chars,
        )

    def fork(self) -> "SizeBudgetGuard":
        """同样上限、用量清零的新实例。每次评测运行各用一份，互不影响。"""

        b = self._budget
        return SizeBudgetGuard(
            max_total_bytes=b.max_total_bytes,
            max_items=b.max_items,
            max_token_estimate=b.max_token_estimate,
            critical_ratio=b.critical_ratio,
            max_item_chars=self._max_item_chars,
        )

    # ---- 核心接口 ----

    def reserve(self, estimated_bytes: int, tokens: Optional[int] = None) -> bool:
        """尝试预留额度。成功时累加用量并返回 True，失败时不改变任何用量。"""

        if estimated_bytes < 0:
            raise ValueError("estimated_bytes must be >= 0")
        b = self._budget
        token_cost = tokens if tokens is not None else math.ceil(estimated_bytes / CHARS_PER_TOKEN)
        if self.is_critical():
            self._deny("critical", estimated_bytes, token_cost)
            return False
        if (
            b.used_bytes + estimated_bytes > b.max_total_bytes
            or b.used_items + 1 > b.max_items
            or b.used_tokens + token_cost > b.max_token_estimate
        ):
            self._deny("over_limit", estimated_bytes, token_cost)
            return False
        b.used_bytes += estimated_bytes
        b.used_items += 1
        b.used_tokens += token_cost
        return True

    def usage(self) -> SizeBudget:
        return replace(self._budget)

    def is_critical(self) -> bool:
        return self._budget.peak_ratio >= self._budget.critical_ratio

    def reset(self) -> None:
        b = self._budget
        b.used_bytes = b.used_items = b.used_tokens = 0
        self._skipped.clear()
        self._truncated.clear()
        self._denied = 0

    def admit(self, text: str, label: str) -> Admission:
        """预留并返回可以放进上下文的文本（可能被截断）。"""

        original = len(text)
        candidate = truncate_middle(text, self._max_item_chars)
        size = len(candidate.encode("utf-8"))
        if self.reserve(size, estimate_tokens(candidate)):
            return self._accepted(label, text, candidate, size, "item cap")

        # 放不下完整内容，按剩余额度再截一次
        b = self._budget
        if not self.is_critical() and b.used_items < b.max_items:
            limit = min(b.remaining_bytes, b.remaining_tokens * CHARS_PER_TOKEN, len(candidate)) - 64
            for _ in range(3):
                if limit < MIN_TRUNCATED_CHARS:
                    break
                fitted = truncate_middle(text, limit)
                size = len(fitted.encode("utf-8"))
                if size <= b.remaining_bytes and self.reserve(size, estimate_tokens(fitted)):
                    return self._accepted(label, text, fitted, size, "remaining budget")
                limit = int(limit * 0.8)

        reason = "critical usage reached" if self.is_critical() else "would exceed size limits"
        self._skipped.append({"label": label, "chars": original, "reason": reason})
        logger.warning(
            "Content skipped by size budget",
            extra={"extra": {"label": label, "chars": original, "reason": reason}},
        )
        return Admission(label=label, status="skipped", text="", original_chars=original, reason=reason)

    # ---- 报告 ----

    def report(self) -> Dict[str, Any]:
        b = self._budget
        ratios = b.ratios()
        if self._skipped and self.is_critical():
            health, message = "critical", "Critical usage reached, content was skipped"
        elif max(ratios.values()) >= WARN_RATIO:
            health, message = "warning", "Approaching size limits"
        elif self._skipped:
            health, message = "warning", "Some content was skipped"
        else:
            health, message = "healthy", "All systems within normal parameters"
        return {
            "summary": {
                "total_mb": round(b.used_bytes / (1024 * 1024), 2),
                "total_tokens": b.used_tokens,
                "total_items": b.used_items,
            },
            "limits": {name: f"{ratio * 100:.1f}%" for name, ratio in ratios.items()},
            "truncated": list(self._truncated),
            "skipped": list(self._skipped),
            "denied_reservations": self._denied,
            "health": health,
            "health_message": message,
            "recommendations": self._recommendations(ratios),
        }

    def _recommendations(self, ratios: Dict[str, float]) -> List[str]:
        recs: List[str] = []
        if ratios["tokens"] >= WARN_RATIO:
            recs.append("Reduce context paths or use more specific file patterns")
        if ratios["bytes"] >= WARN_RATIO:
            recs.append("High memory usage detected. Consider running with fewer context paths.")
        if len(self._skipped) > 10:
            recs.append(f"{len(self._skipped)} files were skipped. Consider using file type filters.")
        elif self._skipped:
            recs.append("Some context was skipped; pass only the files the scenario needs.")
        if self._truncated:
            recs.append(f"{len(self._truncated)} item(s) were truncated to fit the budget.")
        return recs

    # ---- 内部 ----

    def _accepted(self, label: str, text: str, fitted: str, size: int, why: str) -> Admission:
        if fitted == text:
            return Admission(label=label, status="admitted", text=fitted, original_chars=len(text), size_bytes=size)
        self._truncated.append({"label": label, "from_chars": len(text), "to_chars": len(fitted), "by": why})
        logger.info(
            "Content truncated to fit size budget",
            extra={"extra": {"label": label, "from_chars": len(text), "to_chars": len(fitted), "by": why}},
        )
        return Admission(
            label=label,
            status="truncated",
            text=fitted,
            original_chars=len(text),
            size_bytes=size,
            reason=why,
        )

    def _deny(self, reason: str, size: int, tokens: int) -> None:
        self._denied += 1
        b = self._budget
        logger.log(
            logging.INFO,
            "Reservation denied",
            extra={"extra": {
                "reason": reason,
                "requested_bytes": size,
                "requested_tokens": tokens,
                "used_bytes": b.used_bytes,
                "used_items": b.used_items,
                "used_tokens": b.used_tokens,
            }},
        )
