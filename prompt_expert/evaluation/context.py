"""评测上下文组装：经 ContentCache 加载内容，经 SizeBudgetGuard 控制体积。"""

import asyncio
import hashlib
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from prompt_expert.budget.guard import SizeBudgetGuard
from prompt_expert.cache.content_cache import CacheEntry, ContentCache
from prompt_expert.cache.loaders import is_text_media
from prompt_expert.cache.refs import ContentRef
from prompt_expert.domain.exceptions import BudgetExceededError


@dataclass
class ContextItem:
    ref: str
    key: str
    text: str
    status: str  # admitted / truncated / placeholder
    placeholder: bool = False


@dataclass
class ContextBundle:
    items: List[ContextItem] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    _rendered: Optional[str] = field(default=None, repr=False)

    @property
    def keys(self) -> Tuple[str, ...]:
        return tuple(item.key for item in self.items)

    @property
    def placeholders(self) -> List[str]:
        return [item.ref for item in self.items if item.placeholder]

    def render(self) -> str:
        """渲染一次并缓存，保证两个线程拿到的是同一份字节。"""

        if self._rendered is None:
            if not self.items:
                self._rendered = ""
            else:
                parts = ["## CONTEXT FILES", ""]
                for item in self.items:
                    parts.append(f"### {item.ref}")
                    parts.append("```")
                    parts.append(item.text)
                    parts.append("```")
                    parts.append("")
                self._rendered = "\n".join(parts)
        return self._rendered

    def digest(self) -> str:
        return hashlib.sha256(self.render().encode("utf-8")).hexdigest()


@dataclass
class LoadedText:
    ref: str
    key: str
    text: str
    placeholder: bool


def _entry_text(entry: CacheEntry) -> str:
    if is_text_media(entry.media_type):
        return entry.text
    return f"[binary content omitted: {entry.media_type}, {entry.size_bytes} bytes]"


class ContextAssembler:
    def __init__(self, cache: ContentCache, budget: SizeBudgetGuard):
        self._cache = cache
        self._budget = budget

    async def load_required(self, ref: ContentRef, label: str) -> LoadedText:
        """加载必需内容（rubric / 候选 prompt）；预算放不下时抛 BudgetExceededError。"""

        async with self._cache.lease(ref) as entry:
            text = _entry_text(entry)
            admission = self._budget.admit(text, label)
            if not admission.accepted:
                raise BudgetExceededError(
                    code="BUDGET_EXCEEDED",
                    message=f"Required content {label} ({ref}) does not fit the size budget",
                )
            return LoadedText(ref=str(ref), key=entry.key, text=admission.text, placeholder=entry.placeholder)

    async def build(self, refs: List[ContentRef]) -> ContextBundle:
        """并发加载，按给定顺序做预算准入，结果与加载完成顺序无关。"""

        outcomes = await asyncio.gather(*(self._cache.get(ref) for ref in refs), return_exceptions=True)
        entries = [o for o in outcomes if isinstance(o, CacheEntry)]
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if errors:
            for entry in entries:
                self._cache.release(entry)
            raise errors[0]
        bundle = ContextBundle()
        try:
            for ref, entry in zip(refs, entries):
                admission = self._budget.admit(_entry_text(entry), str(ref))
                if not admission.accepted:
                    bundle.skipped.append(str(ref))
                    continue
                bundle.items.append(
                    ContextItem(
                        ref=str(ref),
                        key=entry.key,
                        text=admission.text,
                        status="placeholder" if entry.placeholder else admission.status,
                        placeholder=entry.placeholder,
                    )
                )
        finally:
            for entry in entries:
                self._cache.release(entry)
        return bundle
