"""内容引用（ContentRef）。

文本形式与评论命令里的写法一致：

    path
    path@ref
    owner/repo:path@ref

另外支持内联文本（ContentRef.inline），用于把已经拿到手的 prompt 文本直接放进缓存。
"""

import hashlib
import re
from dataclasses import dataclass
from typing import Optional

from prompt_expert.domain.exceptions import ValidationError

REF_PATTERN = re.compile(
    r"^(?:(?P<repo>[a-zA-Z0-9_-]+/[a-zA-Z0-9_-]+):)?"
    r"(?P<path>[a-zA-Z0-9_\-/.]+)"
    r"(?:@(?P<version>[a-zA-Z0-9_\-.]+))?$"
)


@dataclass(frozen=True)
class ContentRef:
    path: str
    repo: Optional[str] = None
    version: Optional[str] = None
    inline_text: Optional[str] = None
    label: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "ContentRef":
        raw = (text or "").strip()
        m = REF_PATTERN.match(raw)
        if not m:
            raise ValidationError(
                code="INVALID_REF",
                message=f"Invalid reference format: {text!r}. Expected path, path@ref or owner/repo:path@ref",
            )
        path = m.group("path")
        if any(part == ".." for part in path.split("/")):
            raise ValidationError(code="INVALID_REF", message=f"Parent directory segments are not allowed: {text!r}")
        return cls(path=path, repo=m.group("repo"), version=m.group("version"))

    @classmethod
    def inline(cls, text: str, label: str = "inline") -> "ContentRef":
        return cls(path=label, inline_text=text, label=label)

    @property
    def is_inline(self) -> bool:
        return self.inline_text is not None

    @property
    def is_remote(self) -> bool:
        return self.repo is not None

    def __str__(self) -> str:
        if self.inline_text is not None:
            digest = hashlib.sha256(self.inline_text.encode("utf-8")).hexdigest()[:12]
            return f"inline:{self.label or self.path}#{digest}"
        s = self.path
        if self.repo:
            s = f"{self.repo}:{s}"
        if self.version:
            s = f"{s}@{self.version}"
        return s
