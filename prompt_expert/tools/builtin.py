"""内置工具：工作区只读文件工具 + ab_test。

文件工具全部限制在 workspace_root 内；read_file 通过 ContentCache 读取，
同一文件在会话和评测之间只加载一次。
"""

import asyncio
import fnmatch
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from prompt_expert.cache.content_cache import ContentCache
from prompt_expert.cache.loaders import is_text_media
from prompt_expert.cache.refs import ContentRef
from prompt_expert.config.settings import settings
from prompt_expert.domain.evaluation import EvaluationRequest
from prompt_expert.domain.exceptions import FetchError, ValidationError
from prompt_expert.tools.registry import ToolSpec
from prompt_expert.tools.workspace import coerce_root, format_relative, resolve_path

if TYPE_CHECKING:
    from prompt_expert.evaluation.evaluator import ComparativeEvaluator


MAX_LIST_RESULTS = 500
MAX_SEARCH_RESULTS = 200
MAX_READ_CHARS = 100_000
SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv"}


class ReadFileArgs(BaseModel):
    path: str = Field(description="相对项目根目录的文件路径", min_length=1)
    start_line: Optional[int] = Field(default=None, ge=1, description="起始行（含），从 1 开始")
    end_line: Optional[int] = Field(default=None, ge=1, description="结束行（含）")


class ListFilesArgs(BaseModel):
    directory: str = Field(default=".", description="起始目录，默认为项目根目录")
    pattern: str = Field(default="*", description="可选的文件名通配符，如 *.md")


class SearchCodeArgs(BaseModel):
    query: str = Field(description="需要匹配的文本", min_length=1)
    directory: str = Field(default=".", description="搜索目录，默认为项目根目录")
    max_results: int = Field(default=50, ge=1, le=MAX_SEARCH_RESULTS, description="最大返回条数，默认 50")


class ABTestArgs(BaseModel):
    rubric: str = Field(description="专家定义/评分标准文件引用，如 experts/programming-expert.md")
    baseline: str = Field(description="基线 prompt 引用（path、path@ref 或 owner/repo:path@ref）")
    variant: str = Field(description="候选 prompt 引用")
    scenarios: List[str] = Field(default_factory=list, description="测试场景；为空时使用默认场景")
    context_paths: List[str] = Field(default_factory=list, description="评测时提供给双方的上下文文件")

    @field_validator("context_paths")
    @classmethod
    def limit_context_paths(cls, v: List[str]) -> List[str]:
        if len(v) > 20:
            raise ValueError("Too many context paths (max 20)")
        return v


def _iter_files(base: Path):
    for path in sorted(base.rglob("*")):
        if any(part in SKIP_DIRS for part in path.relative_to(base).parts):
            continue
        if path.is_file():
            yield path


def _make_read_file(cache: ContentCache, root: Optional[Union[str, Path]], allow_absolute: bool):
    async def _run(args: ReadFileArgs) -> str:
        base = coerce_root(root)
        path = resolve_path(args.path, base, allow_absolute)
        if not path.is_file():
            raise FetchError(code="NOT_FOUND", message=f"File not found: {args.path}", http_status=404)
        if args.start_line and args.end_line and args.end_line < args.start_line:
            raise ValidationError(code="INVALID_RANGE", message="end_line must be >= start_line")
        async with cache.lease(ContentRef(path=format_relative(path, base))) as entry:
            if entry.placeholder:
                raise FetchError(code="READ_FAILED", message=f"Could not read {args.path}")
            if not is_text_media(entry.media_type):
                return f"[binary file {args.path}: {entry.media_type}, {entry.size_bytes} bytes]"
            text = entry.text
        if args.start_line or args.end_line:
            lines = text.split("\n")
            start = (args.start_line or 1) - 1
            end = args.end_line or len(lines)
            text = "\n".join(lines[start:end])
        if len(text) > MAX_READ_CHARS:
            text = text[:MAX_READ_CHARS] + f"\n... truncated {len(text) - MAX_READ_CHARS} characters ..."
        return text

    return _run


def _make_list_files(root: Optional[Union[str, Path]], allow_absolute: bool):
    def _scan(base: Path, top: Path, pattern: str) -> str:
        items: List[str] = []
        for path in _iter_files(top):
            if fnmatch.fnmatch(path.name, pattern):
                items.append(format_relative(path, base))
                if len(items) >= MAX_LIST_RESULTS:
                    items.append("... truncated ...")
                    break
        return "\n".join(items)

    async def _run(args: ListFilesArgs) -> str:
        base = coerce_root(root)
        top = resolve_path(args.directory, base, allow_absolute)
        if not top.is_dir():
            raise ValidationError(code="INVALID_DIRECTORY", message=f"Not a directory: {args.directory}")
        return await asyncio.to_thread(_scan, base, top, args.pattern.strip() or "*")

    return _run


def _make_search_code(root: Optional[Union[str, Path]], allow_absolute: bool):
    def _scan(base: Path, top: Path, query: str, limit: int) -> str:
        results: List[str] = []
        for path in _iter_files(top):
            try:
                content = path.read_text(encoding="utf-8", errors="ignore")
            except OSError:
                continue
            for line_no, line in enumerate(content.splitlines(), start=1):
                if query in line:
                    results.append(f"{format_relative(path, base)}:{line_no}: {line.strip()}")
                    if len(results) >= limit:
                        return "\n".join(results)
        return "\n".join(results)

    async def _run(args: SearchCodeArgs) -> str:
        base = coerce_root(root)
        top = resolve_path(args.directory, base, allow_absolute)
        if not top.is_dir():
            raise ValidationError(code="INVALID_DIRECTORY", message=f"Not a directory: {args.directory}")
        return await asyncio.to_thread(_scan, base, top, args.query, args.max_results)

    return _run


def _make_ab_test(evaluator: "ComparativeEvaluator"):
    async def _run(args: ABTestArgs) -> dict:
        request = EvaluationRequest.from_strings(
            rubric=args.rubric,
            candidate_a=args.baseline,
            candidate_b=args.variant,
            scenarios=args.scenarios,
            context_paths=args.context_paths,
        )
        verdict = await evaluator.evaluate(request)
        return verdict.to_dict()

    return _run


def builtin_tools(
    cache: ContentCache,
    workspace_root: Optional[Union[str, Path]] = None,
    allow_absolute: Optional[bool] = None,
    evaluator: Optional["ComparativeEvaluator"] = None,
) -> List[ToolSpec]:
    allow_abs = settings.allow_tool_absolute_path if allow_absolute is None else allow_absolute
    specs = [
        ToolSpec(
            name="read_file",
            description="Read a file from the repository (optionally a line range).",
            args_model=ReadFileArgs,
            handler=_make_read_file(cache, workspace_root, allow_abs),
        ),
        ToolSpec(
            name="list_files",
            description="List files under a directory, optionally filtered by a glob pattern.",
            args_model=ListFilesArgs,
            handler=_make_list_files(workspace_root, allow_abs),
        ),
        ToolSpec(
            name="search_code",
            description="Search repository files for a literal text fragment.",
            args_model=SearchCodeArgs,
            handler=_make_search_code(workspace_root, allow_abs),
        ),
    ]
    if evaluator is not None:
        specs.append(
            ToolSpec(
                name="ab_test",
                description=(
                    "Run an A/B comparison of a baseline prompt against a variant using the expert "
                    "definition as the rubric. Returns decision, scores and improvements."
                ),
                args_model=ABTestArgs,
                handler=_make_ab_test(evaluator),
            )
        )
    return specs
