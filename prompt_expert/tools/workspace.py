"""工作区路径工具：把模型或评论给出的相对路径限制在项目根目录内。"""

from pathlib import Path
from typing import Optional, Union

from prompt_expert.config.settings import settings
from prompt_expert.domain.exceptions import ValidationError, WorkspaceError


def coerce_root(root: Optional[Union[str, Path]]) -> Path:
    if root is None:
        root = getattr(settings, "workspace_root", None)
    if not root:
        raise WorkspaceError(code="WORKSPACE_NOT_INITIALIZED", message="workspace_root is not configured")
    resolved = Path(root).expanduser().resolve()
    if not resolved.is_dir():
        raise WorkspaceError(
            code="WORKSPACE_NOT_INITIALIZED",
            message=f"workspace root does not exist: {resolved}",
        )
    return resolved


def resolve_path(raw: str, root: Path, allow_absolute: bool = False) -> Path:
    """解析路径；越出根目录或为空时抛 ValidationError。"""

    text = (raw or "").strip()
    if not text:
        raise ValidationError(code="INVALID_PATH", message="path is empty")
    candidate = Path(text).expanduser()
    if candidate.is_absolute():
        resolved = candidate.resolve()
        if is_within_root(resolved, root) or allow_absolute:
            return resolved
        raise ValidationError(code="PATH_OUTSIDE_WORKSPACE", message=f"path escapes workspace: {raw}")
    resolved = (root / candidate).resolve()
    if not is_within_root(resolved, root):
        raise ValidationError(code="PATH_OUTSIDE_WORKSPACE", message=f"path escapes workspace: {raw}")
    return resolved


def is_within_root(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False


def format_relative(path: Path, root: Optional[Path]) -> str:
    if root:
        try:
            return path.resolve().relative_to(root.resolve()).as_posix()
        except ValueError:
            pass
    return str(path)
