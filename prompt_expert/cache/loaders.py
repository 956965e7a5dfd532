"""内容加载器。

ContentCache 只依赖 ContentLoader 协议；具体从哪里取内容由这里的实现决定：

- FileSystemLoader: 工作区内的文件。
- GitRevisionLoader: 指定版本（branch/tag/sha）上的文件，通过 ``git show`` 读取。
- RoutingLoader: 按引用形态分发，跨仓库引用交给外部注入的 remote loader。
"""

import asyncio
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Union

from prompt_expert.cache.refs import ContentRef
from prompt_expert.domain.exceptions import FetchError, WorkspaceError
from prompt_expert.tools.workspace import coerce_root, resolve_path

TEXT_MEDIA_TYPES = {
    "application/json",
    "application/javascript",
    "application/x-yaml",
    "application/yaml",
    "application/xml",
    "application/toml",
}


@dataclass
class FetchedContent:
    data: bytes
    media_type: str = "text/plain"


class ContentLoader(Protocol):
    async def fetch(self, ref: ContentRef) -> FetchedContent:
        ...


def is_text_media(media_type: str) -> bool:
    return media_type.startswith("text/") or media_type in TEXT_MEDIA_TYPES


def guess_media_type(path: str, data: bytes) -> str:
    guessed, _ = mimetypes.guess_type(path)
    if guessed:
        return guessed
    try:
        data.decode("utf-8")
        return "text/plain"
    except UnicodeDecodeError:
        return "application/octet-stream"


class FileSystemLoader:
    """从工作区根目录读取文件。"""

    def __init__(self, root: Optional[Union[str, Path]] = None, allow_absolute: bool = False):
        self._root = coerce_root(root)
        self._allow_absolute = allow_absolute

    @property
    def root(self) -> Path:
        return self._root

    async def fetch(self, ref: ContentRef) -> FetchedContent:
        path = resolve_path(ref.path, self._root, self._allow_absolute)
        if not path.is_file():
            raise FetchError(code="NOT_FOUND", message=f"File not found: {ref}", http_status=404)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise FetchError(code="READ_FAILED", message=f"Failed to read {ref}: {exc}")
        return FetchedContent(data=data, media_type=guess_media_type(path.name, data))


class GitRevisionLoader:
    """读取某个版本上的文件：``git show <version>:<path>``。"""

    def __init__(self, root: Optional[Union[str, Path]] = None, git_bin: str = "git"):
        self._root = coerce_root(root)
        self._git = git_bin

    async def fetch(self, ref: ContentRef) -> FetchedContent:
        if not ref.version:
            raise FetchError(code="MISSING_VERSION", message=f"Reference has no version: {ref}")
        try:
            proc = await asyncio.create_subprocess_exec(
                self._git,
                "show",
                f"{ref.version}:{ref.path}",
                cwd=str(self._root),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise WorkspaceError(code="GIT_NOT_AVAILABLE", message=str(exc))
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            err = stderr.decode("utf-8", errors="replace").strip()
            if "not a git repository" in err:
                raise WorkspaceError(code="WORKSPACE_NOT_INITIALIZED", message=err)
            raise FetchError(code="NOT_FOUND", message=f"git show failed for {ref}: {err}", http_status=404)
        return FetchedContent(data=stdout, media_type=guess_media_type(ref.path, stdout))


class RoutingLoader:
    """按引用形态选择加载器。"""

    def __init__(
        self,
        local: ContentLoader,
        versioned: Optional[ContentLoader] = None,
        remote: Optional[ContentLoader] = None,
    ):
        self._local = local
        self._versioned = versioned
        self._remote = remote

    async def fetch(self, ref: ContentRef) -> FetchedContent:
        if ref.is_inline:
            return FetchedContent(data=(ref.inline_text or "").encode("utf-8"), media_type="text/plain")
        if ref.is_remote:
            if self._remote is None:
                raise FetchError(code="NO_REMOTE_LOADER", message=f"No loader configured for remote ref {ref}")
            return await self._remote.fetch(ref)
        if ref.version:
            if self._versioned is None:
                raise FetchError(code="NO_VERSIONED_LOADER", message=f"No loader configured for versioned ref {ref}")
            return await self._versioned.fetch(ref)
        return await self._local.fetch(ref)
