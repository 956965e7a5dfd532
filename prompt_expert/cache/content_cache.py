"""内容寻址缓存。

键是规范化后内容的 sha256，而不是来源路径：同样的内容不论从哪个路径、
哪个仓库加载，都落到同一个条目上。ref 索引只是 "引用 -> 键" 的映射，
用来在命中时跳过重复加载。

- 同一引用的并发 get() 由 per-ref asyncio.Lock 串行化，最多触发一次加载。
- 条目存储后不会被替换；过期且 ref_count == 0 的条目才会被 evict_stale 清除。
- 加载失败（重试之后）返回不入库的占位条目，并记录 FetchFailure；FATAL 错误直接上抛。
"""

import asyncio
import hashlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Dict, List, Optional

from prompt_expert.cache.loaders import ContentLoader, is_text_media
from prompt_expert.cache.refs import ContentRef
from prompt_expert.domain.exceptions import ErrorKind
from prompt_expert.infrastructure.logging.logger import logger
from prompt_expert.infrastructure.retry import RetryPolicy, call_with_retry, classify_error

DEFAULT_TTL = timedelta(days=14)

PLACEHOLDER_TEMPLATE = (
    "[content unavailable: {ref}]\n"
    "The referenced content could not be loaded. Treat this section as generic baseline "
    "text and evaluate without relying on its specifics."
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_payload(data: bytes, media_type: str) -> bytes:
    """文本去掉 UTF-8 BOM 并统一换行为 LF；二进制原样返回。"""

    if not is_text_media(media_type):
        return data
    if data.startswith(b"\xef\xbb\xbf"):
        data = data[3:]
    return data.replace(b"\r\n", b"\n").replace(b"\r", b"\n")


def content_key(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


@dataclass
class CacheEntry:
    key: str
    payload: bytes
    media_type: str
    size_bytes: int
    first_fetched_at: datetime
    last_used_at: datetime
    ttl_expires_at: datetime
    ref_count: int = 0
    placeholder: bool = False
    source: Optional[str] = None

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")

    def is_expired(self, now: datetime) -> bool:
        return now >= self.ttl_expires_at


@dataclass
class FetchFailure:
    ref: str
    error_kind: ErrorKind
    message: str
    attempts: int
    at: datetime


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    fetches: int = 0
    failures: int = 0
    evictions: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


class ContentCache:
    def __init__(
        self,
        loader: ContentLoader,
        ttl: timedelta = DEFAULT_TTL,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep=asyncio.sleep,
    ):
        self._loader = loader
        self._ttl = ttl
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self._entries: Dict[str, CacheEntry] = {}
        self._index: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._failures: List[FetchFailure] = []
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    @property
    def failures(self) -> List[FetchFailure]:
        return list(self._failures)

    async def get(self, ref: ContentRef) -> CacheEntry:
        """取内容并持有一个引用；用完后调用 release()。"""

        ref_key = str(ref)
        lock = self._locks.setdefault(ref_key, asyncio.Lock())
        async with lock:
            now = self._clock()
            entry = self._lookup(ref_key, now)
            if entry is not None:
                self.stats.hits += 1
            else:
                self.stats.misses += 1
                entry = await self._fetch_and_store(ref, ref_key, now)
                if entry.placeholder:
                    return entry
            entry.ref_count += 1
            entry.last_used_at = now
            return entry

    def release(self, entry: CacheEntry) -> None:
        if entry.placeholder:
            return
        stored = self._entries.get(entry.key)
        if stored is None or stored.ref_count <= 0:
            raise ValueError(f"release() without matching get() for key {entry.key[:12]}")
        stored.ref_count -= 1

    @asynccontextmanager
    async def lease(self, ref: ContentRef) -> AsyncIterator[CacheEntry]:
        entry = await self.get(ref)
        try:
            yield entry
        finally:
            self.release(entry)

    def evict_stale(self, now: Optional[datetime] = None) -> int:
        """清除过期且未被引用的条目，返回清除数量。"""

        now = now or self._clock()
        stale = [k for k, e in self._entries.items() if e.is_expired(now) and e.ref_count == 0]
        for k in stale:
            del self._entries[k]
        if stale:
            dropped = set(stale)
            self._index = {r: k for r, k in self._index.items() if k not in dropped}
            self.stats.evictions += len(stale)
            logger.info("Evicted stale cache entries", extra={"extra": {"count": len(stale)}})
        # 只保留仍有索引或正被持有的锁
        self._locks = {r: lock for r, lock in self._locks.items() if r in self._index or lock.locked()}
        return len(stale)

    # ---- 内部 ----

    def _lookup(self, ref_key: str, now: datetime) -> Optional[CacheEntry]:
        key = self._index.get(ref_key)
        if key is None:
            return None
        entry = self._entries.get(key)
        if entry is None:
            del self._index[ref_key]
            return None
        # 过期但仍被引用的条目继续可用
        if entry.is_expired(now) and entry.ref_count == 0:
            return None
        return entry

    async def _fetch_and_store(self, ref: ContentRef, ref_key: str, now: datetime) -> CacheEntry:
        self.stats.fetches += 1
        try:
            fetched, attempts = await call_with_retry(
                lambda: self._loader.fetch(ref),
                self._retry_policy,
                operation="cache.fetch",
                log_ctx={"ref": ref_key},
                sleep=self._sleep,
            )
        except Exception as exc:
            kind = classify_error(exc)
            if kind == ErrorKind.FATAL:
                raise
            return self._placeholder(ref_key, exc, kind, now)

        payload = normalize_payload(fetched.data, fetched.media_type)
        key = content_key(payload)
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(
                key=key,
                payload=payload,
                media_type=fetched.media_type,
                size_bytes=len(payload),
                first_fetched_at=now,
                last_used_at=now,
                ttl_expires_at=now + self._ttl,
                source=ref_key,
            )
            self._entries[key] = entry
        else:
            # 同内容已存在：不替换，只续期
            entry.ttl_expires_at = max(entry.ttl_expires_at, now + self._ttl)
        self._index[ref_key] = key
        logger.log(
            logging.INFO,
            "Cache fetch",
            extra={"extra": {
                "ref": ref_key,
                "key": key[:12],
                "size_bytes": entry.size_bytes,
                "attempts": attempts,
            }},
        )
        return entry

    def _placeholder(self, ref_key: str, exc: Exception, kind: ErrorKind, now: datetime) -> CacheEntry:
        attempts = getattr(exc, "attempts", 1)
        self.stats.failures += 1
        self._failures.append(
            FetchFailure(ref=ref_key, error_kind=kind, message=str(exc), attempts=attempts, at=now)
        )
        logger.warning(
            "Cache fetch failed, using placeholder",
            extra={"extra": {"ref": ref_key, "error_kind": kind.value, "error": str(exc), "attempts": attempts}},
        )
        payload = PLACEHOLDER_TEMPLATE.format(ref=ref_key).encode("utf-8")
        return CacheEntry(
            key=content_key(payload),
            payload=payload,
            media_type="text/plain",
            size_bytes=len(payload),
            first_fetched_at=now,
            last_used_at=now,
            ttl_expires_at=now,
            placeholder=True,
            source=ref_key,
        )
