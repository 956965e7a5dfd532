"""错误分类与重试策略。

重试决策是一个纯函数 decide_retry(kind, attempt, policy)，
不关心调用方是工具、缓存加载还是模型调用；call_with_retry 负责
把它套到异步调用上并逐次记录日志。
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

import httpx
import pydantic

from prompt_expert.domain.exceptions import RETRYABLE_STATUS, BusinessError, ErrorKind
from prompt_expert.infrastructure.logging.logger import logger

T = TypeVar("T")

_TRANSIENT_PATTERNS = re.compile(
    r"rate limit|timeout|timed out|ECONNRESET|ECONNREFUSED|ETIMEDOUT|socket hang up|"
    r"overloaded|temporarily unavailable|connection reset",
    re.IGNORECASE,
)
_AUTH_PATTERNS = re.compile(r"\b401\b|unauthorized|bad credentials|authentication failed", re.IGNORECASE)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0  # 秒
    max_delay: float = 30.0
    multiplier: float = 2.0


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_ms: int = 0


def classify_error(exc: BaseException) -> ErrorKind:
    """把任意异常归类为 ErrorKind。"""

    if isinstance(exc, BusinessError):
        return exc.kind
    if isinstance(exc, pydantic.ValidationError):
        return ErrorKind.VALIDATION
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in RETRYABLE_STATUS:
            return ErrorKind.TRANSIENT
        if status in (401, 403):
            return ErrorKind.FATAL
        return ErrorKind.PERMANENT
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    text = str(exc)
    if _AUTH_PATTERNS.search(text):
        return ErrorKind.FATAL
    if _TRANSIENT_PATTERNS.search(text):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


def decide_retry(kind: ErrorKind, attempt: int, policy: RetryPolicy) -> RetryDecision:
    """attempt 为刚刚失败的那次尝试的序号（从 1 开始）。"""

    if kind != ErrorKind.TRANSIENT or attempt >= policy.max_attempts:
        return RetryDecision(retry=False)
    delay = min(policy.base_delay * (policy.multiplier ** (attempt - 1)), policy.max_delay)
    return RetryDecision(retry=True, delay_ms=int(delay * 1000))


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation: str,
    log_ctx: Optional[Dict[str, Any]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Tuple[T, int]:
    """执行 fn，瞬时错误按策略退避重试。

    Returns:
        (结果, 实际尝试次数)

    Raises:
        最后一次失败的原始异常；异常对象上会附加 ``attempts`` 属性。
    """

    ctx = dict(log_ctx or {})
    attempt = 0
    while True:
        attempt += 1
        try:
            result = await fn()
        except Exception as exc:
            kind = classify_error(exc)
            decision = decide_retry(kind, attempt, policy)
            logger.log(
                logging.WARNING if decision.retry else logging.INFO,
                "Attempt failed",
                extra={"extra": {
                    **ctx,
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "error_kind": kind.value,
                    "error": str(exc)[:300],
                    "retry": decision.retry,
                    "delay_ms": decision.delay_ms,
                }},
            )
            if not decision.retry:
                setattr(exc, "attempts", attempt)
                raise
            await sleep(decision.delay_ms / 1000)
            continue
        if attempt > 1:
            logger.info(
                "Attempt succeeded after retry",
                extra={"extra": {**ctx, "operation": operation, "attempt": attempt}},
            )
        return result, attempt
