import asyncio

import httpx
import pytest
from pydantic import BaseModel

from prompt_expert.domain.exceptions import (
    ApiError,
    AuthenticationError,
    ErrorKind,
    FetchError,
    NetworkError,
    RateLimitError,
    ValidationError,
    WorkspaceError,
)
from prompt_expert.infrastructure.retry import RetryPolicy, call_with_retry, classify_error, decide_retry


class _Model(BaseModel):
    n: int


def _pydantic_error():
    try:
        _Model.model_validate({"n": "x"})
    except Exception as exc:  # pydantic.ValidationError
        return exc
    raise AssertionError("expected validation error")


def test_classify_business_errors():
    assert classify_error(NetworkError(code="N", message="down")) == ErrorKind.TRANSIENT
    assert classify_error(RateLimitError(code="R", message="slow down")) == ErrorKind.TRANSIENT
    assert classify_error(ValidationError(code="V", message="bad")) == ErrorKind.VALIDATION
    assert classify_error(AuthenticationError(code="A", message="no")) == ErrorKind.FATAL
    assert classify_error(WorkspaceError(code="W", message="no root")) == ErrorKind.FATAL
    assert classify_error(FetchError(code="F", message="x", transient=True)) == ErrorKind.TRANSIENT
    assert classify_error(FetchError(code="F", message="x")) == ErrorKind.PERMANENT


def test_classify_api_error_by_status():
    assert classify_error(ApiError(code="E", message="x", http_status=503)) == ErrorKind.TRANSIENT
    assert classify_error(ApiError(code="E", message="x", http_status=529)) == ErrorKind.TRANSIENT
    assert classify_error(ApiError(code="E", message="x", http_status=401)) == ErrorKind.FATAL
    assert classify_error(ApiError(code="E", message="x", http_status=400)) == ErrorKind.PERMANENT


def test_classify_library_and_message_errors():
    assert classify_error(_pydantic_error()) == ErrorKind.VALIDATION
    assert classify_error(httpx.ReadTimeout("slow")) == ErrorKind.TRANSIENT
    assert classify_error(ConnectionResetError()) == ErrorKind.TRANSIENT
    assert classify_error(RuntimeError("socket hang up")) == ErrorKind.TRANSIENT
    assert classify_error(RuntimeError("Bad credentials")) == ErrorKind.FATAL
    assert classify_error(KeyError("missing")) == ErrorKind.PERMANENT


def test_decide_retry_backoff():
    policy = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0)
    assert decide_retry(ErrorKind.TRANSIENT, 1, policy).delay_ms == 1000
    assert decide_retry(ErrorKind.TRANSIENT, 2, policy).delay_ms == 2000
    assert decide_retry(ErrorKind.TRANSIENT, 3, policy).retry is False
    assert decide_retry(ErrorKind.PERMANENT, 1, policy).retry is False
    assert decide_retry(ErrorKind.VALIDATION, 1, policy).retry is False
    capped = RetryPolicy(max_attempts=10, base_delay=1.0, max_delay=5.0)
    assert decide_retry(ErrorKind.TRANSIENT, 8, capped).delay_ms == 5000


def test_call_with_retry_recovers_from_transient():
    delays = []
    calls = {"n": 0}

    async def fake_sleep(seconds):
        delays.append(seconds)

    async def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise NetworkError(code="NETWORK_ERROR", message="ECONNRESET")
        return "ok"

    result, attempts = asyncio.run(call_with_retry(flaky, RetryPolicy(), "test", sleep=fake_sleep))
    assert result == "ok"
    assert attempts == 3
    assert delays == [1.0, 2.0]


def test_call_with_retry_gives_up_and_records_attempts():
    async def fake_sleep(seconds):
        pass

    async def always_down():
        raise RateLimitError(code="RATE_LIMIT", message="rate limit")

    with pytest.raises(RateLimitError) as info:
        asyncio.run(call_with_retry(always_down, RetryPolicy(max_attempts=2), "test", sleep=fake_sleep))
    assert info.value.attempts == 2


def test_call_with_retry_does_not_retry_permanent():
    calls = {"n": 0}

    async def broken():
        calls["n"] += 1
        raise FetchError(code="NOT_FOUND", message="gone")

    with pytest.raises(FetchError):
        asyncio.run(call_with_retry(broken, RetryPolicy(), "test"))
    assert calls["n"] == 1
