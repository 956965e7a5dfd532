"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在编排层或 API 层做统一捕获与用户提示。

每个异常类型带有一个 ErrorKind，重试策略只依据 kind 做决定：

- TRANSIENT: 网络超时、连接重置、限流、5xx，可退避重试。
- VALIDATION: 参数或输入不合法，直接返回，不重试。
- PERMANENT: 其他确定性失败（文件不存在等），不重试。
- FATAL: 认证失败、工作区未初始化等，需要终止整个会话。
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    VALIDATION = "validation"
    PERMANENT = "permanent"
    FATAL = "fatal"


# 可重试的 HTTP 状态码（含 Cloudflare 52x 与 529 overloaded）
RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504, 520, 521, 522, 523, 524, 529})


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "FETCH_FAILED"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、provider 等）。
    """

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""

    kind = ErrorKind.TRANSIENT


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        if self.http_status in RETRYABLE_STATUS:
            return ErrorKind.TRANSIENT
        if self.http_status in (401, 403):
            return ErrorKind.FATAL
        return ErrorKind.PERMANENT


class RateLimitError(BusinessError):
    """Provider 限流错误，由上层负责重试/退避策略。"""

    kind = ErrorKind.TRANSIENT


class ValidationError(BusinessError):
    """参数或配置校验失败。"""

    kind = ErrorKind.VALIDATION


class BudgetExceededError(ValidationError):
    """评测所需的必需内容无法放进体积预算。"""


class AuthenticationError(BusinessError):
    """凭据缺失或被拒绝，继续执行没有意义。"""

    kind = ErrorKind.FATAL


class WorkspaceError(BusinessError):
    """工作区未初始化或根目录不可用。"""

    kind = ErrorKind.FATAL


class FetchError(BusinessError):
    """内容加载失败。transient=True 表示可以重试。"""

    def __init__(self, code: str, message: str, transient: bool = False, http_status: int = 502, **extra):
        super().__init__(code=code, message=message, http_status=http_status, **extra)
        self.transient = transient

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return ErrorKind.TRANSIENT if self.transient else ErrorKind.PERMANENT


class FatalToolError(BusinessError):
    """工具执行中出现的致命错误，由 ToolDispatcher 上抛给编排层。"""

    kind = ErrorKind.FATAL

    def __init__(self, code: str, message: str, tool_name: Optional[str] = None, **extra):
        super().__init__(code=code, message=message, http_status=500, tool_name=tool_name, **extra)
        self.tool_name = tool_name
