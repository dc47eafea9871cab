"""Bridge 异常类。

每个异常都携带一个 JSON-RPC 错误码，边界层据此生成错误信封。
"""

from __future__ import annotations

from typing import Any

from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, PARSE_ERROR

__all__ = [
    "BridgeError",
    "PreconditionError",
    "InvalidRequestError",
    "SpawnError",
    "ProtocolError",
    "RequestTimeoutError",
    "SessionTimeoutError",
    "UpstreamError",
    "ChildExitedError",
]


class BridgeError(Exception):
    """Bridge 基础异常。

    Attributes:
        code: JSON-RPC 错误码
    """

    code: int = INTERNAL_ERROR

    @property
    def message(self) -> str:
        return str(self)


class PreconditionError(BridgeError):
    """前置条件失败（如缺少凭据环境变量），在启动子进程之前抛出。"""
    pass


class InvalidRequestError(BridgeError):
    """外部请求无效（未知 action、tools/call 缺少 name 等）。"""

    code = INVALID_PARAMS


class SpawnError(BridgeError):
    """子进程无法启动（命令无法解析）。

    Attributes:
        argv0: 尝试执行的命令
    """

    def __init__(self, argv0: str, reason: str) -> None:
        self.argv0 = argv0
        super().__init__(f"Failed to spawn '{argv0}': {reason}")


class ProtocolError(BridgeError):
    """单行输出不是合法的 JSON 对象。

    不会导致调用失败：解码器吸收它并记入诊断缓冲区。
    """

    code = PARSE_ERROR

    def __init__(self, line: str, reason: str) -> None:
        self.line = line
        super().__init__(f"Malformed line ({reason}): {line[:200]}")


class RequestTimeoutError(BridgeError):
    """单个请求超时。

    Attributes:
        request_id: 请求 ID
        method: 请求方法
    """

    def __init__(self, request_id: int, method: str) -> None:
        self.request_id = request_id
        self.method = method
        super().__init__(f"Timeout waiting for response to id={request_id} ({method})")


class SessionTimeoutError(BridgeError):
    """整个交换超过硬超时。"""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"MCP exchange exceeded hard timeout of {timeout:g}s")


class UpstreamError(BridgeError):
    """子进程对某个请求返回了结构化错误。

    Attributes:
        code: 子进程给出的错误码（缺省为 INTERNAL_ERROR）
        data: 子进程给出的附加数据
    """

    def __init__(self, message: str, code: int | None = None, data: Any = None) -> None:
        self.code = code if code is not None else INTERNAL_ERROR
        self.data = data
        super().__init__(message)


class ChildExitedError(BridgeError):
    """子进程在仍有未完成请求时关闭了 stdout。"""

    def __init__(self, returncode: int | None = None) -> None:
        self.returncode = returncode
        detail = f" (returncode={returncode})" if returncode is not None else ""
        super().__init__(f"MCP server closed its output{detail}")

