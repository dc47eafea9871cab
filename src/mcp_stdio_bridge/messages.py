"""消息模型定义。

- 子进程线路协议: JSON-RPC 2.0，每行一个 JSON 对象（出站请求由 mcp.types 序列化）
- 外部边界: Shape A（简化 action 调用）与 Shape B（JSON-RPC 风格调用）

设计原则：
1. 外部输入宽松解析 - 使用 extra='ignore' 忽略未知字段
2. 入站行先分类再处理 - response / request / notification / unidentified
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from mcp.types import ErrorData, JSONRPCError, JSONRPCRequest, JSONRPCResponse, RequestId
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator

from .errors import ProtocolError

__all__ = [
    # 线路协议
    "MessageKind",
    "classify_message",
    "encode_request",
    "encode_notification",
    "encode_result",
    "encode_error",
    "parse_line",
    # 外部边界
    "ActionRequest",
    "RpcRequest",
    "rpc_result",
    "rpc_error",
]

JSONRPC_VERSION = "2.0"


class MessageKind(str, Enum):
    """入站消息分类。"""

    RESPONSE = "response"
    REQUEST = "request"
    NOTIFICATION = "notification"
    UNIDENTIFIED = "unidentified"


def parse_line(line: str) -> dict[str, Any]:
    """解析一行输出为 JSON 对象。

    Raises:
        ProtocolError: 不是合法 JSON，或顶层不是对象
    """
    try:
        obj = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(line, f"invalid JSON: {e.msg}") from e
    if not isinstance(obj, dict):
        raise ProtocolError(line, f"expected object, got {type(obj).__name__}")
    return obj


def classify_message(message: dict[str, Any]) -> MessageKind:
    """按 id / method 成员判断消息种类。"""
    has_id = "id" in message and message["id"] is not None
    has_method = isinstance(message.get("method"), str)
    if has_id and has_method:
        return MessageKind.REQUEST
    if has_id:
        return MessageKind.RESPONSE
    if has_method:
        return MessageKind.NOTIFICATION
    return MessageKind.UNIDENTIFIED


def _encode(model: BaseModel) -> bytes:
    return (model.model_dump_json(by_alias=True, exclude_none=True) + "\n").encode("utf-8")


def encode_request(request_id: int, method: str, params: dict[str, Any] | None) -> bytes:
    """序列化一个请求（以换行结尾）。"""
    return _encode(
        JSONRPCRequest(jsonrpc=JSONRPC_VERSION, id=request_id, method=method, params=params or {})
    )


def encode_notification(method: str, params: dict[str, Any] | None = None) -> bytes:
    """序列化一个通知（无 id）。"""
    payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params:
        payload["params"] = params
    return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")


def encode_result(request_id: RequestId, result: dict[str, Any]) -> bytes:
    """序列化对子进程请求的成功响应。"""
    return _encode(JSONRPCResponse(jsonrpc=JSONRPC_VERSION, id=request_id, result=result))


def encode_error(request_id: RequestId, code: int, message: str) -> bytes:
    """序列化对子进程请求的错误响应。"""
    return _encode(
        JSONRPCError(
            jsonrpc=JSONRPC_VERSION,
            id=request_id,
            error=ErrorData(code=code, message=message),
        )
    )


class ActionRequest(BaseModel):
    """Shape A 请求: {action, name?, arguments?}。"""

    model_config = ConfigDict(extra="ignore")

    action: str = "tools/list"
    name: str | None = None
    arguments: dict[str, Any] = Field(default_factory=dict)

    @field_validator("action", mode="before")
    @classmethod
    def _default_action(cls, v: Any) -> Any:
        # null / "" 视为未提供
        return v or "tools/list"

    @field_validator("arguments", mode="before")
    @classmethod
    def _default_arguments(cls, v: Any) -> Any:
        return {} if v is None else v


class RpcRequest(BaseModel):
    """Shape B 请求: {jsonrpc, id, method, params}。

    method 缺省为 initialize，id 缺省为 None（响应中原样回传）。
    null 或空字符串的 method / params 使用缺省值；id 不做类型转换（true 不会变成 1）。
    """

    model_config = ConfigDict(extra="ignore")

    jsonrpc: str = JSONRPC_VERSION
    id: StrictInt | StrictStr | None = None
    method: str = "initialize"
    params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("jsonrpc", mode="before")
    @classmethod
    def _default_jsonrpc(cls, v: Any) -> Any:
        return v or JSONRPC_VERSION

    @field_validator("method", mode="before")
    @classmethod
    def _default_method(cls, v: Any) -> Any:
        return v or "initialize"

    @field_validator("params", mode="before")
    @classmethod
    def _default_params(cls, v: Any) -> Any:
        return {} if v is None else v


def rpc_result(request_id: RequestId | None, result: Any) -> dict[str, Any]:
    """构造 Shape B 成功信封。"""
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def rpc_error(
    request_id: RequestId | None,
    code: int,
    message: str,
    data: Any = None,
) -> dict[str, Any]:
    """构造 Shape B 错误信封。"""
    error = ErrorData(code=code, message=message, data=data)
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": error.model_dump(exclude_none=True),
    }
