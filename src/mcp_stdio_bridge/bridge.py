"""外部调用转换模块。

两种外部调用形式：
- Shape A: {action, name?, arguments?} → {action, result, logs} / {error, logs}
- Shape B: {jsonrpc, id, method, params} → {jsonrpc, id, result} / {jsonrpc, id, error}

Shape B 的引导/管理方法（子进程并不实现）由封闭的存根表直接应答，
不会启动子进程；tools/list 与 tools/call 透传给 SessionDriver。
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any

from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND
from pydantic import ValidationError

from .config import Config, get_config
from .errors import InvalidRequestError, UpstreamError
from .messages import ActionRequest, RpcRequest, rpc_error, rpc_result
from .session import ExchangeResult, SessionDriver

__all__ = [
    "Bridge",
    "PASSTHROUGH_METHODS",
    "STUB_METHODS",
    "SUPPORTED_METHODS",
]

logger = logging.getLogger(__name__)

StubHandler = Callable[[dict[str, Any], Config], dict[str, Any]]


def _initialize(params: dict[str, Any], config: Config) -> dict[str, Any]:
    return {"ok": True}


def _list_agents(params: dict[str, Any], config: Config) -> dict[str, Any]:
    return {
        "agents": [
            {
                "id": config.agent_id,
                "title": config.agent_title,
                "description": config.agent_description,
                "starterMessages": [
                    "List products",
                    'Create a product named "Premium Plan"',
                    "Show me the latest prices",
                ],
            }
        ]
    }


def _list_chats(params: dict[str, Any], config: Config) -> dict[str, Any]:
    return {"chats": []}


def _create_chat(params: dict[str, Any], config: Config) -> dict[str, Any]:
    return {"id": uuid.uuid4().hex[:12]}


def _ack(params: dict[str, Any], config: Config) -> dict[str, Any]:
    return {"ok": True}


def _list_prompts(params: dict[str, Any], config: Config) -> dict[str, Any]:
    return {"prompts": []}


# 存根方法表（方法名 → 处理函数），只读
STUB_METHODS: Mapping[str, StubHandler] = MappingProxyType({
    "initialize": _initialize,
    "list_agents": _list_agents,
    "list_chats": _list_chats,
    "create_chat": _create_chat,
    "update_chat": _ack,
    "delete_chat": _ack,
    "prompts/list": _list_prompts,
})

# 透传给子进程的方法
PASSTHROUGH_METHODS = frozenset({"tools/list", "tools/call"})

SUPPORTED_METHODS = frozenset(STUB_METHODS) | PASSTHROUGH_METHODS


class Bridge:
    """外部调用与 MCP 子进程之间的转换层。

    Example:
        ```python
        bridge = Bridge()

        # Shape A
        envelope = await bridge.run_action({"action": "tools/list"})

        # Shape B
        response = await bridge.handle_rpc({"jsonrpc": "2.0", "id": 7, "method": "list_chats"})
        ```
    """

    def __init__(
        self,
        config: Config | None = None,
        driver: SessionDriver | None = None,
    ) -> None:
        self.config = config or get_config()
        self.driver = driver or SessionDriver(self.config)

    async def execute(self, payload: dict[str, Any]) -> ExchangeResult:
        """执行 Shape A 请求，返回交换结果。"""
        try:
            request = ActionRequest.model_validate(payload)
        except ValidationError as e:
            error = InvalidRequestError(f"Invalid request: {e.errors()[0]['msg']}")
            return ExchangeResult(action=str(payload.get("action", "")), error=error)

        logger.debug(f"[Shape A] action={request.action} name={request.name}")
        return await self.driver.run(request.action, request.name, request.arguments)

    async def run_action(self, payload: dict[str, Any]) -> dict[str, Any]:
        """执行 Shape A 请求，返回 {action, result, logs} 或 {error, logs}。"""
        outcome = await self.execute(payload)
        return outcome.to_envelope()

    async def handle_rpc(self, payload: dict[str, Any]) -> dict[str, Any]:
        """执行 Shape B 请求。每个响应都携带请求的 id。"""
        raw_id = payload.get("id")
        try:
            request = RpcRequest.model_validate(payload)
        except ValidationError as e:
            request_id = raw_id if isinstance(raw_id, (int, str)) else None
            return rpc_error(
                request_id, INVALID_REQUEST, f"Invalid request: {e.errors()[0]['msg']}"
            )

        request_id = request.id
        method = request.method
        logger.debug(f"[Shape B] id={request_id!r} method={method}")

        stub = STUB_METHODS.get(method)
        if stub is not None:
            return rpc_result(request_id, stub(request.params, self.config))

        if method not in PASSTHROUGH_METHODS:
            return rpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

        try:
            return await self._passthrough(request_id, method, request.params)
        except asyncio.CancelledError:
            logger.info(f"[Shape B] {method} cancelled")
            raise
        except Exception as e:
            logger.error(f"[Shape B] {method} failed: {type(e).__name__}: {e}")
            return rpc_error(request_id, INTERNAL_ERROR, str(e))

    async def _passthrough(
        self,
        request_id: int | str | None,
        method: str,
        params: dict[str, Any],
    ) -> dict[str, Any]:
        if method == "tools/call":
            name = params.get("name")
            if not name or not isinstance(name, str):
                return rpc_error(request_id, INVALID_PARAMS, "Missing 'name' for tools/call")
            arguments = params.get("arguments") or {}
            if not isinstance(arguments, dict):
                return rpc_error(request_id, INVALID_PARAMS, "'arguments' must be an object")
            outcome = await self.driver.run(method, name, arguments)
        else:
            outcome = await self.driver.run(method)

        if outcome.success:
            return rpc_result(request_id, outcome.result)
        return self._error_envelope(request_id, outcome)

    @staticmethod
    def _error_envelope(request_id: int | str | None, outcome: ExchangeResult) -> dict[str, Any]:
        error = outcome.error
        assert error is not None
        if isinstance(error, UpstreamError):
            return rpc_error(request_id, error.code, error.message, error.data)
        return rpc_error(request_id, error.code, error.message, {"logs": outcome.logs})
