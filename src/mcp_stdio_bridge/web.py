"""HTTP 入口（aiohttp）。

路由:
    POST /api/mcp   Shape A: {action, name?, arguments?}
    POST /mcp/ui    Shape B: JSON-RPC 风格调用（存根方法 + 透传）
    GET  /api/healthz  健康检查

所有响应都带 CORS 头；OPTIONS 返回 204，其他方法返回 405。
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any
from urllib.parse import parse_qsl

from aiohttp import web

from .bridge import Bridge

__all__ = ["BRIDGE_KEY", "create_app"]

logger = logging.getLogger(__name__)

BRIDGE_KEY = web.AppKey("bridge", Bridge)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

ALLOWED_METHODS = "POST, OPTIONS"


@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.StreamResponse:
    """为每个响应（包括错误响应）添加 CORS 头。"""
    try:
        response = await handler(request)
    except web.HTTPException as e:
        e.headers.update(CORS_HEADERS)
        raise
    response.headers.update(CORS_HEADERS)
    return response


@web.middleware
async def logging_middleware(request: web.Request, handler) -> web.StreamResponse:
    """记录请求耗时。"""
    req_id = uuid.uuid4().hex[:8]
    start = time.monotonic()
    logger.debug(f"HTTP {request.method} {request.path} req={req_id}")
    try:
        response = await handler(request)
    except Exception:
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.exception(
            f"HTTP {request.method} {request.path} req={req_id} failed "
            f"duration_ms={elapsed_ms:.1f}"
        )
        raise
    elapsed_ms = (time.monotonic() - start) * 1000
    logger.info(
        f"HTTP {request.method} {request.path} req={req_id} "
        f"status={response.status} duration_ms={elapsed_ms:.1f}"
    )
    return response


def _preflight_or_reject(request: web.Request) -> web.Response | None:
    """处理 OPTIONS 和非 POST 请求；POST 返回 None。"""
    if request.method == "OPTIONS":
        return web.Response(status=204)
    if request.method != "POST":
        return web.json_response(
            {"error": "Method Not Allowed. Use POST."},
            status=405,
            headers={"Allow": ALLOWED_METHODS},
        )
    return None


async def _read_body(request: web.Request) -> Any:
    """按 Content-Type 解析请求体。

    - application/json: JSON（解析失败返回 {"_raw": 原文}）
    - application/x-www-form-urlencoded: 表单字段
    - 其他: {"_raw": 原文}
    """
    raw = await request.text()
    if not raw:
        return {}
    content_type = request.content_type.lower()
    if "application/json" in content_type:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return {"_raw": raw}
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(raw))
    return {"_raw": raw}


async def handle_action(request: web.Request) -> web.Response:
    """POST /api/mcp（Shape A）。"""
    rejected = _preflight_or_reject(request)
    if rejected is not None:
        return rejected

    body = await _read_body(request)
    if not isinstance(body, dict):
        return web.json_response(
            {"error": "Invalid JSON body", "details": f"expected object, got {type(body).__name__}"},
            status=400,
        )

    bridge = request.app[BRIDGE_KEY]
    outcome = await bridge.execute(body)
    return web.json_response(outcome.to_envelope(), status=200 if outcome.success else 500)


async def handle_rpc(request: web.Request) -> web.Response:
    """POST /mcp/ui（Shape B）。"""
    rejected = _preflight_or_reject(request)
    if rejected is not None:
        return rejected

    try:
        body = json.loads(await request.text() or "{}")
    except json.JSONDecodeError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    bridge = request.app[BRIDGE_KEY]
    try:
        envelope = await bridge.handle_rpc(body)
    except Exception as e:
        logger.error(f"Unhandled error in /mcp/ui: {type(e).__name__}: {e}")
        return web.json_response({"error": "Unhandled error", "details": str(e)}, status=500)
    return web.json_response(envelope)


async def handle_health(request: web.Request) -> web.Response:
    """GET /api/healthz。"""
    return web.json_response({"ok": True})


def create_app(bridge: Bridge | None = None) -> web.Application:
    """创建 aiohttp 应用。

    Args:
        bridge: 转换层（默认使用全局配置创建）
    """
    app = web.Application(middlewares=[cors_middleware, logging_middleware])
    app[BRIDGE_KEY] = bridge or Bridge()
    app.router.add_route("*", "/api/mcp", handle_action)
    app.router.add_route("*", "/mcp/ui", handle_rpc)
    app.router.add_get("/api/healthz", handle_health)
    return app
