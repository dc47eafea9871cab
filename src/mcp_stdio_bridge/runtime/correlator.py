"""Request/response correlation for JSON-RPC over a byte stream.

RequestCorrelator allocates ids, writes requests through a writer callable and
keeps one PendingRequest per outstanding id. Responses are matched strictly
by id, so the peer may answer out of order. Every pending request settles
exactly once: by response, by its own deadline, or by `fail_all`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from mcp.types import METHOD_NOT_FOUND

from ..errors import BridgeError, RequestTimeoutError, UpstreamError
from ..messages import (
    MessageKind,
    classify_message,
    encode_error,
    encode_notification,
    encode_request,
    encode_result,
)

__all__ = ["PendingRequest", "RequestCorrelator"]

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 20.0


@dataclass
class PendingRequest:
    """An outstanding request.

    Attributes:
        request_id: Id written on the wire
        method: Request method
        future: One-shot completion handle
        deadline: Monotonic time after which the request fails
        created_at: Monotonic creation time
    """

    request_id: int
    method: str
    future: asyncio.Future[Any]
    deadline: float
    created_at: float = field(default_factory=time.monotonic)
    timer: asyncio.TimerHandle | None = None

    def __repr__(self) -> str:
        elapsed = time.monotonic() - self.created_at
        status = "done" if self.future.done() else "pending"
        return (
            f"PendingRequest(id={self.request_id}, method={self.method}, "
            f"status={status}, elapsed={elapsed:.1f}s)"
        )


class RequestCorrelator:
    """Tracks outstanding JSON-RPC requests keyed by id.

    Thread safety: none needed, all calls happen on the owning event loop.

    Example:
        ```python
        correlator = RequestCorrelator(child.write, drain=child.drain)

        # in the reader task
        for message in decoder.feed(chunk):
            correlator.on_message(message)

        # in the driver
        tools = await correlator.request("tools/list")
        ```
    """

    def __init__(
        self,
        writer: Callable[[bytes], None],
        *,
        drain: Callable[[], Awaitable[None]] | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._writer = writer
        self._drain = drain
        self.timeout = timeout
        self._next_id = 1
        self._pending: dict[int, PendingRequest] = {}
        self.notifications_dropped = 0
        self.unmatched_dropped = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: int) -> bool:
        return request_id in self._pending

    def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> asyncio.Future[Any]:
        """Write a request and return a future for its result.

        Raises:
            ConnectionResetError: The writer's stream is closed
        """
        loop = asyncio.get_running_loop()
        request_id = self._next_id
        self._next_id += 1

        self._writer(encode_request(request_id, method, params))

        timeout = self.timeout if timeout is None else timeout
        pending = PendingRequest(
            request_id=request_id,
            method=method,
            future=loop.create_future(),
            deadline=loop.time() + timeout,
        )
        pending.timer = loop.call_later(timeout, self._expire, request_id)
        self._pending[request_id] = pending
        logger.debug(f"-> id={request_id} {method}")
        return pending.future

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a request, flush it and wait for the result."""
        future = self.send(method, params, timeout=timeout)
        if self._drain is not None:
            await self._drain()
        return await future

    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Write a notification (no id, nothing to correlate)."""
        self._writer(encode_notification(method, params))
        logger.debug(f"-> notification {method}")

    def on_message(self, message: dict[str, Any]) -> None:
        """Route one decoded inbound message."""
        kind = classify_message(message)

        if kind is MessageKind.RESPONSE:
            self._on_response(message)
        elif kind is MessageKind.REQUEST:
            self._on_peer_request(message)
        else:
            # Notifications (progress, logging) and id-less payloads are not
            # correlated with anything.
            self.notifications_dropped += 1
            logger.debug(f"<- {kind.value} dropped: {message.get('method', '<no method>')}")

    def _on_response(self, message: dict[str, Any]) -> None:
        request_id = message["id"]
        if (
            not isinstance(request_id, int)
            or isinstance(request_id, bool)
            or request_id not in self._pending
        ):
            self.unmatched_dropped += 1
            logger.debug(f"<- response for unknown id={request_id!r} dropped")
            return

        error = message.get("error")
        if error is not None:
            if isinstance(error, dict):
                text = error.get("message") or "MCP error"
                code = error.get("code") if isinstance(error.get("code"), int) else None
                data = error.get("data")
            else:
                text, code, data = str(error), None, None
            self._settle(request_id, error=UpstreamError(text, code=code, data=data))
        else:
            result = message.get("result")
            self._settle(request_id, result=message if result is None else result)

    def _on_peer_request(self, message: dict[str, Any]) -> None:
        # Requests initiated by the child (ping, sampling, roots/list, ...)
        request_id = message["id"]
        method = message["method"]
        try:
            if method == "ping":
                self._writer(encode_result(request_id, {}))
            else:
                logger.debug(f"<- unsupported server request {method} id={request_id!r}")
                self._writer(
                    encode_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")
                )
        except (ConnectionResetError, BrokenPipeError, ValueError) as e:
            logger.debug(f"Cannot answer server request id={request_id!r}: {e}")

    def _expire(self, request_id: int) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        logger.debug(f"Request timed out: {pending}")
        self._settle(request_id, error=RequestTimeoutError(request_id, pending.method))

    def _settle(
        self,
        request_id: int,
        *,
        result: Any = None,
        error: BaseException | None = None,
    ) -> bool:
        """Complete a pending request exactly once.

        Returns:
            Whether a pending request was settled by this call
        """
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        if pending.timer is not None:
            pending.timer.cancel()
        if pending.future.done():
            # Awaiting side went away (cancelled by a timeout scope)
            return False
        if error is not None:
            pending.future.set_exception(error)
            logger.debug(f"<- id={request_id} {pending.method} failed: {error}")
        else:
            pending.future.set_result(result)
            logger.debug(f"<- id={request_id} {pending.method} ok")
        return True

    def fail_all(self, error: BridgeError) -> int:
        """Fail every outstanding request with `error`.

        Returns:
            Number of requests settled
        """
        settled = 0
        for request_id in list(self._pending):
            if self._settle(request_id, error=error):
                settled += 1
        return settled
