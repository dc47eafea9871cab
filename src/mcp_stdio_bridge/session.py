"""单次交换的会话驱动模块。

每个外部调用拥有独立的子进程和待决请求表：
- McpSession: 子进程 + 帧解码器 + 请求关联器，作为异步上下文管理器使用，
  退出时无条件清理（关闭 stdin、强制终止子进程）
- SessionDriver: 启动 → 握手 → 一次业务调用 → 清理，并施加整体硬超时

阶段: IDLE → SPAWNED → INITIALIZED → CALLING → {COMPLETED | FAILED} → TERMINATED
任何阶段中止都会到达 TERMINATED，清理只执行一次。
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import anyio
from mcp.types import Implementation

from . import __version__
from .config import Config, get_config
from .errors import (
    BridgeError,
    ChildExitedError,
    InvalidRequestError,
    PreconditionError,
    SessionTimeoutError,
)
from .runtime import (
    ChildProcess,
    DiagnosticLog,
    FrameDecoder,
    ProcessSpec,
    ProcessSupervisor,
    RequestCorrelator,
)

__all__ = [
    "SUPPORTED_ACTIONS",
    "ExchangeResult",
    "McpSession",
    "SessionDriver",
    "SessionPhase",
]

logger = logging.getLogger(__name__)

# 外部可请求的动作
SUPPORTED_ACTIONS = ("initialize", "tools/list", "tools/call")

CLIENT_NAME = "mcp-stdio-bridge"

# 单次读取 stdout 的最大字节数
READ_CHUNK_SIZE = 64 * 1024


class SessionPhase(Enum):
    """会话阶段。"""

    IDLE = "idle"
    SPAWNED = "spawned"
    INITIALIZED = "initialized"
    CALLING = "calling"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"


@dataclass
class ExchangeResult:
    """一次交换的结果。

    Attributes:
        action: 请求的动作
        result: 成功时的结果
        error: 失败时的异常
        logs: 子进程最近的输出行
        pid: 子进程 PID（未启动时为 None）
        phases: 会话经历的阶段
    """

    action: str
    result: Any = None
    error: BridgeError | None = None
    logs: list[str] = field(default_factory=list)
    pid: int | None = None
    phases: list[SessionPhase] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None

    def to_envelope(self) -> dict[str, Any]:
        """转换为 Shape A 响应。"""
        if self.error is not None:
            return {"error": self.error.message, "logs": self.logs}
        return {"action": self.action, "result": self.result, "logs": self.logs}


class McpSession:
    """一个子进程上的 MCP 会话。

    Example:
        ```python
        async with McpSession(spec) as session:
            await session.initialize("2025-06-18")
            tools = await session.call("tools/list")
        # 此处子进程已终止
        ```
    """

    def __init__(
        self,
        spec: ProcessSpec,
        *,
        supervisor: ProcessSupervisor | None = None,
        request_timeout: float = 20.0,
        log: DiagnosticLog | None = None,
    ) -> None:
        self.spec = spec
        self.supervisor = supervisor or ProcessSupervisor()
        self.request_timeout = request_timeout
        self.log = log if log is not None else DiagnosticLog()
        self.decoder = FrameDecoder(self.log)
        self.phase = SessionPhase.IDLE
        self.history: list[SessionPhase] = [SessionPhase.IDLE]
        self.child: ChildProcess | None = None
        self.correlator: RequestCorrelator | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def logs(self) -> list[str]:
        return self.log.snapshot()

    def _transition(self, phase: SessionPhase) -> None:
        if self.phase is phase:
            return
        logger.debug(f"Session phase {self.phase.value} -> {phase.value}")
        self.phase = phase
        self.history.append(phase)

    async def __aenter__(self) -> McpSession:
        try:
            await self.start()
        except BaseException:
            self._transition(SessionPhase.FAILED)
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None and self.phase is not SessionPhase.COMPLETED:
            self._transition(SessionPhase.FAILED)
        await self.close()

    async def start(self) -> None:
        """启动子进程及读取任务。"""
        child = await self.supervisor.spawn(self.spec)
        self.child = child
        self.correlator = RequestCorrelator(
            child.write,
            drain=child.drain,
            timeout=self.request_timeout,
        )
        child.start_stderr_drain()
        self._reader_task = asyncio.create_task(
            self._read_stdout(child), name=f"msb-stdout-{child.pid}"
        )
        self._transition(SessionPhase.SPAWNED)

    async def _read_stdout(self, child: ChildProcess) -> None:
        """读取 stdout，解码并分发消息，直到 EOF。"""
        assert self.correlator is not None
        stdout = child.stdout
        while True:
            chunk = await stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            for message in self.decoder.feed(chunk):
                self.correlator.on_message(message)

        for message in self.decoder.flush():
            self.correlator.on_message(message)

        # EOF：不必等待各自的超时
        failed = self.correlator.fail_all(ChildExitedError(child.returncode))
        if failed:
            logger.info(
                f"MCP server closed stdout with {failed} request(s) pending pid={child.pid}"
            )

    async def initialize(
        self,
        protocol_version: str,
        capabilities: dict[str, Any] | None = None,
    ) -> Any:
        """握手：声明协议版本和能力，等待响应后发送 initialized 通知。"""
        assert self.correlator is not None
        if capabilities is None:
            capabilities = {
                "roots": {"listChanged": False},
                "sampling": {},
                "elicitation": {},
            }
        client_info = Implementation(name=CLIENT_NAME, version=__version__)
        result = await self._request(
            "initialize",
            {
                "protocolVersion": protocol_version,
                "capabilities": capabilities,
                "clientInfo": client_info.model_dump(exclude_none=True),
            },
        )
        try:
            self.correlator.notify("notifications/initialized")
        except (ConnectionResetError, BrokenPipeError) as e:
            raise ChildExitedError(self.child.returncode if self.child else None) from e
        self._transition(SessionPhase.INITIALIZED)
        return result

    async def call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """发起业务调用并等待结果。"""
        assert self.correlator is not None
        self._transition(SessionPhase.CALLING)
        result = await self._request(method, params)
        self._transition(SessionPhase.COMPLETED)
        return result

    async def _request(self, method: str, params: dict[str, Any] | None) -> Any:
        assert self.correlator is not None and self.child is not None
        try:
            return await self.correlator.request(method, params)
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.debug(f"Writing {method} failed: {e}")
            raise ChildExitedError(self.child.returncode) from e

    def finish(self) -> None:
        """无业务调用时直接标记完成。"""
        self._transition(SessionPhase.COMPLETED)

    async def close(self) -> None:
        """清理会话（只执行一次），不受取消影响。"""
        if self._closed:
            return
        self._closed = True

        cleanup = asyncio.ensure_future(self._do_close())
        try:
            await asyncio.shield(cleanup)
        except asyncio.CancelledError:
            # 调用方被取消时仍等待清理完成
            await cleanup
            raise

    async def _do_close(self) -> None:
        if self.correlator is not None:
            self.correlator.fail_all(BridgeError("MCP session closed"))

        if self.child is not None:
            await self.supervisor.kill(self.child)

        task, self._reader_task = self._reader_task, None
        if task is not None:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"stdout reader failed: {e}")

        self._transition(SessionPhase.TERMINATED)


class SessionDriver:
    """驱动一次完整的外部调用。

    每次 run() 都启动新的子进程，调用之间不共享任何状态。

    Example:
        ```python
        driver = SessionDriver(config)
        outcome = await driver.run("tools/call", name="list_products", arguments={"limit": 5})
        if outcome.success:
            print(outcome.result)
        ```
    """

    def __init__(
        self,
        config: Config | None = None,
        supervisor: ProcessSupervisor | None = None,
    ) -> None:
        self.config = config or get_config()
        self.supervisor = supervisor or ProcessSupervisor()

    def require_credential(self) -> str:
        """读取凭据。

        Raises:
            PreconditionError: 凭据环境变量缺失
        """
        credential = self.config.read_credential()
        if not credential:
            raise PreconditionError(f"Missing {self.config.credential_env} env.")
        return credential

    def build_spec(self, credential: str) -> ProcessSpec:
        return ProcessSpec(
            argv=self.config.build_argv(credential),
            redact=(credential,),
        )

    @staticmethod
    def validate(action: str, name: str | None) -> None:
        """在启动子进程之前校验动作。

        Raises:
            InvalidRequestError: 动作不受支持，或 tools/call 缺少 name
        """
        if action not in SUPPORTED_ACTIONS:
            raise InvalidRequestError(f"Unsupported action: {action}")
        if action == "tools/call" and not name:
            raise InvalidRequestError("Missing 'name' for tools/call")

    async def run(
        self,
        action: str,
        name: str | None = None,
        arguments: dict[str, Any] | None = None,
    ) -> ExchangeResult:
        """执行一次交换，所有失败都转换为 ExchangeResult.error。"""
        log = DiagnosticLog(self.config.log_lines)
        session: McpSession | None = None
        try:
            credential = self.require_credential()
            self.validate(action, name)
            session = McpSession(
                self.build_spec(credential),
                supervisor=self.supervisor,
                request_timeout=self.config.request_timeout,
                log=log,
            )
            async with session:
                result = await self._exchange(session, action, name, arguments or {})
            logger.info(f"MCP exchange completed: action={action}")
            return ExchangeResult(
                action=action,
                result=result,
                logs=log.snapshot(),
                pid=session.child.pid if session.child else None,
                phases=list(session.history),
            )

        except BridgeError as e:
            logger.warning(f"MCP exchange failed: action={action} {type(e).__name__}: {e}")
            return ExchangeResult(
                action=action,
                error=e,
                logs=log.snapshot(),
                pid=session.child.pid if session and session.child else None,
                phases=list(session.history) if session else [],
            )

    async def _exchange(
        self,
        session: McpSession,
        action: str,
        name: str | None,
        arguments: dict[str, Any],
    ) -> Any:
        hard_timeout = self.config.hard_timeout
        try:
            with anyio.fail_after(hard_timeout):
                await session.initialize(self.config.protocol_version)

                if action == "initialize":
                    session.finish()
                    return {"ok": True, "note": "Initialized MCP session (one-shot)"}
                if action == "tools/list":
                    return await session.call("tools/list", {})
                return await session.call(
                    "tools/call",
                    {
                        "name": name,
                        "arguments": arguments,
                        "_meta": {"progressToken": uuid.uuid4().hex[:12]},
                    },
                )
        except TimeoutError as e:
            raise SessionTimeoutError(hard_timeout) from e
