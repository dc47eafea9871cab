"""MCP stdio Bridge 应用入口。

包含 HTTP 服务生命周期管理和主入口点。
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys

from aiohttp import web

from .bridge import Bridge
from .config import get_config
from .web import create_app

__all__ = ["run_server", "main"]

logger = logging.getLogger(__name__)


async def run_server() -> None:
    """运行 HTTP 服务，直到收到 SIGINT/SIGTERM。

    每个请求独立启动 MCP 子进程，服务本身不持有任何子进程；
    关闭时 aiohttp 会取消仍在进行的请求，会话清理不受取消影响。
    """
    config = get_config()
    logger.info(f"Starting MCP stdio Bridge: {config}")

    if not config.read_credential():
        logger.warning(
            f"{config.credential_env} is not set; tools/list and tools/call will fail"
        )

    app = create_app(Bridge(config))
    runner = web.AppRunner(app)
    shutdown = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Windows 不支持 add_signal_handler，退回到 KeyboardInterrupt
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, shutdown.set)

    try:
        await runner.setup()
        site = web.TCPSite(runner, config.host, config.port)
        await site.start()
        logger.info(f"Listening on http://{config.host}:{config.port}")

        await shutdown.wait()
        logger.info("Shutdown signal received")

    finally:
        logger.info("run_server: entering finally block")
        await runner.cleanup()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)
        logger.info("run_server: cleanup completed")


def configure_logging() -> None:
    """配置日志输出。

    - MSB_LOG_DEBUG 开启：DEBUG 级别写入临时文件
    - 默认：INFO 级别输出到 stderr
    """
    config = get_config()
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 mcp_stdio_bridge 命名空间启用详细日志
    logging.getLogger("mcp_stdio_bridge").setLevel(log_level)


def main() -> None:
    """主入口点。"""
    configure_logging()
    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
