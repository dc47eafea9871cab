"""MSB 环境变量配置管理。

环境变量:
    MSB_CREDENTIAL_ENV: 保存子进程凭据的环境变量名
        - 默认 STRIPE_SECRET_KEY
        - 该变量缺失时，请求在启动子进程之前即失败

    MSB_COMMAND: 子进程命令行（按 shell 规则拆分）
        - 未设置 = npx -y <MSB_PACKAGE>

    MSB_PACKAGE: 默认命令使用的 npm 包 (默认 @stripe/mcp)

    MSB_EXTRA_ARGS: 追加到命令后的参数 (默认 --tools=all)

    MSB_CREDENTIAL_FLAG: 传递凭据的参数名 (默认 --api-key)
        - 最终形式: --api-key=<凭据>

    MSB_REQUEST_TIMEOUT: 单个请求超时（秒，默认 20）

    MSB_HARD_TIMEOUT: 整个交换的硬超时（秒，默认 25）

    MSB_LOG_LINES: 响应中携带的最近输出行数 (默认 50)

    MSB_PROTOCOL_VERSION: 握手时声明的协议版本 (默认 2025-06-18)

    MSB_AGENT_ID / MSB_AGENT_TITLE / MSB_AGENT_DESCRIPTION:
        list_agents 存根返回的代理信息

    MSB_HOST / MSB_PORT: HTTP 监听地址 (默认 0.0.0.0:8080)
        - 未设置 MSB_PORT 时读取 PORT

    MSB_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)
"""

from __future__ import annotations

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_CREDENTIAL_ENV = "STRIPE_SECRET_KEY"
DEFAULT_PACKAGE = "@stripe/mcp"
DEFAULT_PROTOCOL_VERSION = "2025-06-18"

# 超时限制范围（秒）
_MIN_TIMEOUT = 0.1
_MAX_TIMEOUT = 600.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(value: str | None, default: float, low: float, high: float) -> float:
    """解析浮点数环境变量，限制在 [low, high] 范围内。"""
    if not value:
        return default
    try:
        return max(low, min(float(value), high))
    except ValueError:
        return default


def _parse_int(value: str | None, default: int, low: int, high: int) -> int:
    """解析整数环境变量，限制在 [low, high] 范围内。"""
    if not value:
        return default
    try:
        return max(low, min(int(value), high))
    except ValueError:
        return default


def _parse_argv(value: str | None) -> list[str]:
    """按 shell 规则拆分命令行。"""
    if not value or not value.strip():
        return []
    return shlex.split(value)


def _npx_command() -> str:
    return "npx.cmd" if os.name == "nt" else "npx"


@dataclass
class Config:
    """MSB 配置。

    Attributes:
        credential_env: 凭据环境变量名
        command: 子进程命令（为空时使用 npx + package）
        package: npm 包名
        extra_args: 追加参数
        credential_flag: 凭据参数名
        request_timeout: 单个请求超时（秒）
        hard_timeout: 整个交换的硬超时（秒）
        log_lines: 诊断缓冲区容量
        protocol_version: 握手协议版本
        agent_id / agent_title / agent_description: list_agents 存根数据
        host / port: HTTP 监听地址
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    credential_env: str = DEFAULT_CREDENTIAL_ENV
    command: list[str] = field(default_factory=list)
    package: str = DEFAULT_PACKAGE
    extra_args: list[str] = field(default_factory=lambda: ["--tools=all"])
    credential_flag: str = "--api-key"
    request_timeout: float = 20.0
    hard_timeout: float = 25.0
    log_lines: int = 50
    protocol_version: str = DEFAULT_PROTOCOL_VERSION
    agent_id: str = "stripe"
    agent_title: str = "Stripe MCP"
    agent_description: str = "Demo MCP via @stripe/mcp"
    host: str = "0.0.0.0"
    port: int = 8080
    log_debug: bool = False
    log_file: str | None = None

    def read_credential(self) -> str | None:
        """读取凭据（空字符串视为缺失）。"""
        return os.environ.get(self.credential_env) or None

    def base_command(self) -> list[str]:
        """子进程命令（不含参数）。"""
        if self.command:
            return list(self.command)
        return [_npx_command(), "-y", self.package]

    def build_argv(self, credential: str) -> list[str]:
        """拼装完整的子进程命令行。"""
        return [
            *self.base_command(),
            *self.extra_args,
            f"{self.credential_flag}={credential}",
        ]

    def __repr__(self) -> str:
        return (
            f"Config(credential_env={self.credential_env}, "
            f"command={' '.join(self.base_command())}, "
            f"request_timeout={self.request_timeout}, "
            f"hard_timeout={self.hard_timeout}, "
            f"log_lines={self.log_lines}, "
            f"protocol_version={self.protocol_version}, "
            f"listen={self.host}:{self.port}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "mcp-stdio-bridge"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"msb_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    env = os.environ
    log_debug = _parse_bool(env.get("MSB_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    extra_args = env.get("MSB_EXTRA_ARGS")

    return Config(
        credential_env=(env.get("MSB_CREDENTIAL_ENV") or DEFAULT_CREDENTIAL_ENV).strip(),
        command=_parse_argv(env.get("MSB_COMMAND")),
        package=env.get("MSB_PACKAGE") or DEFAULT_PACKAGE,
        extra_args=["--tools=all"] if extra_args is None else _parse_argv(extra_args),
        credential_flag=env.get("MSB_CREDENTIAL_FLAG") or "--api-key",
        request_timeout=_parse_float(
            env.get("MSB_REQUEST_TIMEOUT"), 20.0, _MIN_TIMEOUT, _MAX_TIMEOUT
        ),
        hard_timeout=_parse_float(
            env.get("MSB_HARD_TIMEOUT"), 25.0, _MIN_TIMEOUT, _MAX_TIMEOUT
        ),
        log_lines=_parse_int(env.get("MSB_LOG_LINES"), 50, 1, 10_000),
        protocol_version=env.get("MSB_PROTOCOL_VERSION") or DEFAULT_PROTOCOL_VERSION,
        agent_id=env.get("MSB_AGENT_ID") or "stripe",
        agent_title=env.get("MSB_AGENT_TITLE") or "Stripe MCP",
        agent_description=env.get("MSB_AGENT_DESCRIPTION") or "Demo MCP via @stripe/mcp",
        host=env.get("MSB_HOST") or "0.0.0.0",
        port=_parse_int(env.get("MSB_PORT") or env.get("PORT"), 8080, 1, 65535),
        log_debug=log_debug,
        log_file=log_file,
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
