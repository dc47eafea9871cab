"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import shlex
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from mcp_stdio_bridge.config import Config  # noqa: E402

# 测试用 MCP 服务器
FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_mcp_server.py"

TEST_CREDENTIAL_ENV = "MSB_TEST_SECRET"
TEST_CREDENTIAL = "sk_test_fake_1234"


@pytest.fixture
def project_root() -> Path:
    """项目根目录。"""
    return PROJECT_ROOT


@pytest.fixture
def fake_server() -> Path:
    """测试用 MCP 服务器脚本路径。"""
    return FAKE_SERVER


@pytest.fixture
def credential(monkeypatch: pytest.MonkeyPatch) -> str:
    """设置凭据环境变量。"""
    monkeypatch.setenv(TEST_CREDENTIAL_ENV, TEST_CREDENTIAL)
    return TEST_CREDENTIAL


@pytest.fixture
def record_file(tmp_path: Path) -> Path:
    """测试服务器记录收到的方法名的文件。"""
    return tmp_path / "methods.txt"


@pytest.fixture
def make_config(record_file: Path) -> Callable[..., Config]:
    """构造指向测试服务器的配置。

    Example:
        config = make_config("hang", request_timeout=0.5)
    """

    def factory(mode: str = "normal", **overrides) -> Config:
        command = [
            sys.executable,
            str(FAKE_SERVER),
            "--mode",
            mode,
            "--record",
            str(record_file),
        ]
        values = {
            "credential_env": TEST_CREDENTIAL_ENV,
            "command": command,
            "request_timeout": 5.0,
            "hard_timeout": 10.0,
            "log_lines": 50,
        }
        values.update(overrides)
        return Config(**values)

    return factory


@pytest.fixture
def recorded_methods(record_file: Path) -> Callable[[], list[str]]:
    """读取测试服务器收到的方法名。"""

    def read() -> list[str]:
        if not record_file.exists():
            return []
        return record_file.read_text(encoding="utf-8").split()

    return read


@pytest.fixture
def server_command() -> Callable[[str], str]:
    """MSB_COMMAND 形式的测试服务器命令行。"""

    def build(mode: str = "normal") -> str:
        return shlex.join([sys.executable, str(FAKE_SERVER), "--mode", mode])

    return build
