"""MCP stdio Bridge - 无状态调用方与 stdio MCP 服务器之间的桥接。

每个外部调用启动一个新的 MCP 子进程，完成握手与一次业务调用后立即清理。

环境变量:
    STRIPE_SECRET_KEY: 子进程凭据（变量名可由 MSB_CREDENTIAL_ENV 修改）
    MSB_COMMAND: 子进程命令行（默认 npx -y @stripe/mcp）
    MSB_PORT: HTTP 监听端口 (默认 8080)

用法:
    uvx mcp-stdio-bridge
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
