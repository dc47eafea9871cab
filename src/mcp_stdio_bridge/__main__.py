"""MCP stdio Bridge 入口点。

支持: python -m mcp_stdio_bridge
"""

from .app import main

if __name__ == "__main__":
    main()
