"""
mcphub - MCP 工具注册与执行

通过 JSON-RPC (stdio) 连接外部 MCP 服务器，把它们的工具与内置工具合并为
统一的工具目录，供 Agent 调用。
"""

__version__ = "0.1.0"

from .config import Config, MCPConfig, ServerConfig
from .schema import Tool, ToolCall, ToolResult


# MCP 支持 (延迟导入)
def get_mcp_module():
    """获取 MCP 模块"""
    from . import mcp

    return mcp


__all__ = [
    # Config
    "Config",
    "MCPConfig",
    "ServerConfig",
    # Schema
    "Tool",
    "ToolCall",
    "ToolResult",
    # MCP
    "get_mcp_module",
]
