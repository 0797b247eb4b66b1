"""错误类型

MCP 客户端、传输层、注册表与内置工具共用的异常层次。
"""

from __future__ import annotations

from typing import Any, Optional


class MCPError(Exception):
    """MCP 错误基类"""

    pass


class SpawnError(MCPError):
    """启动服务器进程失败"""

    pass


class HandshakeError(MCPError):
    """initialize 握手失败"""

    pass


class TransportError(MCPError):
    """传输层错误"""

    pass


class ConnectionClosed(TransportError):
    """服务器关闭了 stdout (EOF)"""

    pass


class Timeout(TransportError):
    """等待响应超时"""

    pass


class ProtocolError(MCPError):
    """协议错误 (JSON 格式错误、响应不合法)"""

    pass


class RPCError(ProtocolError):
    """服务器返回的 JSON-RPC error 对象"""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"JSON-RPC 错误 [{code}]: {message}")


class ToolNotFound(MCPError):
    """工具不存在"""

    pass


class ServerNotFound(MCPError):
    """服务器不存在"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"MCP 服务器不存在: {name}")


class ServerNotReady(MCPError):
    """服务器未就绪"""

    def __init__(self, name: str, state: str = ""):
        self.name = name
        self.state = state
        detail = f" (状态: {state})" if state else ""
        super().__init__(f"MCP 服务器未就绪: {name}{detail}")


class InvalidToolName(MCPError):
    """工具名称格式错误，应为 server:tool"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"无效的工具名称: {name!r}，应为 'server:tool' 格式")


class ToolExecutionError(MCPError):
    """工具执行失败 (服务器返回 is_error)"""

    def __init__(self, message: str, result: Optional[Any] = None):
        self.result = result
        super().__init__(message)
