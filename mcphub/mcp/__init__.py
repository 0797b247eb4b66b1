"""MCP (Model Context Protocol) 支持模块

实现 MCP 协议客户端与多服务器工具注册表，通过子进程 stdio 连接 MCP 服务器并调用其工具。
"""

from ..errors import (
    ConnectionClosed,
    HandshakeError,
    InvalidToolName,
    MCPError,
    ProtocolError,
    RPCError,
    ServerNotFound,
    ServerNotReady,
    SpawnError,
    Timeout,
    ToolExecutionError,
    ToolNotFound,
    TransportError,
)
from .client import ClientState, MCPClient
from .protocol import (
    LATEST_PROTOCOL_VERSION,
    CallToolResult,
    ImageContent,
    JSONRPCError,
    JSONRPCRequest,
    JSONRPCResponse,
    MCPTool,
    ResourceContent,
    TextContent,
    decode_response,
    encode_notification,
    encode_request,
)
from .registry import MCPToolRegistry
from .tools import (
    call_result_to_tool_result,
    qualify_tool_name,
    render_content,
    render_contents,
    split_tool_name,
    tool_call_to_params,
    tool_to_wire_tool,
    wire_tool_to_tool,
)
from .transport import StdioTransport

__all__ = [
    # Errors
    "MCPError",
    "SpawnError",
    "HandshakeError",
    "TransportError",
    "ConnectionClosed",
    "Timeout",
    "ProtocolError",
    "RPCError",
    "ToolNotFound",
    "ServerNotFound",
    "ServerNotReady",
    "InvalidToolName",
    "ToolExecutionError",
    # Protocol
    "LATEST_PROTOCOL_VERSION",
    "JSONRPCRequest",
    "JSONRPCResponse",
    "JSONRPCError",
    "MCPTool",
    "TextContent",
    "ImageContent",
    "ResourceContent",
    "CallToolResult",
    "encode_request",
    "encode_notification",
    "decode_response",
    # Transport
    "StdioTransport",
    # Client
    "MCPClient",
    "ClientState",
    # Registry
    "MCPToolRegistry",
    # Translation
    "qualify_tool_name",
    "split_tool_name",
    "wire_tool_to_tool",
    "tool_to_wire_tool",
    "tool_call_to_params",
    "render_content",
    "render_contents",
    "call_result_to_tool_result",
]
