"""MCP 工具转换层

在 MCP 线上格式 (MCPTool / 内容项 / CallToolResult) 与 Agent 内部模型
(Tool / ToolCall / ToolResult) 之间转换。
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Tuple

from ..schema import Tool, ToolCall, ToolResult
from ..errors import InvalidToolName
from .protocol import CallToolResult, ImageContent, MCPTool, ResourceContent, TextContent

# 命名空间分隔符
NAMESPACE_SEPARATOR = ":"


def qualify_tool_name(server: str, tool: str) -> str:
    """生成带命名空间的工具名: server:tool"""
    return f"{server}{NAMESPACE_SEPARATOR}{tool}"


def split_tool_name(qualified_name: str) -> Tuple[str, str]:
    """按第一个冒号拆分工具名

    工具名本身可以包含冒号: "fs:a:b" -> ("fs", "a:b")

    Raises:
        InvalidToolName: 没有冒号或服务器部分为空
    """
    server, sep, tool = qualified_name.partition(NAMESPACE_SEPARATOR)
    if not sep or not server:
        raise InvalidToolName(qualified_name)
    return server, tool


def wire_tool_to_tool(wire: MCPTool, server: Optional[str] = None) -> Tool:
    """MCPTool -> Tool

    给定 server 时工具名加上命名空间。
    """
    name = qualify_tool_name(server, wire.name) if server else wire.name
    return Tool(
        name=name,
        description=wire.description or f"MCP 工具: {wire.name}",
        input_schema=wire.input_schema,
        is_mcp=True,
    )


def tool_to_wire_tool(tool: Tool) -> MCPTool:
    """Tool -> MCPTool (去掉命名空间)"""
    name = tool.name
    if tool.is_mcp and NAMESPACE_SEPARATOR in name:
        _, name = split_tool_name(name)
    return MCPTool(name=name, description=tool.description or None, input_schema=tool.input_schema)


def tool_call_to_params(call: ToolCall) -> Dict[str, Any]:
    """ToolCall -> tools/call 请求参数"""
    _, tool_name = split_tool_name(call.name)
    return {"name": tool_name, "arguments": call.arguments}


def render_content(item: Any) -> str:
    """把单个内容项转换为可读文本"""
    if isinstance(item, TextContent):
        return item.text
    if isinstance(item, ImageContent):
        return f"Image ({item.mime_type}): {len(item.data)} bytes"
    if isinstance(item, ResourceContent):
        return f"Resource: {item.resource_uri}"
    # 未经校验的字典
    if isinstance(item, dict):
        kind = item.get("type")
        if kind == "text":
            return str(item.get("text", ""))
        if kind == "image":
            mime = item.get("mime_type") or item.get("mimeType") or "application/octet-stream"
            return f"Image ({mime}): {len(item.get('data', ''))} bytes"
        if kind == "resource":
            uri = item.get("uri") or (item.get("resource") or {}).get("uri", "")
            return f"Resource: {uri}"
    return str(item)


def render_contents(items: Iterable[Any]) -> str:
    """逐项转换并以换行连接"""
    return "\n".join(render_content(item) for item in items)


def call_result_to_tool_result(tool_call_id: str, result: CallToolResult) -> ToolResult:
    """CallToolResult -> ToolResult

    is_error 时 result 为空，error 为内容文本。
    """
    text = render_contents(result.content)
    if result.is_error:
        return ToolResult(tool_call_id=tool_call_id, result=None, error=text or "工具执行失败")
    return ToolResult(tool_call_id=tool_call_id, result=text)
