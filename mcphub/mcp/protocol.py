"""MCP 协议类型定义与编解码

基于 JSON-RPC 2.0 和 MCP 规范实现，消息以换行分隔 (一行一个 JSON 对象)。
参考: https://modelcontextprotocol.io/specification/
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import ProtocolError, RPCError

# =============================================================================
# JSON-RPC 2.0 基础类型
# =============================================================================


class JSONRPCRequest(BaseModel):
    """JSON-RPC 2.0 请求"""

    jsonrpc: Literal["2.0"] = "2.0"
    id: int
    method: str
    params: Optional[Dict[str, Any]] = None


class JSONRPCNotification(BaseModel):
    """JSON-RPC 2.0 通知 (无 id)"""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Optional[Dict[str, Any]] = None


class JSONRPCError(BaseModel):
    """JSON-RPC 2.0 错误"""

    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCResponse(BaseModel):
    """JSON-RPC 2.0 响应"""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int, None] = None
    result: Optional[Any] = None
    error: Optional[JSONRPCError] = None


# =============================================================================
# MCP 协议版本与初始化
# =============================================================================

LATEST_PROTOCOL_VERSION = "2024-11-05"


class Implementation(BaseModel):
    """客户端/服务器实现信息"""

    name: str
    version: str = "0.0.0"


class ClientCapabilities(BaseModel):
    """客户端能力"""

    sampling: Optional[Dict[str, Any]] = Field(default_factory=dict)
    experimental: Optional[Dict[str, Any]] = None


class InitializeParams(BaseModel):
    """初始化请求参数"""

    protocolVersion: str = LATEST_PROTOCOL_VERSION
    capabilities: ClientCapabilities = Field(default_factory=ClientCapabilities)
    clientInfo: Implementation


class InitializeResult(BaseModel):
    """初始化响应结果

    不同服务器实现差异较大，这里只做宽松解析。
    """

    model_config = ConfigDict(extra="allow")

    protocolVersion: Optional[str] = None
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    serverInfo: Optional[Implementation] = None
    instructions: Optional[str] = None


# =============================================================================
# MCP 工具类型
# =============================================================================


class MCPTool(BaseModel):
    """MCP 工具定义 (线上格式)"""

    name: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        validation_alias=AliasChoices("input_schema", "inputSchema"),
    )


class ListToolsResult(BaseModel):
    """tools/list 响应"""

    tools: List[MCPTool] = Field(default_factory=list)
    nextCursor: Optional[str] = None


class CallToolParams(BaseModel):
    """tools/call 请求参数"""

    name: str
    arguments: Optional[Any] = None


class TextContent(BaseModel):
    """文本内容"""

    type: Literal["text"] = "text"
    text: str = ""


class ImageContent(BaseModel):
    """图片内容"""

    type: Literal["image"] = "image"
    data: str = ""  # base64 编码
    mime_type: str = Field(
        default="application/octet-stream",
        validation_alias=AliasChoices("mime_type", "mimeType"),
    )


class ResourceContent(BaseModel):
    """资源内容

    兼容两种格式: 顶层 uri，或嵌套的 resource 对象。
    """

    type: Literal["resource"] = "resource"
    uri: Optional[str] = None
    resource: Optional[Dict[str, Any]] = None

    @property
    def resource_uri(self) -> str:
        if self.uri:
            return self.uri
        if self.resource:
            return str(self.resource.get("uri", ""))
        return ""


# 内容类型联合
ContentItem = Annotated[
    Union[TextContent, ImageContent, ResourceContent],
    Field(discriminator="type"),
]


class CallToolResult(BaseModel):
    """tools/call 响应"""

    content: List[ContentItem] = Field(default_factory=list)
    is_error: bool = Field(
        default=False,
        validation_alias=AliasChoices("is_error", "isError"),
    )

    @field_validator("is_error", mode="before")
    @classmethod
    def _none_is_false(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("content", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value


# =============================================================================
# 编解码
# =============================================================================


class RequestIdCounter:
    """请求 ID 生成器，每个连接从 1 开始严格递增"""

    def __init__(self) -> None:
        self._value = 0

    @property
    def current(self) -> int:
        return self._value

    def next(self) -> int:
        self._value += 1
        return self._value


def encode_request(request_id: int, method: str, params: Optional[Dict[str, Any]] = None) -> str:
    """编码 JSON-RPC 请求为一行 (以换行结尾)"""
    if isinstance(request_id, bool) or not isinstance(request_id, int) or request_id < 1:
        raise ValueError(f"请求 ID 必须是正整数: {request_id!r}")
    request = JSONRPCRequest(id=request_id, method=method, params=params)
    # params 为 None 时也保留该字段
    payload = request.model_dump()
    return json.dumps(payload, ensure_ascii=False) + "\n"


def encode_notification(method: str, params: Optional[Dict[str, Any]] = None) -> str:
    """编码 JSON-RPC 通知 (无 id，不期待响应)"""
    notification = JSONRPCNotification(method=method, params=params)
    return notification.model_dump_json(exclude_none=True) + "\n"


def parse_line(line: Union[str, bytes]) -> Dict[str, Any]:
    """解析一行 JSON-RPC 消息"""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"JSON 解析失败: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError(f"JSON-RPC 消息必须是对象: {line.strip()[:200]}")
    return data


def is_notification(message: Dict[str, Any]) -> bool:
    """是否为服务器发来的通知/请求 (有 method)"""
    return "method" in message


def decode_response(
    line: Union[str, bytes, Dict[str, Any]],
    expected_id: Optional[int] = None,
) -> Any:
    """解码 JSON-RPC 响应

    Returns:
        响应中的 result (缺省为 None)

    Raises:
        RPCError: 响应携带 error 字段
        ProtocolError: JSON 格式错误或不是合法的 JSON-RPC 响应
    """
    data = line if isinstance(line, dict) else parse_line(line)

    try:
        response = JSONRPCResponse.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"无效的 JSON-RPC 响应: {e}") from e

    if expected_id is not None and response.id != expected_id:
        raise ProtocolError(f"响应 ID 不匹配: 期望 {expected_id}, 收到 {response.id}")

    if response.error is not None:
        raise RPCError(response.error.code, response.error.message, response.error.data)

    return response.result
