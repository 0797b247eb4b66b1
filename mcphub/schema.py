"""数据模型定义

Agent 层使用的内部工具模型。内置工具与 MCP 工具共用同一个 Tool 记录，
通过 is_mcp 区分来源。
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class Tool(BaseModel):
    """工具定义"""
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    is_mcp: bool = False

    def to_schema(self) -> Dict[str, Any]:
        """转换为 Anthropic 格式"""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }

    def to_openai_schema(self) -> Dict[str, Any]:
        """转换为 OpenAI 格式"""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


class ToolCall(BaseModel):
    """工具调用"""
    id: str
    name: str  # 可能带命名空间: server:tool
    arguments: Any = Field(default_factory=dict)


class ToolResult(BaseModel):
    """工具执行结果，每个 ToolCall 恰好对应一个"""
    tool_call_id: str
    result: Optional[Any] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None
