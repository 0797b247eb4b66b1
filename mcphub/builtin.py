"""内置工具

始终可用的本地工具目录。每个工具是一条 Tool 记录 (is_mcp=False)
加一个异步处理函数，处理函数返回输出行列表。
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import DEFAULT_DISABLED_MODELS
from .errors import ToolExecutionError, ToolNotFound
from .schema import Tool, ToolCall

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[List[str]]]

# shell 命令超时 (秒)
SHELL_TIMEOUT = 120


@dataclass(frozen=True)
class BuiltinTool:
    """内置工具: 定义 + 处理函数"""

    tool: Tool
    handler: Handler


def model_supports_tools(model: Optional[str], disabled_patterns: Optional[List[str]] = None) -> bool:
    """判断模型是否支持工具调用"""
    if not model:
        return True
    patterns = DEFAULT_DISABLED_MODELS if disabled_patterns is None else disabled_patterns
    model = model.lower()
    return not any(pattern.lower() in model for pattern in patterns)


def _require(arguments: Dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value:
        raise ToolExecutionError(f"缺少参数 '{key}'")
    return value


async def _run(*cmd: str, shell: bool = False, cwd: Optional[str] = None) -> tuple[int, str, str]:
    """执行子进程并收集输出"""
    if shell:
        process = await asyncio.create_subprocess_shell(
            cmd[0],
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    else:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=SHELL_TIMEOUT)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise ToolExecutionError(f"命令超时（{SHELL_TIMEOUT}秒）")

    return (
        process.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


# =============================================================================
# 处理函数
# =============================================================================


async def shell_handler(arguments: Dict[str, Any]) -> List[str]:
    """执行 shell 命令"""
    command = _require(arguments, "command")
    working_dir = arguments.get("working_directory")

    logger.info(f"执行 shell 命令: {command}")
    try:
        returncode, stdout, stderr = await _run(command, shell=True, cwd=working_dir)
    except OSError as e:
        raise ToolExecutionError(f"执行失败: {e}") from e

    outputs = []
    if stdout:
        outputs.append(stdout)
    if stderr:
        outputs.append(f"stderr: {stderr}")
    outputs.append(f"Exit code: {returncode}")

    if returncode != 0:
        logger.warning(f"shell 命令失败: {command}")
    return outputs


async def file_editor_handler(arguments: Dict[str, Any]) -> List[str]:
    """文件读写、搜索与列目录"""
    operation = _require(arguments, "operation")
    path = Path(_require(arguments, "path"))

    try:
        if operation == "read":
            return [path.read_text(encoding="utf-8")]

        if operation in ("write", "edit"):
            content = arguments.get("content")
            if not isinstance(content, str):
                raise ToolExecutionError(f"{operation} 操作缺少参数 'content'")
            path.write_text(content, encoding="utf-8")
            verb = "wrote to" if operation == "write" else "edited"
            return [f"Successfully {verb} file: {path}"]

        if operation == "search":
            term = _require(arguments, "search_term")
            matches = [
                f"Line {lineno}: {line}"
                for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1)
                if term in line
            ]
            if not matches:
                return [f"No matches found for '{term}' in {path}"]
            return [f"Found {len(matches)} matches in {path}:"] + matches

        if operation == "list":
            pattern = arguments.get("pattern") or "*"
            results = [f"Contents of {path} (pattern: {pattern}):"]
            for entry in sorted(path.iterdir()):
                if fnmatch.fnmatch(entry.name, pattern):
                    kind = "DIR" if entry.is_dir() else "FILE"
                    results.append(f"  {kind} {entry.name}")
            if len(results) == 1:
                results.append("  (no matching files)")
            return results

    except OSError as e:
        raise ToolExecutionError(f"文件操作失败 '{path}': {e}") from e

    raise ToolExecutionError(f"不支持的文件操作: {operation}")


async def system_info_handler(arguments: Dict[str, Any]) -> List[str]:
    """系统信息"""
    info_type = _require(arguments, "info_type")

    if info_type == "os":
        return [
            "System Information:",
            f"OS: {platform.system()}",
            f"Arch: {platform.machine()}",
            f"Release: {platform.release()}",
            f"Python: {platform.python_version()}",
        ]

    commands = {
        "memory": ("Memory Information:", ("free", "-h"), None),
        "disk": ("Disk Information:", ("df", "-h"), None),
        "processes": ("Process Information (top 10):", ("ps", "aux"), 11),
    }
    if info_type not in commands:
        return [f"Unknown info type: {info_type}"]

    title, cmd, limit = commands[info_type]
    try:
        _, stdout, _ = await _run(*cmd)
    except OSError:
        return [f"{info_type} info not available on this platform"]

    lines = stdout.splitlines()
    return [title] + (lines[:limit] if limit else lines)


# =============================================================================
# 工具目录
# =============================================================================


def create_builtin_tools() -> List[BuiltinTool]:
    """创建内置工具目录"""
    return [
        BuiltinTool(
            tool=Tool(
                name="shell",
                description="Execute shell commands. Use with caution and only when necessary.",
                input_schema={
                    "type": "object",
                    "properties": {
                        "command": {
                            "type": "string",
                            "description": "The shell command to execute",
                        },
                        "working_directory": {
                            "type": "string",
                            "description": "Optional working directory for the command",
                        },
                    },
                    "required": ["command"],
                },
            ),
            handler=shell_handler,
        ),
        BuiltinTool(
            tool=Tool(
                name="file_editor",
                description="Read, write, edit, and search files on the filesystem",
                input_schema={
                    "type": "object",
                    "properties": {
                        "operation": {
                            "type": "string",
                            "enum": ["read", "write", "edit", "search", "list"],
                            "description": "The file operation to perform",
                        },
                        "path": {"type": "string", "description": "File or directory path"},
                        "content": {
                            "type": "string",
                            "description": "Content for write/edit operations",
                        },
                        "search_term": {
                            "type": "string",
                            "description": "Search term for search operations",
                        },
                        "pattern": {
                            "type": "string",
                            "description": "Pattern for listing files (glob pattern)",
                        },
                    },
                    "required": ["operation", "path"],
                },
            ),
            handler=file_editor_handler,
        ),
        BuiltinTool(
            tool=Tool(
                name="system_info",
                description="Get system information and status",
                input_schema={
                    "type": "object",
                    "properties": {
                        "info_type": {
                            "type": "string",
                            "enum": ["os", "memory", "disk", "processes"],
                            "description": "Type of system information to retrieve",
                        },
                    },
                    "required": ["info_type"],
                },
            ),
            handler=system_info_handler,
        ),
    ]


class BuiltinTools:
    """内置工具集合"""

    def __init__(self, tools: Optional[List[BuiltinTool]] = None):
        source = create_builtin_tools() if tools is None else tools
        self._tools: Dict[str, BuiltinTool] = {t.tool.name: t for t in source}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def list_tools(self) -> List[Tool]:
        return [t.tool for t in self._tools.values()]

    async def execute(self, call: ToolCall) -> List[str]:
        """执行内置工具

        Raises:
            ToolNotFound: 未知的内置工具
            ToolExecutionError: 参数错误或执行失败
        """
        builtin = self._tools.get(call.name)
        if builtin is None:
            raise ToolNotFound(f"未知的内置工具: {call.name}")

        arguments = call.arguments if isinstance(call.arguments, dict) else {}
        return await builtin.handler(arguments)
