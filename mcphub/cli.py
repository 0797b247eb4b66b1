"""
mcphub CLI 入口

- servers: 查看 MCP 服务器状态
- tools:   查看合并后的工具目录
- call:    执行一次工具调用
- test:    测试服务器连接
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import Config, MCPConfig, default_servers
from .errors import MCPError
from .mcp.registry import MCPToolRegistry
from .schema import ToolCall

logger = logging.getLogger(__name__)

console = Console()


def setup_logging(level: str) -> None:
    """配置日志输出"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def load_config(path: Optional[str], use_defaults: bool) -> Config:
    """加载配置，找不到配置文件时使用空配置"""
    if use_defaults:
        return Config(mcp=MCPConfig(servers=default_servers()))
    try:
        return Config.load(path)
    except FileNotFoundError:
        if path:
            raise
        logger.warning("未找到配置文件，不连接任何 MCP 服务器")
        return Config()


def print_servers(registry: MCPToolRegistry, output_format: str) -> None:
    status = registry.get_status()
    if output_format == "json":
        console.print_json(json.dumps(status, ensure_ascii=False))
        return

    table = Table(title="MCP 服务器")
    table.add_column("名称", style="cyan")
    table.add_column("状态")
    table.add_column("命令")
    table.add_column("错误", style="red")
    for item in status:
        state = item["state"]
        style = "green" if state == "ready" else "yellow"
        table.add_row(item["name"], f"[{style}]{state}[/{style}]", item["command"], item["error"] or "")
    console.print(table)


async def print_tools(registry: MCPToolRegistry, model: Optional[str], output_format: str) -> None:
    tools = await registry.get_tools(model)
    if output_format == "json":
        console.print_json(json.dumps([t.model_dump() for t in tools], ensure_ascii=False))
        return

    table = Table(title=f"工具 ({len(tools)})")
    table.add_column("名称", style="cyan")
    table.add_column("来源")
    table.add_column("描述")
    for tool in tools:
        table.add_row(tool.name, "mcp" if tool.is_mcp else "builtin", tool.description)
    console.print(table)


async def run(args: argparse.Namespace) -> int:
    """执行子命令，返回退出码"""
    config = load_config(args.config, args.defaults)

    async with await MCPToolRegistry.from_config(config) as registry:
        if args.command == "servers":
            print_servers(registry, args.format)
            return 0

        if args.command == "tools":
            await print_tools(registry, args.model, args.format)
            return 0

        if args.command == "test":
            try:
                message = await registry.test_server(args.server)
            except MCPError as e:
                console.print(f"[red]❌ {e}[/red]")
                return 1
            console.print(f"[green]✓[/green] {message}")
            return 0

        if args.command == "call":
            try:
                arguments = json.loads(args.arguments) if args.arguments else {}
            except json.JSONDecodeError as e:
                console.print(f"[red]❌ 参数不是合法的 JSON: {e}[/red]")
                return 2

            call = ToolCall(id="cli-1", name=args.name, arguments=arguments)
            (result,) = await registry.execute_tool_calls([call])
            if args.format == "json":
                console.print_json(result.model_dump_json())
            elif result.error:
                console.print(f"[red]❌ {result.error}[/red]")
            else:
                console.print(result.result)
            return 0 if result.success else 1

    return 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcphub",
        description="mcphub - MCP 工具注册与执行",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  mcphub servers                         # 查看服务器状态
  mcphub tools --model gpt-4o            # 查看工具目录
  mcphub call fs:read_file '{"path": "/tmp/a.txt"}'
  mcphub test fs
        """,
    )
    parser.add_argument("-c", "--config", type=str, help="配置文件路径")
    parser.add_argument(
        "--defaults",
        action="store_true",
        help="使用内置的常用 MCP 服务器列表",
    )
    parser.add_argument(
        "-f", "--format",
        type=str,
        choices=["text", "json"],
        default="text",
        help="输出格式 (默认: text)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        help="日志级别 (默认: WARNING)",
    )
    parser.add_argument(
        "-v", "--version",
        action="version",
        version=f"mcphub v{__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("servers", help="查看 MCP 服务器状态")

    tools_parser = subparsers.add_parser("tools", help="查看工具目录")
    tools_parser.add_argument("--model", type=str, default=None, help="目标模型")

    call_parser = subparsers.add_parser("call", help="执行工具调用")
    call_parser.add_argument("name", help="工具名，MCP 工具为 server:tool")
    call_parser.add_argument("arguments", nargs="?", default=None, help="JSON 参数")

    test_parser = subparsers.add_parser("test", help="测试服务器连接")
    test_parser.add_argument("server", help="服务器名称")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """主入口"""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        code = asyncio.run(run(args))
    except KeyboardInterrupt:
        code = 130
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]❌ {e}[/red]")
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
