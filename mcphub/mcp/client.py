"""MCP 客户端实现

一个 MCPClient 对应一个 MCP 服务器子进程。状态机:

    UNINITIALIZED --initialize()--> READY
    UNINITIALIZED --initialize() 失败--> FAILED
    READY --I/O 失败--> FAILED
    任意状态 --close()--> CLOSED

FAILED 与 CLOSED 为终止状态，之后的调用直接失败，不再进行 I/O。
同一连接上的请求严格串行: 写入请求后阻塞读取一行响应。
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .. import __version__
from ..config import ServerConfig
from ..errors import (
    HandshakeError,
    MCPError,
    ProtocolError,
    RPCError,
    ServerNotReady,
    SpawnError,
    Timeout,
    ToolExecutionError,
    TransportError,
)
from .protocol import (
    CallToolParams,
    CallToolResult,
    Implementation,
    InitializeParams,
    InitializeResult,
    ListToolsResult,
    MCPTool,
    RequestIdCounter,
    decode_response,
    encode_notification,
    encode_request,
    is_notification,
    parse_line,
)
from .tools import render_contents
from .transport import StdioTransport

logger = logging.getLogger(__name__)

# tools/list 分页上限，防止服务器返回循环游标
MAX_LIST_PAGES = 100


class ClientState(str, Enum):
    """连接状态"""

    UNINITIALIZED = "uninitialized"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


class MCPClient:
    """MCP 客户端

    使用示例:
        config = ServerConfig(name="fs", command="npx", args=["-y", "@modelcontextprotocol/server-filesystem", "/tmp"])
        async with MCPClient(config) as client:
            tools = await client.list_tools()
            result = await client.call_tool("read_file", {"path": "/tmp/test.txt"})
    """

    def __init__(
        self,
        config: ServerConfig,
        client_name: str = "mcphub",
        client_version: str = __version__,
        transport: Optional[StdioTransport] = None,
    ):
        """初始化 MCP 客户端

        Args:
            config: 服务器配置
            client_name: 客户端名称 (握手时上报)
            client_version: 客户端版本
            transport: 自定义传输层，默认按配置创建 StdioTransport
        """
        self._config = config
        self._transport = transport or StdioTransport(
            command=config.command,
            args=config.args,
            env=config.env,
            cwd=config.cwd,
        )
        self._client_info = Implementation(name=client_name, version=client_version)

        self._state = ClientState.UNINITIALIZED
        self._server_info: Optional[Implementation] = None
        self._init_result: Optional[InitializeResult] = None
        self._last_error: Optional[BaseException] = None
        self._ids = RequestIdCounter()
        self._lock = asyncio.Lock()

    @classmethod
    def from_command(
        cls,
        name: str,
        command: str,
        args: Optional[List[str]] = None,
        timeout: float = 30.0,
    ) -> "MCPClient":
        """根据命令直接创建客户端"""
        config = ServerConfig(
            name=name,
            command=command,
            args=list(args or []),
            timeout_ms=int(timeout * 1000),
        )
        return cls(config)

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def config(self) -> ServerConfig:
        return self._config

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ClientState.READY

    @property
    def server_info(self) -> Optional[Implementation]:
        """服务器信息"""
        return self._server_info

    @property
    def init_result(self) -> Optional[InitializeResult]:
        return self._init_result

    @property
    def last_error(self) -> Optional[BaseException]:
        """导致 FAILED 的错误"""
        return self._last_error

    @property
    def transport(self) -> StdioTransport:
        return self._transport

    # ------------------------------------------------------------------
    # 握手
    # ------------------------------------------------------------------

    async def initialize(self) -> InitializeResult:
        """启动服务器进程并完成 MCP 握手

        整个过程受 config.timeout_ms 限制。任何失败都会终止子进程并进入 FAILED。

        Raises:
            SpawnError: 进程启动失败
            Timeout: 握手超时
            HandshakeError: 其他握手失败
        """
        if self._state is not ClientState.UNINITIALIZED:
            raise MCPError(f"客户端 '{self.name}' 已处于 {self._state.value} 状态，不能重复初始化")

        logger.info(f"正在初始化 MCP 客户端: {self.name}")

        try:
            result = await asyncio.wait_for(self._handshake(), timeout=self._config.timeout)
        except asyncio.TimeoutError as e:
            error = Timeout(f"MCP 服务器 '{self.name}' 握手超时 ({self._config.timeout_ms} ms)")
            await self._fail(error)
            raise error from e
        except (SpawnError, Timeout) as e:
            await self._fail(e)
            raise
        except MCPError as e:
            error = HandshakeError(f"MCP 服务器 '{self.name}' 握手失败: {e}")
            await self._fail(error)
            raise error from e
        except asyncio.CancelledError:
            self._fail_nowait(MCPError("初始化被取消"))
            raise
        except Exception as e:
            error = HandshakeError(f"MCP 服务器 '{self.name}' 握手异常: {e}")
            await self._fail(error)
            raise error from e

        self._state = ClientState.READY
        logger.info(f"MCP 客户端 '{self.name}' 初始化成功")
        return result

    async def _handshake(self) -> InitializeResult:
        await self._transport.connect()

        params = InitializeParams(clientInfo=self._client_info)
        result = await self._request("initialize", params.model_dump(exclude_none=True))

        try:
            init_result = InitializeResult.model_validate(result or {})
        except ValidationError as e:
            raise ProtocolError(f"无效的 initialize 响应: {e}") from e

        self._init_result = init_result
        self._server_info = init_result.serverInfo
        if init_result.serverInfo:
            logger.info(
                f"MCP 握手成功: {init_result.serverInfo.name} v{init_result.serverInfo.version}"
            )

        # 发送 initialized 通知，不等待响应
        await self._transport.send_line(encode_notification("notifications/initialized"))
        return init_result

    # ------------------------------------------------------------------
    # 请求
    # ------------------------------------------------------------------

    async def _request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """发送请求并读取一行响应 (调用方负责串行化)"""
        request_id = self._ids.next()
        await self._transport.send_line(encode_request(request_id, method, params))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise Timeout(f"等待 {method} 响应超时 ({self._config.timeout_ms} ms)")

            line = await self._transport.receive_line(timeout=remaining)
            message = parse_line(line)
            if is_notification(message):
                # 服务器主动发来的通知/请求，不支持，跳过
                logger.debug(f"忽略服务器消息: {message.get('method')}")
                continue
            return decode_response(message, expected_id=request_id)

    async def _call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """在 READY 状态下执行一次请求

        传输或协议错误会使连接进入 FAILED；服务器返回的 RPC 错误不影响连接。
        """
        if self._state is not ClientState.READY:
            raise ServerNotReady(self.name, self._state.value)

        async with self._lock:
            if self._state is not ClientState.READY:
                raise ServerNotReady(self.name, self._state.value)
            try:
                return await self._request(method, params)
            except RPCError:
                raise
            except (TransportError, ProtocolError) as e:
                logger.warning(f"MCP 服务器 '{self.name}' 连接失败: {e}")
                await self._fail(e)
                raise
            except asyncio.CancelledError:
                # 请求中途取消后无法再对齐响应，只能断开
                self._fail_nowait(MCPError(f"{method} 请求被取消"))
                raise

    async def list_tools(self) -> List[MCPTool]:
        """获取服务器提供的工具列表 (保持服务器返回顺序)

        Raises:
            ServerNotReady: 客户端未就绪，不会进行任何 I/O
        """
        tools: List[MCPTool] = []
        cursor: Optional[str] = None

        for _ in range(MAX_LIST_PAGES):
            params = {"cursor": cursor} if cursor else None
            result = await self._call("tools/list", params)

            try:
                page = ListToolsResult.model_validate(result or {})
            except ValidationError as e:
                raise ProtocolError(f"无效的 tools/list 响应: {e}") from e

            tools.extend(page.tools)
            cursor = page.nextCursor
            if not cursor:
                break

        logger.info(f"MCP 服务器 '{self.name}' 发现 {len(tools)} 个工具")
        return tools

    async def call_tool(self, name: str, arguments: Optional[Any] = None) -> CallToolResult:
        """调用工具

        Raises:
            ServerNotReady: 客户端未就绪，不会进行任何 I/O
            ToolExecutionError: 服务器返回 is_error=true (工具层失败，连接仍可用)
        """
        params = CallToolParams(name=name, arguments=arguments)
        result = await self._call("tools/call", params.model_dump())

        try:
            tool_result = CallToolResult.model_validate(result or {})
        except ValidationError as e:
            raise ProtocolError(f"无效的 tools/call 响应: {e}") from e

        if tool_result.is_error:
            text = render_contents(tool_result.content)
            raise ToolExecutionError(text or "工具执行失败", result=tool_result)

        return tool_result

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def _fail(self, error: BaseException) -> None:
        """进入 FAILED 并终止子进程"""
        self._state = ClientState.FAILED
        self._last_error = error
        await self._transport.disconnect()

    def _fail_nowait(self, error: BaseException) -> None:
        self._state = ClientState.FAILED
        self._last_error = error
        self._transport.kill()

    async def close(self) -> None:
        """关闭连接并终止子进程 (幂等)"""
        if self._state is not ClientState.CLOSED:
            logger.debug(f"关闭 MCP 客户端: {self.name}")
        self._state = ClientState.CLOSED
        await self._transport.disconnect()

    async def __aenter__(self) -> "MCPClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"MCPClient(name={self.name!r}, state={self._state.value})"
