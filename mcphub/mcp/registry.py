"""MCP 工具注册表

管理多个 MCP 服务器连接，合并带命名空间的工具目录，并把工具调用路由到对应的服务器。
单个服务器的失败只记录在该服务器上，不影响其他服务器。
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

from ..builtin import BuiltinTools, model_supports_tools
from ..config import Config, ServerConfig
from ..errors import MCPError, ServerNotFound, ServerNotReady, ToolExecutionError
from ..schema import Tool, ToolCall, ToolResult
from .client import MCPClient
from .protocol import CallToolResult
from .tools import (
    NAMESPACE_SEPARATOR,
    call_result_to_tool_result,
    split_tool_name,
    wire_tool_to_tool,
)

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ServerConfig], MCPClient]


class _RWLock:
    """asyncio 读写锁: 目录读取可并发，增删改互斥

    有写者等待时新的读者排在写者之后，避免写者饿死。
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._writers_waiting == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._writers_waiting -= 1
                # 取消等待时唤醒被挡住的读者
                self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class MCPToolRegistry:
    """MCP 工具注册表与执行器

    使用示例:
        async with MCPToolRegistry() as registry:
            await registry.add_server(ServerConfig(name="fs", command="npx", args=[...]))
            tools = await registry.get_tools("gpt-4o")
            results = await registry.execute_tool_calls(calls)
    """

    def __init__(
        self,
        client_factory: ClientFactory = MCPClient,
        builtin_tools: Optional[BuiltinTools] = None,
        builtin_enabled: bool = True,
        disabled_models: Optional[List[str]] = None,
    ):
        self._client_factory = client_factory
        self._builtin = builtin_tools if builtin_tools is not None else BuiltinTools()
        self._builtin_enabled = builtin_enabled
        self._disabled_models = disabled_models

        self._servers: Dict[str, ServerConfig] = {}
        self._clients: Dict[str, MCPClient] = {}
        self._errors: Dict[str, BaseException] = {}
        self._tool_cache: Dict[str, List[Tool]] = {}
        self._lock = _RWLock()
        # 同一服务器的增删改按顺序执行 (连接期间也持有)
        self._server_locks: Dict[str, asyncio.Lock] = {}

    @classmethod
    async def from_config(cls, config: Config, **kwargs: Any) -> "MCPToolRegistry":
        """根据配置创建注册表并连接所有启用的服务器"""
        registry = cls(
            builtin_enabled=config.builtin_tools.enabled,
            disabled_models=config.builtin_tools.disabled_models,
            **kwargs,
        )
        if config.mcp.enabled:
            await registry.add_servers(config.mcp.servers.values())
        return registry

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    @property
    def servers(self) -> Dict[str, ServerConfig]:
        """所有服务器配置"""
        return dict(self._servers)

    @property
    def clients(self) -> Dict[str, MCPClient]:
        return dict(self._clients)

    @property
    def errors(self) -> Dict[str, BaseException]:
        """各服务器最近一次连接错误"""
        return dict(self._errors)

    @property
    def cached_tools(self) -> Dict[str, List[Tool]]:
        """上次 list_all_tools 得到的工具 (按服务器)"""
        return {name: list(tools) for name, tools in self._tool_cache.items()}

    @property
    def builtin_tools(self) -> BuiltinTools:
        return self._builtin

    def get_client(self, name: str) -> Optional[MCPClient]:
        return self._clients.get(name)

    def get_ready_clients(self) -> List[str]:
        """已就绪的服务器名称"""
        return [name for name, client in self._clients.items() if client.is_ready]

    def get_status(self) -> List[Dict[str, Any]]:
        """各服务器状态"""
        status = []
        for name, config in self._servers.items():
            client = self._clients.get(name)
            if client is not None:
                state = client.state.value
            else:
                state = "disabled" if not config.enabled else "uninitialized"
            error = self._errors.get(name)
            status.append(
                {
                    "name": name,
                    "command": " ".join([config.command] + list(config.args)),
                    "enabled": config.enabled,
                    "state": state,
                    "tools": len(self._tool_cache.get(name, [])),
                    "error": str(error) if error else None,
                }
            )
        return status

    # ------------------------------------------------------------------
    # 服务器增删改
    # ------------------------------------------------------------------

    async def _connect(self, config: ServerConfig) -> Tuple[Optional[MCPClient], Optional[MCPError]]:
        """创建并初始化客户端，失败时返回错误而不抛出"""
        if not config.enabled:
            return None, None

        client = self._client_factory(config)
        try:
            await client.initialize()
        except MCPError as e:
            logger.warning(f"MCP 服务器 '{config.name}' 初始化失败: {e}")
            return client, e
        return client, None

    async def _commit(
        self,
        config: ServerConfig,
        client: Optional[MCPClient],
        error: Optional[MCPError],
    ) -> None:
        """写入注册表，替换并关闭旧客户端"""
        async with self._lock.write():
            old = self._clients.pop(config.name, None)
            self._servers[config.name] = config
            self._tool_cache.pop(config.name, None)
            if client is not None:
                self._clients[config.name] = client
            if error is not None:
                self._errors[config.name] = error
            else:
                self._errors.pop(config.name, None)

        if old is not None and old is not client:
            await old.close()

    def _server_lock(self, name: str) -> asyncio.Lock:
        lock = self._server_locks.get(name)
        if lock is None:
            lock = self._server_locks[name] = asyncio.Lock()
        return lock

    async def add_server(self, config: ServerConfig) -> Optional[MCPError]:
        """添加服务器并连接

        失败只记录在该服务器上，不抛出，不影响其他服务器。同名服务器会被替换。

        Returns:
            连接错误，成功时为 None
        """
        async with self._server_lock(config.name):
            if config.name in self._servers:
                logger.warning(f"服务器 '{config.name}' 已存在，将替换")

            client, error = await self._connect(config)
            await self._commit(config, client, error)

        if error is None and client is not None:
            logger.info(f"已添加 MCP 服务器: {config.name}")
        return error

    async def add_servers(self, configs: Iterable[ServerConfig]) -> Dict[str, Optional[MCPError]]:
        """并发添加多个服务器"""
        configs = list(configs)
        errors = await asyncio.gather(*(self.add_server(config) for config in configs))
        return {config.name: error for config, error in zip(configs, errors)}

    async def _detach(self, name: str, drop_config: bool) -> Optional[MCPClient]:
        async with self._lock.write():
            if name not in self._servers:
                raise ServerNotFound(name)
            client = self._clients.pop(name, None)
            self._tool_cache.pop(name, None)
            self._errors.pop(name, None)
            if drop_config:
                del self._servers[name]
        return client

    async def update_server(self, name: str, config: ServerConfig) -> Optional[MCPError]:
        """更新服务器配置: 先断开旧连接，再按新配置连接

        Raises:
            ServerNotFound: 服务器不存在
        """
        if config.name != name:
            config = config.with_changes(name=name)

        async with self._server_lock(name):
            old = await self._detach(name, drop_config=False)
            if old is not None:
                await old.close()

            client, error = await self._connect(config)
            await self._commit(config, client, error)

        logger.info(f"已更新 MCP 服务器: {name}")
        return error

    async def remove_server(self, name: str) -> None:
        """移除服务器并终止其进程

        正在进行的添加或更新完成后才会移除。
        """
        async with self._server_lock(name):
            try:
                client = await self._detach(name, drop_config=True)
            except ServerNotFound:
                return

            if client is not None:
                await client.close()
        logger.info(f"已移除 MCP 服务器: {name}")

    async def reconnect_server(self, name: str) -> Optional[MCPError]:
        """断开并按当前配置重新连接"""
        config = self._servers.get(name)
        if config is None:
            raise ServerNotFound(name)
        return await self.update_server(name, config)

    async def test_server(self, name: str) -> str:
        """测试服务器连接

        Raises:
            ServerNotFound: 服务器不存在
            MCPError: 连接或列出工具失败
        """
        error = await self.reconnect_server(name)
        if error is not None:
            raise error

        client = self._clients.get(name)
        if client is None:
            raise ServerNotReady(name, "disabled")

        tools = await client.list_tools()
        return f"Connected successfully. Found {len(tools)} MCP tools."

    async def shutdown(self) -> None:
        """关闭所有连接"""
        async with self._lock.write():
            clients = list(self._clients.values())
            self._clients.clear()
            self._tool_cache.clear()

        await asyncio.gather(*(client.close() for client in clients), return_exceptions=True)
        logger.info(f"已关闭 {len(clients)} 个 MCP 连接")

    # ------------------------------------------------------------------
    # 工具目录
    # ------------------------------------------------------------------

    async def list_all_tools(self) -> List[Tool]:
        """合并所有就绪服务器的工具

        顺序: 服务器注册顺序，其次是服务器返回的工具顺序。
        单个服务器失败时跳过并记录警告。
        """
        async with self._lock.read():
            ready = [(name, client) for name, client in self._clients.items() if client.is_ready]
            results = await asyncio.gather(
                *(client.list_tools() for _, client in ready),
                return_exceptions=True,
            )

            all_tools: List[Tool] = []
            for (name, _), result in zip(ready, results):
                if isinstance(result, BaseException):
                    logger.warning(f"获取 MCP 服务器 '{name}' 工具列表失败: {result}")
                    self._tool_cache.pop(name, None)
                    continue

                server_tools = [wire_tool_to_tool(tool, name) for tool in result]
                self._tool_cache[name] = server_tools
                all_tools.extend(server_tools)

        return all_tools

    async def get_tools(self, model: Optional[str] = None) -> List[Tool]:
        """内置工具 + MCP 工具

        模型不支持工具调用时返回空列表。
        """
        if not model_supports_tools(model, self._disabled_models):
            return []

        tools: List[Tool] = []
        if self._builtin_enabled:
            tools.extend(self._builtin.list_tools())
        tools.extend(await self.list_all_tools())
        return tools

    # ------------------------------------------------------------------
    # 工具执行
    # ------------------------------------------------------------------

    async def resolve(self, qualified_name: str) -> Tuple[MCPClient, str]:
        """解析 server:tool 并返回就绪的客户端

        Raises:
            InvalidToolName: 名称中没有冒号
            ServerNotFound: 服务器不存在
            ServerNotReady: 服务器未就绪
        """
        server, tool = split_tool_name(qualified_name)

        async with self._lock.read():
            if server not in self._servers:
                raise ServerNotFound(server)
            client = self._clients.get(server)

        if client is None:
            raise ServerNotReady(server, "disabled")
        if not client.is_ready:
            raise ServerNotReady(server, client.state.value)
        return client, tool

    async def call_tool(self, qualified_name: str, arguments: Optional[Any] = None) -> CallToolResult:
        """调用 MCP 工具，返回原始结果

        Raises:
            MCPError 的各个子类，包括 ToolExecutionError
        """
        client, tool = await self.resolve(qualified_name)
        return await client.call_tool(tool, arguments)

    async def execute_tool(
        self,
        qualified_name: str,
        arguments: Optional[Any] = None,
        tool_call_id: str = "",
    ) -> ToolResult:
        """执行工具并转换为 ToolResult

        不带命名空间的内置工具在本地执行 (内置工具被禁用时按 MCP 工具名解析)。
        所有 MCPError 都转换为 ToolResult.error。
        """
        if (
            self._builtin_enabled
            and NAMESPACE_SEPARATOR not in qualified_name
            and qualified_name in self._builtin
        ):
            call = ToolCall(id=tool_call_id, name=qualified_name, arguments=arguments or {})
            try:
                outputs = await self._builtin.execute(call)
            except MCPError as e:
                logger.error(f"内置工具 '{qualified_name}' 执行失败: {e}")
                return ToolResult(tool_call_id=tool_call_id, error=str(e))
            return ToolResult(tool_call_id=tool_call_id, result="\n".join(outputs))

        try:
            result = await self.call_tool(qualified_name, arguments)
        except ToolExecutionError as e:
            logger.error(f"MCP 工具 '{qualified_name}' 执行失败: {e}")
            return ToolResult(tool_call_id=tool_call_id, result=None, error=str(e))
        except MCPError as e:
            logger.error(f"MCP 工具 '{qualified_name}' 调用失败: {e}")
            return ToolResult(tool_call_id=tool_call_id, result=None, error=str(e))

        return call_result_to_tool_result(tool_call_id, result)

    async def _execute_one(self, call: ToolCall) -> ToolResult:
        try:
            return await self.execute_tool(call.name, call.arguments, tool_call_id=call.id)
        except Exception as e:
            logger.exception(f"工具 '{call.name}' 执行异常: {e}")
            return ToolResult(tool_call_id=call.id, result=None, error=f"执行异常: {e}")

    async def execute_tool_calls(
        self,
        calls: Iterable[ToolCall],
        concurrent: bool = False,
    ) -> List[ToolResult]:
        """批量执行工具调用

        每个 ToolCall 恰好产生一个 ToolResult，顺序与输入一致。单个调用失败
        记录在对应结果的 error 中，不影响其余调用。

        Args:
            calls: 工具调用列表
            concurrent: 并发执行 (同一服务器上的调用仍按顺序串行)
        """
        calls = list(calls)
        if concurrent:
            return list(await asyncio.gather(*(self._execute_one(call) for call in calls)))

        results = []
        for call in calls:
            results.append(await self._execute_one(call))
        return results

    async def __aenter__(self) -> "MCPToolRegistry":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()
