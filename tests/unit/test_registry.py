"""MCPToolRegistry 测试 (使用假客户端)"""

import asyncio

import pytest

from mcphub.builtin import BuiltinTools
from mcphub.config import Config, ServerConfig
from mcphub.errors import (
    ConnectionClosed,
    InvalidToolName,
    ServerNotFound,
    ServerNotReady,
    SpawnError,
    ToolExecutionError,
)
from mcphub.mcp.client import ClientState
from mcphub.mcp.protocol import CallToolResult, MCPTool, TextContent
from mcphub.mcp.registry import MCPToolRegistry, _RWLock
from mcphub.schema import ToolCall


class FakeClient:
    """按行为描述模拟的 MCPClient"""

    def __init__(self, config, behavior):
        self.config = config
        self.name = config.name
        self.behavior = behavior
        self.state = ClientState.UNINITIALIZED
        self.calls = []
        self.closed = False

    @property
    def is_ready(self):
        return self.state is ClientState.READY

    async def initialize(self):
        delay = self.behavior.get("init_delay")
        if delay:
            await asyncio.sleep(delay)
        error = self.behavior.get("init_error")
        if error:
            self.state = ClientState.FAILED
            raise error
        self.state = ClientState.READY

    async def list_tools(self):
        if not self.is_ready:
            raise ServerNotReady(self.name)
        error = self.behavior.get("list_error")
        if error:
            raise error
        return [MCPTool(name=n, description=f"{n} tool") for n in self.behavior.get("tools", [])]

    async def call_tool(self, name, arguments=None):
        if not self.is_ready:
            raise ServerNotReady(self.name)
        self.calls.append((name, arguments))
        handler = self.behavior.get("call")
        if handler is not None:
            return await handler(name, arguments)
        return CallToolResult(content=[TextContent(text=f"{self.name}:{name}")])

    async def close(self):
        self.closed = True
        self.state = ClientState.CLOSED


class FakeFactory:
    """记录创建的客户端"""

    def __init__(self, behaviors):
        self.behaviors = behaviors
        self.created = []

    def __call__(self, config):
        client = FakeClient(config, self.behaviors.get(config.name, {}))
        self.created.append(client)
        return client


def server(name, **kwargs):
    return ServerConfig(name=name, command=f"{name}-server", **kwargs)


@pytest.fixture
def factory():
    return FakeFactory(
        {
            "fs": {"tools": ["read_file", "write_file"]},
            "git": {"tools": ["status"]},
            "broken": {"init_error": SpawnError("找不到命令: broken-server")},
        }
    )


@pytest.fixture
def registry(factory):
    return MCPToolRegistry(client_factory=factory)


class TestAddServer:
    """添加服务器测试"""

    @pytest.mark.asyncio
    async def test_add_ready_server(self, registry):
        """测试添加成功"""
        assert await registry.add_server(server("fs")) is None
        assert registry.get_ready_clients() == ["fs"]
        assert "fs" in registry.servers

    @pytest.mark.asyncio
    async def test_failure_recorded_not_raised(self, registry):
        """测试初始化失败只记录，不抛出"""
        error = await registry.add_server(server("broken"))
        assert isinstance(error, SpawnError)
        assert isinstance(registry.errors["broken"], SpawnError)
        assert registry.get_ready_clients() == []

    @pytest.mark.asyncio
    async def test_failure_isolated(self, registry):
        """测试一个服务器失败不影响其他服务器"""
        await registry.add_server(server("fs"))
        await registry.add_server(server("broken"))
        await registry.add_server(server("git"))

        assert registry.get_ready_clients() == ["fs", "git"]
        assert list(registry.errors) == ["broken"]

    @pytest.mark.asyncio
    async def test_disabled_not_connected(self, registry, factory):
        """测试禁用的服务器不连接"""
        assert await registry.add_server(server("fs", enabled=False)) is None
        assert factory.created == []
        status = registry.get_status()
        assert status[0]["state"] == "disabled"

    @pytest.mark.asyncio
    async def test_replace_closes_old(self, registry, factory):
        """测试同名服务器替换时关闭旧客户端"""
        await registry.add_server(server("fs"))
        await registry.add_server(server("fs"))
        old, new = factory.created
        assert old.closed
        assert not new.closed
        assert registry.get_client("fs") is new

    @pytest.mark.asyncio
    async def test_add_servers(self, registry):
        """测试并发添加多个服务器"""
        errors = await registry.add_servers([server("fs"), server("broken"), server("git")])
        assert errors["fs"] is None
        assert isinstance(errors["broken"], SpawnError)
        assert sorted(registry.get_ready_clients()) == ["fs", "git"]


class TestCatalog:
    """工具目录测试"""

    @pytest.mark.asyncio
    async def test_namespaced_and_ordered(self, registry):
        """测试命名空间与顺序"""
        await registry.add_server(server("fs"))
        await registry.add_server(server("git"))

        tools = await registry.list_all_tools()

        assert [t.name for t in tools] == ["fs:read_file", "fs:write_file", "git:status"]
        assert all(t.is_mcp for t in tools)

    @pytest.mark.asyncio
    async def test_bad_server_never_empties_catalog(self, registry):
        """测试失败的服务器不会清空目录"""
        await registry.add_server(server("broken"))
        await registry.add_server(server("fs"))

        tools = await registry.list_all_tools()

        assert len(tools) > 0
        assert all(t.name.startswith("fs:") for t in tools)

    @pytest.mark.asyncio
    async def test_list_failure_skipped(self, factory):
        """测试列出工具失败时跳过该服务器"""
        factory.behaviors["flaky"] = {"list_error": ConnectionClosed("eof")}
        registry = MCPToolRegistry(client_factory=factory)
        await registry.add_server(server("flaky"))
        await registry.add_server(server("git"))

        tools = await registry.list_all_tools()

        assert [t.name for t in tools] == ["git:status"]
        assert "flaky" not in registry.cached_tools

    @pytest.mark.asyncio
    async def test_cache_purged_on_remove(self, registry, factory):
        """测试移除服务器时清理缓存并关闭客户端"""
        await registry.add_server(server("fs"))
        await registry.add_server(server("git"))
        await registry.list_all_tools()
        assert set(registry.cached_tools) == {"fs", "git"}

        await registry.remove_server("fs")

        assert set(registry.cached_tools) == {"git"}
        assert "fs" not in registry.servers
        assert factory.created[0].closed
        assert [t.name for t in await registry.list_all_tools()] == ["git:status"]

    @pytest.mark.asyncio
    async def test_remove_unknown_is_noop(self, registry):
        await registry.remove_server("nope")

    @pytest.mark.asyncio
    async def test_update_reconnects(self, registry, factory):
        """测试更新配置时先断开旧连接"""
        await registry.add_server(server("fs"))
        await registry.list_all_tools()

        new_config = server("fs", timeout_ms=1234)
        assert await registry.update_server("fs", new_config) is None

        old, new = factory.created
        assert old.closed
        assert new.config.timeout_ms == 1234
        assert registry.servers["fs"].timeout_ms == 1234
        assert "fs" not in registry.cached_tools

    @pytest.mark.asyncio
    async def test_update_unknown(self, registry):
        with pytest.raises(ServerNotFound):
            await registry.update_server("nope", server("nope"))

    @pytest.mark.asyncio
    async def test_update_to_disabled(self, registry, factory):
        """测试更新为禁用后不再提供工具"""
        await registry.add_server(server("fs"))
        await registry.update_server("fs", server("fs", enabled=False))
        assert factory.created[0].closed
        assert await registry.list_all_tools() == []

    @pytest.mark.asyncio
    async def test_remove_during_update(self, registry, factory):
        """测试更新连接期间移除服务器，移除在更新完成后生效"""
        await registry.add_server(server("fs"))
        factory.behaviors["fs"]["init_delay"] = 0.2

        update = asyncio.create_task(registry.update_server("fs", server("fs", timeout_ms=1234)))
        await asyncio.sleep(0.05)
        await registry.remove_server("fs")
        assert await update is None

        assert "fs" not in registry.servers
        assert registry.get_client("fs") is None
        assert all(client.closed for client in factory.created)
        assert await registry.list_all_tools() == []

    @pytest.mark.asyncio
    async def test_concurrent_add_same_name(self, registry, factory):
        """测试同名服务器的添加按顺序执行，只保留最后一个客户端"""
        factory.behaviors["fs"]["init_delay"] = 0.1
        await asyncio.gather(registry.add_server(server("fs")), registry.add_server(server("fs")))

        first, second = factory.created
        assert first.closed
        assert registry.get_client("fs") is second
        assert second.is_ready

    @pytest.mark.asyncio
    async def test_get_tools_merges_builtin(self, registry):
        """测试合并内置工具与 MCP 工具"""
        await registry.add_server(server("git"))
        tools = await registry.get_tools("gpt-4o")
        names = [t.name for t in tools]
        assert "shell" in names
        assert names[-1] == "git:status"
        assert [t.is_mcp for t in tools].count(True) == 1

    @pytest.mark.asyncio
    async def test_get_tools_model_without_tool_support(self, registry):
        """测试不支持工具调用的模型"""
        await registry.add_server(server("git"))
        assert await registry.get_tools("deepseek-coder-6.7b") == []

    @pytest.mark.asyncio
    async def test_get_tools_builtin_disabled(self, factory):
        registry = MCPToolRegistry(client_factory=factory, builtin_enabled=False)
        await registry.add_server(server("git"))
        assert [t.name for t in await registry.get_tools("gpt-4o")] == ["git:status"]


class TestExecute:
    """工具执行测试"""

    @pytest.mark.asyncio
    async def test_routes_to_owner(self, registry, factory):
        """测试路由到对应服务器"""
        await registry.add_server(server("fs"))
        await registry.add_server(server("git"))

        result = await registry.execute_tool("git:status", {"short": True}, tool_call_id="c1")

        assert result.tool_call_id == "c1"
        assert result.result == "git:status"
        assert result.error is None
        assert factory.created[1].calls == [("status", {"short": True})]
        assert factory.created[0].calls == []

    @pytest.mark.asyncio
    async def test_tool_name_with_colon(self, registry, factory):
        """测试工具名中包含冒号"""
        await registry.add_server(server("fs"))
        await registry.execute_tool("fs:a:b", {})
        assert factory.created[0].calls == [("a:b", {})]

    @pytest.mark.asyncio
    async def test_unknown_server(self, registry):
        """测试未知服务器返回错误结果"""
        result = await registry.execute_tool("unknown:tool", {})
        assert result.result is None
        assert "unknown" in result.error

    @pytest.mark.asyncio
    async def test_resolve_errors(self, registry):
        """测试解析错误类型"""
        await registry.add_server(server("broken"))
        await registry.add_server(server("off", enabled=False))

        with pytest.raises(InvalidToolName):
            await registry.resolve("no_colon")
        with pytest.raises(ServerNotFound):
            await registry.resolve("unknown:tool")
        with pytest.raises(ServerNotReady):
            await registry.resolve("broken:tool")
        with pytest.raises(ServerNotReady):
            await registry.resolve("off:tool")

    @pytest.mark.asyncio
    async def test_invalid_name_result(self, registry):
        result = await registry.execute_tool("no_colon", {})
        assert result.error
        assert result.result is None

    @pytest.mark.asyncio
    async def test_is_error_result(self, factory):
        """测试工具返回 is_error"""

        async def divide(name, arguments):
            raise ToolExecutionError("divide by zero")

        factory.behaviors["calc"] = {"tools": ["divide"], "call": divide}
        registry = MCPToolRegistry(client_factory=factory)
        await registry.add_server(server("calc"))

        result = await registry.execute_tool("calc:divide", {"a": 1, "b": 0}, tool_call_id="x")

        assert "divide by zero" in result.error
        assert result.result is None

    @pytest.mark.asyncio
    async def test_builtin_dispatch(self, registry, tmp_path):
        """测试内置工具本地执行"""
        path = tmp_path / "a.txt"
        path.write_text("hello", encoding="utf-8")
        result = await registry.execute_tool(
            "file_editor", {"operation": "read", "path": str(path)}, tool_call_id="b1"
        )
        assert result.result == "hello"
        assert result.error is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["file_editor", "shell"])
    async def test_builtin_disabled_not_executed(self, factory, tmp_path, name):
        """测试禁用内置工具后不会在本地执行"""
        registry = MCPToolRegistry(client_factory=factory, builtin_enabled=False)
        marker = tmp_path / "marker.txt"
        arguments = {
            "file_editor": {"operation": "write", "path": str(marker), "content": "x"},
            "shell": {"command": f"echo x > {marker}"},
        }[name]

        result = await registry.execute_tool(name, arguments, tool_call_id="b2")

        assert result.tool_call_id == "b2"
        assert result.result is None
        assert "无效的工具名称" in result.error
        assert not marker.exists()


class TestBatch:
    """批量执行测试"""

    @pytest.mark.asyncio
    async def test_one_result_per_call_in_order(self, factory):
        """测试每个调用一个结果，顺序不变，失败不影响其余调用"""

        async def explode(name, arguments):
            raise RuntimeError("boom")

        factory.behaviors["bad"] = {"tools": ["x"], "call": explode}
        registry = MCPToolRegistry(client_factory=factory)
        await registry.add_server(server("fs"))
        await registry.add_server(server("bad"))
        await registry.add_server(server("broken"))

        calls = [
            ToolCall(id="1", name="fs:read_file", arguments={}),
            ToolCall(id="2", name="unknown:tool", arguments={}),
            ToolCall(id="3", name="bad:x", arguments={}),
            ToolCall(id="4", name="broken:y", arguments={}),
            ToolCall(id="5", name="nocolon", arguments={}),
            ToolCall(id="6", name="fs:write_file", arguments={}),
        ]

        results = await registry.execute_tool_calls(calls)

        assert [r.tool_call_id for r in results] == ["1", "2", "3", "4", "5", "6"]
        assert [r.success for r in results] == [True, False, False, False, False, True]
        assert "boom" in results[2].error

    @pytest.mark.asyncio
    async def test_concurrent_batch(self, factory):
        """测试并发执行不同服务器"""
        started = []
        release = asyncio.Event()

        async def wait(name, arguments):
            started.append(name)
            await release.wait()
            return CallToolResult(content=[TextContent(text=name)])

        factory.behaviors["a"] = {"call": wait}
        factory.behaviors["b"] = {"call": wait}
        registry = MCPToolRegistry(client_factory=factory)
        await registry.add_servers([server("a"), server("b")])

        task = asyncio.create_task(
            registry.execute_tool_calls(
                [ToolCall(id="1", name="a:t1"), ToolCall(id="2", name="b:t2")],
                concurrent=True,
            )
        )
        for _ in range(20):
            if len(started) == 2:
                break
            await asyncio.sleep(0.01)
        assert sorted(started) == ["t1", "t2"]

        release.set()
        results = await task
        assert [r.result for r in results] == ["t1", "t2"]

    @pytest.mark.asyncio
    async def test_empty_batch(self, registry):
        assert await registry.execute_tool_calls([]) == []


class TestLifecycle:
    """生命周期测试"""

    @pytest.mark.asyncio
    async def test_shutdown_closes_all(self, factory):
        """测试关闭注册表时关闭所有客户端"""
        async with MCPToolRegistry(client_factory=factory) as registry:
            await registry.add_server(server("fs"))
            await registry.add_server(server("git"))

        assert all(client.closed for client in factory.created)
        assert registry.get_ready_clients() == []

    @pytest.mark.asyncio
    async def test_test_server(self, registry):
        """测试连接测试"""
        await registry.add_server(server("fs"))
        assert await registry.test_server("fs") == "Connected successfully. Found 2 MCP tools."

    @pytest.mark.asyncio
    async def test_test_server_failure(self, registry):
        await registry.add_server(server("broken"))
        with pytest.raises(SpawnError):
            await registry.test_server("broken")

    @pytest.mark.asyncio
    async def test_from_config(self, factory):
        """测试从配置创建"""
        config = Config.from_dict(
            {
                "mcp": {
                    "servers": {
                        "fs": {"command": "fs-server"},
                        "broken": {"command": "broken-server"},
                    }
                },
                "builtin_tools": {"enabled": False},
            }
        )
        registry = await MCPToolRegistry.from_config(config, client_factory=factory)
        assert registry.get_ready_clients() == ["fs"]
        assert "broken" in registry.errors
        assert [t.name for t in await registry.get_tools()] == ["fs:read_file", "fs:write_file"]

    @pytest.mark.asyncio
    async def test_status(self, registry):
        await registry.add_server(server("fs"))
        await registry.add_server(server("broken"))
        await registry.list_all_tools()
        status = {s["name"]: s for s in registry.get_status()}
        assert status["fs"]["state"] == "ready"
        assert status["fs"]["tools"] == 2
        assert status["broken"]["state"] == "failed"
        assert "broken-server" in status["broken"]["error"]

    def test_custom_builtin_tools(self):
        registry = MCPToolRegistry(builtin_tools=BuiltinTools([]))
        assert registry.builtin_tools.list_tools() == []


class TestRWLock:
    """读写锁测试"""

    @pytest.mark.asyncio
    async def test_readers_share(self):
        lock = _RWLock()
        async with lock.read():
            await asyncio.wait_for(self._read(lock, []), timeout=1)

    @pytest.mark.asyncio
    async def test_waiting_writer_blocks_new_readers(self):
        """测试有写者等待时新读者排队，写者不会饿死"""
        lock = _RWLock()
        order = []

        async with lock.read():
            writer = asyncio.create_task(self._write(lock, order))
            await asyncio.sleep(0.01)
            reader = asyncio.create_task(self._read(lock, order))
            await asyncio.sleep(0.01)
            assert order == []

        await asyncio.wait_for(asyncio.gather(writer, reader), timeout=1)
        assert order == ["write", "read"]

    @pytest.mark.asyncio
    async def test_cancelled_writer_releases_readers(self):
        lock = _RWLock()
        order = []

        async with lock.read():
            writer = asyncio.create_task(self._write(lock, order))
            await asyncio.sleep(0.01)
            reader = asyncio.create_task(self._read(lock, order))
            await asyncio.sleep(0.01)
            writer.cancel()
            await asyncio.wait_for(reader, timeout=1)

        with pytest.raises(asyncio.CancelledError):
            await writer

        assert order == ["read"]

    @staticmethod
    async def _read(lock, order):
        async with lock.read():
            order.append("read")

    @staticmethod
    async def _write(lock, order):
        async with lock.write():
            order.append("write")
