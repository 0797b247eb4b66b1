"""配置管理"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

DEFAULT_TIMEOUT_MS = 30000

# 不支持工具调用的模型 (按子串匹配)
DEFAULT_DISABLED_MODELS = ["deepseek-coder", "llava", "stable-diffusion"]


@dataclass(frozen=True)
class ServerConfig:
    """MCP 服务器配置

    客户端运行期间不可变，修改配置需要断开后重新连接。args 保存为元组；
    env 不参与哈希，创建后不要原地修改。
    """

    name: str
    command: str
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict, hash=False)
    cwd: Optional[str] = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    enabled: bool = True
    description: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))
        if not self.name:
            raise ValueError("服务器名称不能为空")
        if ":" in self.name:
            raise ValueError(f"服务器名称不能包含 ':': {self.name}")
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms 必须大于 0: {self.timeout_ms}")

    @property
    def timeout(self) -> float:
        """超时时间 (秒)"""
        return self.timeout_ms / 1000.0

    def with_changes(self, **changes: Any) -> "ServerConfig":
        """返回修改后的副本"""
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "ServerConfig":
        """从字典创建"""
        return cls(
            name=name,
            command=data.get("command", ""),
            args=[str(a) for a in data.get("args", []) or []],
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            cwd=data.get("cwd"),
            timeout_ms=int(data.get("timeout_ms", DEFAULT_TIMEOUT_MS)),
            enabled=bool(data.get("enabled", True)),
            description=data.get("description"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
            "cwd": self.cwd,
            "timeout_ms": self.timeout_ms,
            "enabled": self.enabled,
            "description": self.description,
        }


@dataclass
class MCPConfig:
    """MCP 配置"""

    enabled: bool = True
    servers: Dict[str, ServerConfig] = field(default_factory=dict)


@dataclass
class BuiltinToolsConfig:
    """内置工具配置"""

    enabled: bool = True
    disabled_models: List[str] = field(default_factory=lambda: list(DEFAULT_DISABLED_MODELS))


@dataclass
class Config:
    """主配置"""

    mcp: MCPConfig = field(default_factory=MCPConfig)
    builtin_tools: BuiltinToolsConfig = field(default_factory=BuiltinToolsConfig)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "Config":
        """加载配置"""
        if config_path is None:
            config_path = cls._find_config_file()

        if config_path is None or not Path(config_path).exists():
            raise FileNotFoundError("配置文件未找到，请创建 config/mcphub.yaml")

        return cls.from_yaml(config_path)

    @classmethod
    def _find_config_file(cls) -> Path | None:
        """查找配置文件"""
        # 优先级: 当前目录 > 用户目录
        search_paths = [
            Path.cwd() / "config" / "mcphub.yaml",
            Path.cwd() / "mcphub.yaml",
            Path.home() / ".mcphub" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> "Config":
        """从 YAML 文件加载配置"""
        config_path = Path(config_path)

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not data:
            raise ValueError("配置文件为空")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """从字典创建配置"""
        # MCP 配置
        mcp_data = data.get("mcp", {}) or {}
        mcp_servers: Dict[str, ServerConfig] = {}
        for server_name, server_data in (mcp_data.get("servers", {}) or {}).items():
            mcp_servers[server_name] = ServerConfig.from_dict(server_name, server_data or {})
        mcp_config = MCPConfig(
            enabled=mcp_data.get("enabled", True),
            servers=mcp_servers,
        )

        # 内置工具配置
        builtin_data = data.get("builtin_tools", {}) or {}
        builtin_config = BuiltinToolsConfig(
            enabled=builtin_data.get("enabled", True),
            disabled_models=list(
                builtin_data.get("disabled_models", DEFAULT_DISABLED_MODELS)
            ),
        )

        return cls(mcp=mcp_config, builtin_tools=builtin_config)


def default_servers() -> Dict[str, ServerConfig]:
    """常用 MCP 服务器

    github 需要 gh 命令，brave-search 需要 BRAVE_API_KEY。
    """

    def npx(name: str, package: str, *extra: str) -> ServerConfig:
        return ServerConfig(name=name, command="npx", args=["-y", package, *extra])

    servers = {
        "filesystem": npx("filesystem", "@modelcontextprotocol/server-filesystem", "/tmp"),
        "sqlite": npx("sqlite", "@modelcontextprotocol/server-sqlite"),
        "memory": npx("memory", "@modelcontextprotocol/server-memory"),
    }

    if shutil.which("gh"):
        servers["github"] = npx("github", "@modelcontextprotocol/server-github")

    if os.environ.get("BRAVE_API_KEY"):
        servers["brave-search"] = npx("brave-search", "@modelcontextprotocol/server-brave-search")

    return servers
