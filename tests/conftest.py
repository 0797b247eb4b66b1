"""pytest 配置"""

import sys
from pathlib import Path

import pytest

# 添加项目根目录到 Python 路径
ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR))

from mcphub.config import ServerConfig  # noqa: E402

MOCK_SERVER = Path(__file__).parent / "fixtures" / "mock_mcp_server.py"


@pytest.fixture
def mock_server_config():
    """创建指向测试 MCP 服务器的配置"""

    def factory(name: str = "mock", *flags: str, timeout_ms: int = 10000, **kwargs) -> ServerConfig:
        return ServerConfig(
            name=name,
            command=sys.executable,
            args=[str(MOCK_SERVER), "--name", name, *flags],
            timeout_ms=timeout_ms,
            **kwargs,
        )

    return factory


@pytest.fixture
def broken_server_config():
    """命令不存在的服务器配置"""
    return ServerConfig(name="broken", command="definitely-not-a-real-mcp-server-binary")


@pytest.fixture
def workspace_dir(tmp_path):
    """创建临时工作目录"""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return str(workspace)


@pytest.fixture
def sample_config(workspace_dir):
    """创建示例配置文件"""
    config_dir = Path(workspace_dir) / "config"
    config_dir.mkdir()

    config_file = config_dir / "mcphub.yaml"
    config_file.write_text('''
mcp:
  enabled: true
  servers:
    fs:
      command: npx
      args: ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]
      timeout_ms: 5000
    idle:
      command: idle-server
      enabled: false
builtin_tools:
  enabled: true
  disabled_models: ["no-tools"]
''')
    return str(config_file)
