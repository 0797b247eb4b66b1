"""MCP 传输层实现

通过子进程的 stdin/stdout 以换行分隔的 JSON-RPC 消息与本地 MCP 服务器通信。
stderr 仅用于诊断，不作为协议解析。
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections import deque
from pathlib import Path
from typing import Deque, Dict, List, Optional, Union

from ..errors import ConnectionClosed, SpawnError, Timeout, TransportError

logger = logging.getLogger(__name__)


# 默认继承的环境变量
DEFAULT_INHERITED_ENV_VARS = (
    ["HOME", "LOGNAME", "PATH", "SHELL", "TERM", "USER"]
    if sys.platform != "win32"
    else [
        "APPDATA",
        "HOMEDRIVE",
        "HOMEPATH",
        "LOCALAPPDATA",
        "PATH",
        "PATHEXT",
        "PROCESSOR_ARCHITECTURE",
        "SYSTEMDRIVE",
        "SYSTEMROOT",
        "TEMP",
        "USERNAME",
        "USERPROFILE",
    ]
)

# 进程终止超时
PROCESS_TERMINATION_TIMEOUT = 2.0

# 单行消息上限 (tools/list 的响应可能很大)
STREAM_LIMIT = 16 * 1024 * 1024

# 保留的 stderr 行数
STDERR_TAIL_LINES = 50


def get_default_environment() -> Dict[str, str]:
    """获取默认环境变量"""
    env: Dict[str, str] = {}
    for key in DEFAULT_INHERITED_ENV_VARS:
        value = os.environ.get(key)
        if value is not None and not value.startswith("()"):
            env[key] = value
    return env


class StdioTransport:
    """Stdio 传输实现

    一个实例对应一个子进程。send_line / receive_line 本身不加锁，
    请求-响应的串行化由 MCPClient 负责。
    """

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        encoding: str = "utf-8",
    ):
        self.command = command
        self.args = list(args or [])
        self.env = {**get_default_environment(), **(env or {})}
        self.cwd = cwd
        self.encoding = encoding

        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    @property
    def is_connected(self) -> bool:
        """子进程是否仍在运行"""
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def stderr_tail(self) -> str:
        """最近的 stderr 输出"""
        return "\n".join(self._stderr_tail)

    async def connect(self) -> None:
        """启动子进程"""
        if self.is_connected:
            return

        cmd = [self.command] + self.args
        logger.debug(f"启动 MCP 服务器: {' '.join(cmd)}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as e:
            raise SpawnError(f"找不到命令: {self.command}") from e
        except PermissionError as e:
            raise SpawnError(f"没有执行权限: {self.command}") from e
        except OSError as e:
            raise SpawnError(f"启动服务器失败: {self.command}: {e}") from e

        self._stderr_task = asyncio.create_task(self._drain_stderr(self._process))
        logger.info(f"MCP 服务器已启动 (PID: {self._process.pid})")

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        """持续读取 stderr，避免管道写满阻塞子进程"""
        if process.stderr is None:
            return
        while True:
            try:
                line = await process.stderr.readline()
            except (ValueError, asyncio.LimitOverrunError):
                continue
            if not line:
                return
            text = line.decode(self.encoding, errors="replace").rstrip()
            self._stderr_tail.append(text)
            logger.debug(f"[stderr {self.command}] {text}")

    async def disconnect(self) -> None:
        """断开连接并终止子进程 (尽力而为，不会挂起)"""
        process, self._process = self._process, None
        stderr_task, self._stderr_task = self._stderr_task, None

        if process is not None:
            try:
                if process.stdin and not process.stdin.is_closing():
                    process.stdin.close()

                try:
                    await asyncio.wait_for(process.wait(), timeout=PROCESS_TERMINATION_TIMEOUT)
                except asyncio.TimeoutError:
                    logger.warning(f"MCP 服务器未响应，强制终止: {self.command}")
                    process.terminate()
                    try:
                        await asyncio.wait_for(process.wait(), timeout=1.0)
                    except asyncio.TimeoutError:
                        process.kill()
                        await process.wait()

                logger.info(f"MCP 服务器已断开: {self.command}")
            except ProcessLookupError:
                pass

        if stderr_task is not None:
            stderr_task.cancel()
            try:
                await stderr_task
            except asyncio.CancelledError:
                pass

    def kill(self) -> None:
        """立即杀死子进程 (同步，用于异常退出路径)"""
        if self._process is not None and self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    async def send_line(self, line: str) -> None:
        """写入一行消息"""
        if not self.is_connected or self._process.stdin is None:
            raise TransportError("未连接到服务器")

        if not line.endswith("\n"):
            line += "\n"

        logger.debug(f"发送: {line.rstrip()[:200]}")

        try:
            self._process.stdin.write(line.encode(self.encoding))
            await self._process.stdin.drain()
        except (ConnectionError, OSError) as e:
            raise TransportError(f"发送消息失败: {e}") from e

    async def receive_line(self, timeout: Optional[float] = 30.0) -> str:
        """读取一行消息 (不含换行符)

        Raises:
            ConnectionClosed: 读到完整一行之前遇到 EOF
            Timeout: 超时
        """
        if self._process is None or self._process.stdout is None:
            raise TransportError("未连接到服务器")

        stdout = self._process.stdout
        while True:
            try:
                if timeout:
                    data = await asyncio.wait_for(stdout.readline(), timeout=timeout)
                else:
                    data = await stdout.readline()
            except asyncio.TimeoutError as e:
                raise Timeout(f"接收响应超时 ({timeout} 秒)") from e
            except (ValueError, asyncio.LimitOverrunError) as e:
                raise TransportError(f"消息过长: {e}") from e
            except (ConnectionError, OSError) as e:
                raise TransportError(f"接收消息失败: {e}") from e

            if not data.endswith(b"\n"):
                detail = f": {self.stderr_tail}" if self._stderr_tail else ""
                raise ConnectionClosed(f"服务器连接已关闭{detail}")

            line = data.decode(self.encoding, errors="replace").strip()
            if not line:
                # 空行不是消息
                continue

            logger.debug(f"接收: {line[:200]}")
            return line

    async def __aenter__(self) -> "StdioTransport":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()
