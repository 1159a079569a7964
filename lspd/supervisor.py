"""语言服务器监管

启动语言服务器子进程，完成 initialize/initialized 握手，负责关闭。

状态机: NOT_STARTED -> STARTING -> INITIALIZING -> READY -> SHUTTING_DOWN -> STOPPED
子进程在 READY 状态意外退出时直接进入 STOPPED，不自动重启。
"""

from __future__ import annotations

import asyncio
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from .config import ServerConfig
from .documents import path_to_uri
from .errors import LSPDError, ServerStartError, SupervisorError
from .protocol import CLIENT_CAPABILITIES, InitializeParams, InitializeResult
from .rpc import RPCChannel

logger = logging.getLogger(__name__)

# 强制终止后等待退出的时间
KILL_TIMEOUT = 1.0


class ServerState(Enum):
    """语言服务器状态"""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


_TRANSITIONS: dict[ServerState, set[ServerState]] = {
    ServerState.NOT_STARTED: {ServerState.STARTING},
    ServerState.STARTING: {ServerState.INITIALIZING, ServerState.STOPPED},
    ServerState.INITIALIZING: {ServerState.READY, ServerState.SHUTTING_DOWN, ServerState.STOPPED},
    ServerState.READY: {ServerState.SHUTTING_DOWN, ServerState.STOPPED},
    ServerState.SHUTTING_DOWN: {ServerState.STOPPED},
    ServerState.STOPPED: set(),
}


class LanguageServerSupervisor:
    """语言服务器子进程监管者"""

    def __init__(
        self,
        config: ServerConfig,
        root: str,
        initialize_timeout: float = 30.0,
        shutdown_grace: float = 2.0,
        on_exit: Optional[Callable[[Optional[int]], None]] = None,
    ):
        """
        Args:
            config: 语言服务器命令配置
            root: 工作区根目录
            initialize_timeout: initialize 请求超时 (秒)
            shutdown_grace: 关闭时等待子进程自行退出的时间 (秒)
            on_exit: READY 状态下子进程意外退出时的回调
        """
        self.config = config
        self.root = str(Path(root).absolute())
        self.initialize_timeout = initialize_timeout
        self.shutdown_grace = shutdown_grace
        self.on_exit = on_exit

        self.state = ServerState.NOT_STARTED
        self.channel: Optional[RPCChannel] = None
        self.capabilities: dict[str, Any] = {}
        self.returncode: Optional[int] = None

        self._process: Optional[asyncio.subprocess.Process] = None
        self._tasks: list[asyncio.Task] = []
        self._exited = asyncio.Event()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def is_ready(self) -> bool:
        return self.state is ServerState.READY

    def _transition(self, new_state: ServerState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise SupervisorError(f"非法状态转换: {self.state.value} -> {new_state.value}")
        logger.debug(f"语言服务器状态: {self.state.value} -> {new_state.value}")
        self.state = new_state

    async def start(self) -> RPCChannel:
        """启动子进程并完成握手，返回就绪的 RPC 通道"""
        self._transition(ServerState.STARTING)

        env = {**os.environ, **self.config.env}
        argv = self.config.argv
        logger.debug(f"启动语言服务器: {' '.join(argv)}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.root,
            )
        except FileNotFoundError:
            self._transition(ServerState.STOPPED)
            raise ServerStartError(f"找不到命令: {self.config.command}")
        except PermissionError:
            self._transition(ServerState.STOPPED)
            raise ServerStartError(f"没有执行权限: {self.config.command}")

        logger.info(f"语言服务器已启动 (PID: {self._process.pid})")

        self.channel = RPCChannel(self._process.stdout, self._process.stdin, name=self.config.command)
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self.channel.run()),
            loop.create_task(self._drain_stderr()),
            loop.create_task(self._watch()),
        ]

        self._transition(ServerState.INITIALIZING)
        try:
            await self._initialize()
        except LSPDError as e:
            await self.stop(graceful=False)
            raise ServerStartError(f"语言服务器初始化失败: {e}") from e

        if self.state is not ServerState.INITIALIZING:
            raise ServerStartError(f"语言服务器在握手期间退出 (code={self.returncode})")
        self._transition(ServerState.READY)
        logger.info("语言服务器握手完成")
        return self.channel

    async def _initialize(self) -> None:
        """initialize 请求 + initialized 通知"""
        params = InitializeParams(
            processId=os.getpid(),
            rootUri=path_to_uri(self.root),
            rootPath=self.root,
            capabilities=CLIENT_CAPABILITIES,
            workspaceFolders=[{"uri": path_to_uri(self.root), "name": Path(self.root).name}],
        )

        result = await self.channel.send_request(
            "initialize", params.to_dict(), timeout=self.initialize_timeout
        )
        self.capabilities = InitializeResult.from_dict(result).capabilities

        await self.channel.send_notification("initialized", {})

    async def stop(self, graceful: bool = True) -> None:
        """关闭语言服务器

        graceful 为 False 时跳过 LSP shutdown/exit，直接终止子进程。
        """
        if self.state is ServerState.NOT_STARTED:
            self.state = ServerState.STOPPED
            return
        if self.state is ServerState.SHUTTING_DOWN:
            return
        if self.state is ServerState.STOPPED:
            # 子进程已自行退出，只剩读取任务需要回收
            await self._cancel_tasks()
            return

        self._transition(ServerState.SHUTTING_DOWN)
        try:
            if graceful and self.channel is not None and not self.channel.is_closed:
                try:
                    await self.channel.send_request("shutdown", None, timeout=self.shutdown_grace)
                    await self.channel.send_notification("exit")
                except LSPDError as e:
                    logger.warning(f"语言服务器关闭请求失败: {e}")

            await self._terminate(wait_first=graceful)

        finally:
            if self.channel is not None:
                self.channel.close("语言服务器已停止")
            await self._cancel_tasks()
            if self._process is not None and self.returncode is None:
                self.returncode = self._process.returncode
            self._transition(ServerState.STOPPED)
            self._exited.set()
            logger.info("语言服务器已停止")

    async def _cancel_tasks(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _terminate(self, wait_first: bool) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

        if wait_first:
            try:
                await asyncio.wait_for(process.wait(), timeout=self.shutdown_grace)
                return
            except asyncio.TimeoutError:
                logger.warning("语言服务器未在宽限期内退出，强制终止")

        try:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=KILL_TIMEOUT)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        except ProcessLookupError:
            pass

    async def wait_exited(self) -> Optional[int]:
        """等待子进程结束"""
        await self._exited.wait()
        return self.returncode

    async def _watch(self) -> None:
        """监视子进程退出"""
        returncode = await self._process.wait()
        self.returncode = returncode

        if self.channel is not None:
            self.channel.close(f"语言服务器已退出 (code={returncode})")

        if self.state in (ServerState.SHUTTING_DOWN, ServerState.STOPPED):
            return

        was_ready = self.state is ServerState.READY
        logger.error(f"语言服务器意外退出 (code={returncode})")
        self._transition(ServerState.STOPPED)
        self._exited.set()

        if was_ready and self.on_exit is not None:
            self.on_exit(returncode)

    async def _drain_stderr(self) -> None:
        """stderr 不属于协议，只记录日志"""
        stderr = self._process.stderr
        if stderr is None:
            return
        while True:
            data = await stderr.read(4096)
            if not data:
                return
            logger.debug(f"[stderr] {data.decode('utf-8', errors='replace').rstrip()}")
