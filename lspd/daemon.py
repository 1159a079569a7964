"""诊断守护进程

Daemon 是一次运行的显式上下文: 语言服务器、文档存储、诊断关联器、
控制套接字和发现文件都挂在它上面，由 run() 统一初始化和清理。
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from typing import Optional

from .config import DaemonConfig
from .diagnostics import DiagnosticsCorrelator
from .discovery import DaemonInfo
from .documents import DocumentStore
from .server import ControlServer
from .supervisor import LanguageServerSupervisor

logger = logging.getLogger(__name__)


class Daemon:
    """LSP 诊断守护进程"""

    def __init__(self, config: DaemonConfig):
        self.config = config
        self.store = DocumentStore()
        self.supervisor = LanguageServerSupervisor(
            config.server,
            config.root,
            initialize_timeout=config.initialize_timeout,
            shutdown_grace=config.shutdown_grace,
            on_exit=self._on_server_exit,
        )
        self.correlator: Optional[DiagnosticsCorrelator] = None
        self.control: Optional[ControlServer] = None
        self.info: Optional[DaemonInfo] = None
        self.exit_code = 0

        self._stop_event = asyncio.Event()
        self._graceful = True
        self._started_at = time.time()

    def request_stop(self, graceful: bool = True) -> None:
        """请求停止；任一调用方要求立即停止则跳过 LSP 关闭流程"""
        self._graceful = self._graceful and graceful
        self._stop_event.set()

    def status(self) -> dict:
        return {
            "pid": os.getpid(),
            "state": self.supervisor.state.value,
            "root": self.config.root,
            "server": self.config.server.command,
            "serverPid": self.supervisor.pid,
            "documents": len(self.store),
            "connections": self.control.connections if self.control else 0,
            "uptime": round(time.time() - self._started_at, 3),
        }

    async def start(self) -> DaemonInfo:
        """握手完成后才开放控制套接字，然后发布发现文件"""
        channel = await self.supervisor.start()

        self.correlator = DiagnosticsCorrelator(
            channel, self.store, timeout=self.config.diagnostics_timeout
        )
        self.control = ControlServer(
            self.config.socket_path,
            self.correlator,
            self.config.root,
            client_timeout=self.config.client_timeout,
            status_provider=self.status,
            shutdown_handler=self.request_stop,
        )
        await self.control.start()

        self.info = DaemonInfo(socket_path=self.config.socket_path, pid=os.getpid())
        self.info.write_atomic(self.config.info_path)
        logger.info(f"守护进程就绪 (PID: {self.info.pid}, 套接字: {self.info.socket_path})")
        return self.info

    async def shutdown(self) -> None:
        """撤销发现文件，停止语言服务器，关闭套接字"""
        self._unpublish()
        await self.supervisor.stop(graceful=self._graceful)
        if self.control is not None:
            await self.control.close(timeout=self.config.shutdown_grace)
        logger.info("守护进程已停止")

    async def run(self) -> int:
        """运行直到收到停止请求，返回进程退出码"""
        loop = asyncio.get_running_loop()
        self._install_signal_handlers(loop)
        try:
            await self.start()
            # 启动脚本以此判断就绪
            print("READY", flush=True)
            await self._stop_event.wait()
        finally:
            await self.shutdown()
            self._remove_signal_handlers(loop)
        return self.exit_code

    def _unpublish(self) -> None:
        # 只删除属于自己的发现文件，新实例可能已经覆盖了它
        current = DaemonInfo.load(self.config.info_path)
        if current is not None and current.pid == os.getpid():
            DaemonInfo.remove(self.config.info_path)

    def _on_server_exit(self, returncode: Optional[int]) -> None:
        logger.error(f"语言服务器退出 (code={returncode})，守护进程随之停止")
        self.exit_code = 1
        self.request_stop(graceful=False)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        # SIGTERM 走完整关闭流程；SIGINT 立即退出但仍清理文件
        loop.add_signal_handler(signal.SIGTERM, self.request_stop, True)
        loop.add_signal_handler(signal.SIGINT, self.request_stop, False)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
