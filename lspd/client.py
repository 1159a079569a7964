"""控制套接字客户端与生命周期接口

钩子脚本是短命进程，这里使用阻塞式套接字，每次调用一个连接。
"""

from __future__ import annotations

import json
import logging
import os
import signal
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Optional

from .config import DEFAULT_INFO_PATH
from .discovery import DaemonInfo, pid_alive
from .errors import DaemonCommandError, DaemonUnavailableError

logger = logging.getLogger(__name__)

SOCKET_ENV_VAR = "LSPD_SOCK"
DEFAULT_CLIENT_TIMEOUT = 3.0
POLL_INTERVAL = 0.1


class DaemonClient:
    """守护进程客户端"""

    def __init__(self, socket_path: str, timeout: float = DEFAULT_CLIENT_TIMEOUT):
        self.socket_path = socket_path
        self.timeout = timeout

    def request(self, payload: dict) -> Any:
        """发送一条命令并返回响应，错误对象转为 DaemonCommandError"""
        data = (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")
        chunks: list[bytes] = []

        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(self.timeout)
                sock.connect(self.socket_path)
                sock.sendall(data)
                sock.shutdown(socket.SHUT_WR)
                while True:
                    chunk = sock.recv(65536)
                    if not chunk:
                        break
                    chunks.append(chunk)
        except OSError as e:
            raise DaemonUnavailableError(f"无法连接守护进程 {self.socket_path}: {e}")

        try:
            response = json.loads(b"".join(chunks).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DaemonUnavailableError(f"守护进程响应无效: {e}")

        if isinstance(response, dict) and "error" in response:
            raise DaemonCommandError(str(response["error"]), code=response.get("code"))
        return response

    def ping(self) -> bool:
        response = self.request({"type": "ping"})
        return isinstance(response, dict) and response.get("ok") is True

    def check(self, file_path: str, content: str) -> list[dict]:
        response = self.request({"type": "check", "filePath": file_path, "content": content})
        if not isinstance(response, list):
            raise DaemonUnavailableError(f"check 响应不是数组: {type(response).__name__}")
        return response

    def status(self) -> dict:
        return self.request({"type": "status"})

    def shutdown(self) -> None:
        self.request({"type": "shutdown"})


def resolve_socket_path(info_path: str = DEFAULT_INFO_PATH) -> Optional[str]:
    """环境变量优先，其次读取发现文件"""
    from_env = os.environ.get(SOCKET_ENV_VAR)
    if from_env:
        return from_env
    info = DaemonInfo.load(info_path)
    return info.socket_path if info else None


def _wait_for_exit(pid: int, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            # 自己启动的子进程需要回收，否则会以僵尸状态一直"存活"
            os.waitpid(pid, os.WNOHANG)
        except ChildProcessError:
            pass
        if not pid_alive(pid):
            return True
        time.sleep(POLL_INTERVAL / 2)
    return not pid_alive(pid)


def stop_daemon(info_path: str = DEFAULT_INFO_PATH, timeout: float = 2.0) -> bool:
    """停止发现文件记录的守护进程，并清理残留文件

    Returns:
        是否确实停止了一个运行中的进程
    """
    info = DaemonInfo.load(info_path)
    if info is None:
        DaemonInfo.remove(info_path)
        return False

    stopped = False
    if info.is_alive():
        logger.info(f"停止守护进程 (PID: {info.pid})")
        try:
            os.kill(info.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        stopped = _wait_for_exit(info.pid, timeout)
        if not stopped:
            logger.warning(f"守护进程未在 {timeout}s 内退出 (PID: {info.pid})")

    Path(info.socket_path).unlink(missing_ok=True)
    DaemonInfo.remove(info_path)
    return stopped


def start_daemon(
    root: str | Path,
    info_path: str = DEFAULT_INFO_PATH,
    config_path: str | Path | None = None,
    wait: float = 5.0,
    log_file: Optional[str] = None,
) -> Optional[DaemonInfo]:
    """后台启动守护进程，轮询发现文件直到就绪

    Returns:
        就绪的守护进程信息；超时或进程提前退出时返回 None
    """
    stop_daemon(info_path)

    argv = [sys.executable, "-m", "lspd", "serve", str(Path(root).absolute())]
    if config_path is not None:
        argv += ["--config", str(config_path)]
    if log_file:
        argv += ["--log-file", log_file]

    env = {**os.environ, "LSPD_INFO_PATH": info_path}
    logger.debug(f"启动守护进程: {' '.join(argv)}")

    with open(os.devnull, "r+b") as devnull:
        process = subprocess.Popen(
            argv,
            stdin=devnull,
            stdout=devnull,
            stderr=devnull,
            env=env,
            start_new_session=True,
            close_fds=True,
        )

    deadline = time.monotonic() + wait
    while time.monotonic() < deadline:
        info = DaemonInfo.load(info_path)
        if info is not None and info.pid == process.pid:
            return info
        if process.poll() is not None:
            logger.warning(f"守护进程启动失败 (code={process.returncode})")
            return None
        time.sleep(POLL_INTERVAL)

    logger.warning(f"守护进程未在 {wait}s 内就绪")
    return None
