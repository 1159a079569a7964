"""守护进程发现文件

运行中的守护进程把 {"socketPath", "pid"} 写到约定路径，
独立的钩子进程据此找到它。
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class DaemonInfo:
    """运行中守护进程的公开记录"""

    socket_path: str
    pid: int

    def to_dict(self) -> dict:
        return {"socketPath": self.socket_path, "pid": self.pid}

    @classmethod
    def from_dict(cls, data: dict) -> "DaemonInfo":
        socket_path = data.get("socketPath")
        pid = data.get("pid")
        if not isinstance(socket_path, str) or not isinstance(pid, int):
            raise ValueError(f"无效的守护进程信息: {data!r}")
        return cls(socket_path=socket_path, pid=pid)

    def write_atomic(self, path: str | Path) -> None:
        """先写临时文件再 rename，读取方不会看到半个文件"""
        path = Path(path)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(f"已写入守护进程信息: {path}")

    @classmethod
    def load(cls, path: str | Path) -> Optional["DaemonInfo"]:
        """读取发现文件，不存在或损坏时返回 None"""
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
            return cls.from_dict(data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"读取守护进程信息失败 {path}: {e}")
            return None

    @staticmethod
    def remove(path: str | Path) -> None:
        Path(path).unlink(missing_ok=True)

    def is_alive(self) -> bool:
        """记录的进程是否仍在运行"""
        return pid_alive(self.pid)


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # 进程存在但属于其他用户
        return True
    return True
