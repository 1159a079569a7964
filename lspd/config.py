"""配置管理"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from .errors import ConfigError

CONFIG_FILENAME = ".lspd.yaml"
DEFAULT_INFO_PATH = "/tmp/lspd-info.json"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

DEFAULT_DIAGNOSTICS_TIMEOUT = 2.0
# 客户端超时在守护进程的诊断等待之外预留的余量
CLIENT_TIMEOUT_MARGIN = 1.0


@dataclass
class ServerConfig:
    """语言服务器配置"""

    command: str = "tsgo"
    args: List[str] = field(default_factory=lambda: ["--lsp"])
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def argv(self) -> List[str]:
        return [self.command] + list(self.args)


@dataclass
class DaemonConfig:
    """守护进程配置"""

    root: str = "."
    server: ServerConfig = field(default_factory=ServerConfig)
    socket_dir: str = "/tmp"
    info_path: str = DEFAULT_INFO_PATH
    diagnostics_timeout: float = DEFAULT_DIAGNOSTICS_TIMEOUT
    initialize_timeout: float = 30.0
    shutdown_grace: float = 2.0
    client_timeout: float = 10.0
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        self.root = str(Path(self.root).absolute())
        self.log_level = str(self.log_level).upper()
        self.validate()

    @property
    def socket_path(self) -> str:
        """每个守护进程实例一个套接字"""
        return str(Path(self.socket_dir) / f"lspd-{os.getpid()}.sock")

    def validate(self) -> None:
        for name in (
            "diagnostics_timeout",
            "initialize_timeout",
            "shutdown_grace",
            "client_timeout",
        ):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ConfigError(f"{name} 必须是正数: {value!r}")
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"未知日志级别: {self.log_level}")
        if not self.server.command:
            raise ConfigError("server.command 不能为空")

    @classmethod
    def load(
        cls,
        root: str | Path = ".",
        config_path: str | Path | None = None,
    ) -> "DaemonConfig":
        """加载配置，找不到配置文件时使用默认值"""
        if config_path is None:
            config_path = cls._find_config_file(Path(root))
        elif not Path(config_path).exists():
            raise ConfigError(f"配置文件不存在: {config_path}")

        data: dict = {}
        if config_path is not None:
            data = cls._read_yaml(Path(config_path))

        data = cls._apply_env(data)
        return cls.from_dict(data, root=root)

    @classmethod
    def _find_config_file(cls, root: Path) -> Path | None:
        """查找配置文件"""
        # 优先级: 项目目录 > 用户目录
        search_paths = [
            root / CONFIG_FILENAME,
            Path.home() / ".lspd" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    @staticmethod
    def _read_yaml(config_path: Path) -> dict:
        try:
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"配置文件格式错误 {config_path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"配置文件必须是映射: {config_path}")
        return data

    @staticmethod
    def _apply_env(data: dict) -> dict:
        """环境变量覆盖"""
        data = dict(data)

        command = os.environ.get("LSPD_COMMAND")
        if command:
            try:
                argv = shlex.split(command)
            except ValueError as e:
                raise ConfigError(f"LSPD_COMMAND 无法解析: {e}")
            if not argv:
                raise ConfigError("LSPD_COMMAND 不能为空")
            data["server"] = {**(data.get("server") or {}), "command": argv[0], "args": argv[1:]}

        info_path = os.environ.get("LSPD_INFO_PATH")
        if info_path:
            data["info_path"] = info_path

        timeout = os.environ.get("LSPD_TIMEOUT")
        if timeout:
            try:
                data["diagnostics_timeout"] = float(timeout)
            except ValueError:
                raise ConfigError(f"LSPD_TIMEOUT 不是数字: {timeout}")

        log_level = os.environ.get("LSPD_LOG_LEVEL")
        if log_level:
            data["log_level"] = log_level

        return data

    @classmethod
    def from_dict(cls, data: dict, root: str | Path = ".") -> "DaemonConfig":
        """从字典构建配置"""
        server_data = data.get("server") or {}
        if not isinstance(server_data, dict):
            raise ConfigError("server 必须是映射")

        args = server_data.get("args", ["--lsp"])
        if not isinstance(args, list):
            raise ConfigError("server.args 必须是列表")

        server = ServerConfig(
            command=server_data.get("command", "tsgo"),
            args=[str(a) for a in args],
            env={str(k): str(v) for k, v in (server_data.get("env") or {}).items()},
        )

        return cls(
            root=str(data.get("root", root)),
            server=server,
            socket_dir=data.get("socket_dir", "/tmp"),
            info_path=data.get("info_path", DEFAULT_INFO_PATH),
            diagnostics_timeout=data.get("diagnostics_timeout", DEFAULT_DIAGNOSTICS_TIMEOUT),
            initialize_timeout=data.get("initialize_timeout", 30.0),
            shutdown_grace=data.get("shutdown_grace", 2.0),
            client_timeout=data.get("client_timeout", 10.0),
            log_level=data.get("log_level", "INFO"),
            log_file=data.get("log_file"),
        )


def client_timeout_from_env() -> float:
    """客户端超时 = 守护进程诊断等待 + 余量

    守护进程和钩子读取同一个 LSPD_TIMEOUT，客户端总比守护进程多等一点，
    超时返回的缓存结果才能送达。配置文件里的 diagnostics_timeout 不在此列，
    改大它时需要同时设置 LSPD_TIMEOUT 或 --timeout。
    """
    value = os.environ.get("LSPD_TIMEOUT")
    try:
        deadline = float(value) if value else DEFAULT_DIAGNOSTICS_TIMEOUT
    except ValueError:
        deadline = DEFAULT_DIAGNOSTICS_TIMEOUT
    return max(deadline, 0.0) + CLIENT_TIMEOUT_MARGIN
