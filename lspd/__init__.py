"""
lspd - LSP 诊断守护进程

在后台常驻一个语言服务器，通过本地 Unix 套接字为短命的钩子脚本
提供 "诊断这个文件" 查询，省去每次启动语言服务器的开销。
"""

__version__ = "0.1.0"

from .client import DaemonClient, start_daemon, stop_daemon
from .codec import FrameDecoder, encode
from .config import DaemonConfig, ServerConfig
from .daemon import Daemon
from .diagnostics import CheckResult, DiagnosticsCorrelator
from .discovery import DaemonInfo
from .documents import DocumentAction, DocumentStore, DocumentUpdate
from .errors import (
    ChannelClosedError,
    ClientError,
    ConfigError,
    DaemonCommandError,
    DaemonUnavailableError,
    DocumentBusyError,
    LSPDError,
    RequestTimeoutError,
    RPCError,
    ServerStartError,
    SupervisorError,
    TransportError,
)
from .protocol import Diagnostic, DiagnosticSeverity, Position, Range
from .rpc import RPCChannel
from .server import ControlServer
from .supervisor import LanguageServerSupervisor, ServerState

__all__ = [
    # Codec / RPC
    "encode",
    "FrameDecoder",
    "RPCChannel",
    # State
    "DocumentStore",
    "DocumentUpdate",
    "DocumentAction",
    "DiagnosticsCorrelator",
    "CheckResult",
    # Lifecycle
    "LanguageServerSupervisor",
    "ServerState",
    "ControlServer",
    "Daemon",
    "DaemonInfo",
    "DaemonConfig",
    "ServerConfig",
    # Client
    "DaemonClient",
    "start_daemon",
    "stop_daemon",
    # Protocol
    "Diagnostic",
    "DiagnosticSeverity",
    "Position",
    "Range",
    # Errors
    "LSPDError",
    "TransportError",
    "ChannelClosedError",
    "RPCError",
    "RequestTimeoutError",
    "DocumentBusyError",
    "SupervisorError",
    "ServerStartError",
    "ConfigError",
    "ClientError",
    "DaemonUnavailableError",
    "DaemonCommandError",
]
