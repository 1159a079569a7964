"""异常定义

守护进程各层共用的错误类型。
"""

from __future__ import annotations

from typing import Any, Optional


class LSPDError(Exception):
    """lspd 错误基类"""

    pass


class TransportError(LSPDError):
    """传输层错误 (子进程管道读写失败)"""

    pass


class ChannelClosedError(TransportError):
    """RPC 通道已关闭"""

    pass


class RPCError(LSPDError):
    """语言服务器返回的 JSON-RPC 错误响应"""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.data = data


class RequestTimeoutError(LSPDError):
    """请求超时"""

    pass


class DocumentBusyError(LSPDError):
    """同一文档已有诊断等待中"""

    def __init__(self, uri: str):
        super().__init__(f"文档正在检查中: {uri}")
        self.uri = uri


class SupervisorError(LSPDError):
    """语言服务器状态机错误"""

    pass


class ServerStartError(SupervisorError):
    """语言服务器启动失败"""

    pass


class ConfigError(LSPDError):
    """配置错误"""

    pass


class ClientError(LSPDError):
    """控制套接字客户端错误"""

    pass


class DaemonUnavailableError(ClientError):
    """无法连接守护进程"""

    pass


class DaemonCommandError(ClientError):
    """守护进程返回了错误对象"""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code
