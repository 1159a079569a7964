"""控制套接字服务

本地 Unix 套接字，每个连接只处理一条命令:
客户端发送一个 JSON 对象 (以换行结尾或关闭写端)，服务端回复一个
JSON 值加换行后关闭连接。

命令:
    {"type": "ping"}                                    -> {"ok": true}
    {"type": "check", "filePath": ..., "content": ...}  -> [diagnostic, ...]
    {"type": "status"}                                  -> {"ok": true, ...}
    {"type": "shutdown"}                                -> {"ok": true}
错误统一回复 {"error": message, "code": ...}。
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Literal, Optional, Type

from pydantic import BaseModel, Field, ValidationError

from .diagnostics import DiagnosticsCorrelator
from .errors import DocumentBusyError, TransportError

logger = logging.getLogger(__name__)

# 单条命令的最大字节数 (包含文件内容)
MAX_REQUEST_SIZE = 32 * 1024 * 1024


class PingCommand(BaseModel):
    type: Literal["ping"]


class StatusCommand(BaseModel):
    type: Literal["status"]


class ShutdownCommand(BaseModel):
    type: Literal["shutdown"]


class CheckCommand(BaseModel):
    type: Literal["check"]
    filePath: str = Field(min_length=1)
    content: str


COMMANDS: Dict[str, Type[BaseModel]] = {
    "ping": PingCommand,
    "status": StatusCommand,
    "shutdown": ShutdownCommand,
    "check": CheckCommand,
}


def error_response(code: str, message: str) -> dict:
    return {"error": message, "code": code}


class ControlServer:
    """控制套接字服务器

    所有命令都在事件循环线程上执行，文档存储和诊断缓存只有一个写者。
    """

    def __init__(
        self,
        socket_path: str,
        correlator: DiagnosticsCorrelator,
        root: str,
        client_timeout: float = 10.0,
        status_provider: Optional[Callable[[], dict]] = None,
        shutdown_handler: Optional[Callable[[], None]] = None,
    ):
        self.socket_path = socket_path
        self.root = root
        self.client_timeout = client_timeout
        self._correlator = correlator
        self._status_provider = status_provider
        self._shutdown_handler = shutdown_handler
        self._server: Optional[asyncio.AbstractServer] = None
        self.connections = 0

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> None:
        """绑定套接字并开始接受连接"""
        path = Path(self.socket_path)
        if path.exists() or path.is_symlink():
            logger.warning(f"移除残留套接字: {path}")
            path.unlink()

        self._server = await asyncio.start_unix_server(
            self._handle_connection,
            path=self.socket_path,
            limit=MAX_REQUEST_SIZE,
        )
        os.chmod(self.socket_path, 0o600)
        logger.info(f"控制套接字已监听: {self.socket_path}")

    async def close(self, timeout: float = 5.0) -> None:
        """停止接受连接，等待进行中的连接结束并删除套接字文件"""
        if self._server is not None:
            self._server.close()
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("等待控制连接关闭超时")
            self._server = None
        Path(self.socket_path).unlink(missing_ok=True)

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self.connections += 1
        try:
            try:
                raw = await asyncio.wait_for(reader.readline(), timeout=self.client_timeout)
            except asyncio.TimeoutError:
                response: Any = error_response("invalid_request", "读取命令超时")
            except ValueError:
                response = error_response("invalid_request", "命令过大")
            else:
                response = await self.dispatch(raw)

            await self._respond(writer, response)

        except Exception:
            logger.exception("处理控制连接失败")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def _respond(self, writer: asyncio.StreamWriter, response: Any) -> None:
        data = (json.dumps(response, ensure_ascii=False) + "\n").encode("utf-8")
        try:
            writer.write(data)
            await writer.drain()
        except OSError as e:
            # 客户端已离开，结果丢弃
            logger.debug(f"客户端已断开，丢弃响应: {e}")

    async def dispatch(self, raw: bytes) -> Any:
        """解析一条原始命令并执行，总是返回可序列化的响应"""
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"无效的客户端命令: {e}")
            return error_response("invalid_request", f"无效 JSON: {e}")

        if not isinstance(data, dict):
            return error_response("invalid_request", "命令必须是 JSON 对象")

        command_type = data.get("type")
        model = COMMANDS.get(command_type) if isinstance(command_type, str) else None
        if model is None:
            logger.warning(f"未知命令: {command_type!r}")
            return error_response("unknown_command", f"unknown command: {command_type!r}")

        try:
            command = model.model_validate(data)
        except ValidationError as e:
            return error_response("invalid_request", f"命令参数错误: {e.error_count()} 处")

        try:
            return await self._execute(command)
        except DocumentBusyError as e:
            return error_response("busy", str(e))
        except TransportError as e:
            return error_response("server_unavailable", f"语言服务器不可用: {e}")
        except Exception as e:
            logger.exception(f"执行命令失败: {command_type}")
            return error_response("internal_error", str(e))

    async def _execute(self, command: BaseModel) -> Any:
        if isinstance(command, PingCommand):
            return {"ok": True}

        if isinstance(command, StatusCommand):
            status = self._status_provider() if self._status_provider else {}
            return {"ok": True, **status}

        if isinstance(command, ShutdownCommand):
            if self._shutdown_handler is not None:
                self._shutdown_handler()
            return {"ok": True}

        if isinstance(command, CheckCommand):
            path = Path(command.filePath)
            if not path.is_absolute():
                path = Path(self.root) / path
            result = await self._correlator.check(path, command.content)
            logger.info(
                f"检查 {path} v{result.version}: {len(result.diagnostics)} 条诊断"
                f"{'' if result.fresh else ' (超时, 使用缓存)'}"
            )
            return result.diagnostics

        raise TypeError(f"未处理的命令: {type(command).__name__}")
