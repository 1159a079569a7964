"""RPC 通道

在帧编解码之上管理与语言服务器的 JSON-RPC 通信:
- 请求 id 分配与待响应表
- 入站消息的单一分发点 (响应 / 通知 / 服务器请求)
- 通道关闭时让所有待响应请求立即失败
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Iterable, Optional

from .codec import FrameDecoder, encode
from .errors import ChannelClosedError, RequestTimeoutError, RPCError
from .jsonrpc import (
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    MessageKind,
    classify_message,
)

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[JSONRPCNotification], None]
CloseCallback = Callable[[str], None]

READ_CHUNK_SIZE = 65536


class RPCChannel:
    """基于字节流的 JSON-RPC 通道

    reader/writer 通常是语言服务器子进程的 stdout/stdin。
    所有状态只在事件循环线程上修改。
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        name: str = "lsp",
    ):
        self.name = name
        self._reader = reader
        self._writer = writer
        self._decoder = FrameDecoder()
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._handlers: list[tuple[Optional[frozenset[str]], NotificationHandler]] = []
        self._close_callbacks: list[CloseCallback] = []
        self._background: set[asyncio.Task] = set()
        self._write_lock = asyncio.Lock()
        self._closed = False
        self._close_reason: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> Optional[str]:
        return self._close_reason

    @property
    def pending_count(self) -> int:
        """待响应请求数"""
        return len(self._pending)

    def on_notification(
        self,
        handler: NotificationHandler,
        methods: Optional[Iterable[str]] = None,
    ) -> None:
        """订阅入站通知，methods 为空时接收全部通知"""
        self._handlers.append((frozenset(methods) if methods else None, handler))

    def on_close(self, callback: CloseCallback) -> None:
        """注册通道关闭回调"""
        self._close_callbacks.append(callback)

    async def send_request(
        self,
        method: str,
        params: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """发送请求并等待响应"""
        self._ensure_open()

        request_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._write(JSONRPCRequest(id=request_id, method=method, params=params))
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(f"请求超时: {method} (id={request_id})")
        finally:
            self._pending.pop(request_id, None)

    async def send_notification(self, method: str, params: Any = None) -> None:
        """发送通知 (不等待响应)"""
        self._ensure_open()
        await self._write(JSONRPCNotification(method=method, params=params))

    async def run(self) -> None:
        """读取循环，直到输出流结束或通道关闭"""
        reason = f"{self.name} 输出流已结束"
        try:
            while not self._closed:
                chunk = await self._reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for message in self._decoder.feed(chunk):
                    self._dispatch(message)
        except asyncio.CancelledError:
            reason = "读取任务已取消"
            raise
        except OSError as e:
            reason = f"读取失败: {e}"
            logger.error(f"{self.name} {reason}")
        finally:
            self.close(reason)

    def close(self, reason: str = "通道已关闭") -> None:
        """关闭通道，让所有待响应请求以 ChannelClosedError 结束"""
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason
        logger.info(f"{self.name} 通道关闭: {reason}")

        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(ChannelClosedError(reason))

        for callback in self._close_callbacks:
            try:
                callback(reason)
            except Exception:
                logger.exception("通道关闭回调失败")

    def _ensure_open(self) -> None:
        if self._closed:
            raise ChannelClosedError(self._close_reason or "通道已关闭")

    async def _write(self, message: Any) -> None:
        data = encode(message)
        async with self._write_lock:
            self._ensure_open()
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (OSError, RuntimeError) as e:
                self.close(f"写入失败: {e}")
                raise ChannelClosedError(f"写入失败: {e}") from e
        logger.debug(f"{self.name} 发送 {len(data)} 字节")

    def _dispatch(self, message: dict) -> None:
        """入站消息的唯一分发点"""
        kind, parsed = classify_message(message)

        if kind is MessageKind.RESPONSE:
            self._resolve(parsed)
        elif kind is MessageKind.NOTIFICATION:
            self._deliver(parsed)
        elif kind is MessageKind.SERVER_REQUEST:
            self._spawn(self._answer_server_request(parsed))
        else:
            logger.warning(f"{self.name} 忽略无效消息: {str(message)[:200]}")

    def _resolve(self, response: JSONRPCResponse) -> None:
        future = self._pending.pop(response.id, None) if isinstance(response.id, int) else None
        if future is None:
            logger.warning(f"{self.name} 收到未知 id 的响应: {response.id}")
            return
        if future.done():
            return

        if response.error is not None:
            future.set_exception(
                RPCError(response.error.code, response.error.message, response.error.data)
            )
        else:
            future.set_result(response.result)

    def _deliver(self, notification: JSONRPCNotification) -> None:
        for methods, handler in self._handlers:
            if methods is not None and notification.method not in methods:
                continue
            try:
                handler(notification)
            except Exception:
                logger.exception(f"处理通知失败: {notification.method}")

    async def _answer_server_request(self, request: JSONRPCRequest) -> None:
        """应答服务器发来的请求，避免服务器阻塞等待"""
        result: Any = None
        if request.method == "workspace/configuration" and isinstance(request.params, dict):
            result = [None for _ in request.params.get("items", [])]

        try:
            await self._write(JSONRPCResponse(id=request.id, result=result))
        except ChannelClosedError:
            logger.debug(f"通道已关闭，放弃应答: {request.method}")

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
