"""诊断关联

推送文档版本后，在截止时间内等待该 URI 的 publishDiagnostics；
超时则返回缓存中最近一次的诊断 (可能过期或为空)。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .documents import DocumentStore, path_to_uri, uri_key
from .errors import ChannelClosedError, DocumentBusyError
from .jsonrpc import JSONRPCNotification
from .protocol import DocumentUri, PublishDiagnosticsParams
from .rpc import RPCChannel

logger = logging.getLogger(__name__)

PUBLISH_DIAGNOSTICS = "textDocument/publishDiagnostics"

DEFAULT_TIMEOUT = 2.0


@dataclass
class DiagnosticsWaiter:
    """等待某个 URI 新诊断的调用方"""

    uri: DocumentUri
    version: int
    future: asyncio.Future
    deadline: float  # loop.time()


@dataclass
class CheckResult:
    """一次检查的结果"""

    uri: DocumentUri
    version: int
    diagnostics: list[dict]
    fresh: bool  # False 表示超时后返回的缓存结果


class DiagnosticsCorrelator:
    """诊断关联器

    每个 URI 同时只允许一个等待者，第二个并发检查直接以
    DocumentBusyError 拒绝。
    """

    def __init__(
        self,
        channel: RPCChannel,
        store: DocumentStore,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.timeout = timeout
        self._channel = channel
        self._store = store
        self._cache: dict[str, list[dict]] = {}
        self._waiters: dict[str, DiagnosticsWaiter] = {}

        channel.on_notification(self.handle_notification, methods=[PUBLISH_DIAGNOSTICS])
        channel.on_close(lambda reason: self.cancel_all(ChannelClosedError(reason)))

    @property
    def active_waiters(self) -> int:
        return len(self._waiters)

    def get_cached(self, uri: DocumentUri) -> list[dict]:
        """URI 最近一次的诊断，未收到过返回空列表"""
        return list(self._cache.get(uri_key(uri), []))

    async def check(
        self,
        path: str | Path,
        content: str,
        timeout: Optional[float] = None,
    ) -> CheckResult:
        """推送文档内容并等待诊断"""
        key = uri_key(path_to_uri(path))
        if key in self._waiters:
            raise DocumentBusyError(path_to_uri(path))
        if self._channel.is_closed:
            raise ChannelClosedError(self._channel.close_reason or "通道已关闭")

        update = self._store.open_or_update(path, content)
        budget = self.timeout if timeout is None else timeout

        loop = asyncio.get_running_loop()
        waiter = DiagnosticsWaiter(
            uri=update.uri,
            version=update.version,
            future=loop.create_future(),
            deadline=loop.time() + budget,
        )
        # 先登记再发送，避免通知先于登记到达
        self._waiters[key] = waiter

        try:
            await self._channel.send_notification(update.method, update.to_params())
            remaining = max(0.0, waiter.deadline - loop.time())
            diagnostics = await asyncio.wait_for(waiter.future, timeout=remaining)
            return CheckResult(update.uri, update.version, diagnostics, fresh=True)
        except asyncio.TimeoutError:
            logger.debug(f"等待诊断超时 ({budget}s): {update.uri} v{update.version}")
            return CheckResult(update.uri, update.version, self.get_cached(update.uri), fresh=False)
        finally:
            if self._waiters.get(key) is waiter:
                del self._waiters[key]

    def handle_notification(self, notification: JSONRPCNotification) -> None:
        """publishDiagnostics 通知入口"""
        if not isinstance(notification.params, dict):
            logger.warning("publishDiagnostics 缺少参数")
            return
        try:
            params = PublishDiagnosticsParams.from_dict(notification.params)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"处理诊断失败: {e}")
            return
        self.handle_publish(params)

    def handle_publish(self, params: PublishDiagnosticsParams) -> None:
        key = uri_key(params.uri)
        # 缓存无条件更新
        self._cache[key] = params.diagnostics
        logger.debug(f"收到诊断 {params.uri} v{params.version}: {len(params.diagnostics)} 条")

        waiter = self._waiters.get(key)
        if waiter is None or waiter.future.done():
            return
        if params.version is not None and params.version < waiter.version:
            # 旧版本的诊断不能当作当前结果
            return

        del self._waiters[key]
        waiter.future.set_result(list(params.diagnostics))

    def cancel_all(self, exc: BaseException) -> None:
        """让所有等待者以异常结束"""
        waiters = list(self._waiters.values())
        self._waiters.clear()
        for waiter in waiters:
            if not waiter.future.done():
                waiter.future.set_exception(exc)
