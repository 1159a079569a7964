"""LSP 帧编解码

LSP 消息格式: `Content-Length: <n>\\r\\n\\r\\n<json>`，n 为 UTF-8 字节数。
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

HEADER_TERMINATOR = b"\r\n\r\n"
CONTENT_LENGTH_NAME = b"content-length:"
CONTENT_LENGTH_RE = re.compile(rb"content-length:[ \t]*(\d+)", re.IGNORECASE)
CONTENT_LENGTH_NAME_RE = re.compile(re.escape(CONTENT_LENGTH_NAME), re.IGNORECASE)

# 找不到头部结束符时允许缓冲的最大字节数
MAX_HEADER_SIZE = 8192


def encode(message: Any) -> bytes:
    """编码一条消息为 LSP 帧"""
    if hasattr(message, "to_wire"):
        message = message.to_wire()
    elif isinstance(message, BaseModel):
        message = message.model_dump(exclude_none=True)

    body = json.dumps(message, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


def parse_content_length(header: bytes) -> Optional[int]:
    """从头部块中解析 Content-Length，解析不到返回 None"""
    match = CONTENT_LENGTH_RE.search(header)
    if match is None:
        return None
    return int(match.group(1))


class FrameDecoder:
    """增量帧解码器

    feed() 接收任意切分的字节块，返回已完整到达的消息。缓冲区总是从
    一个帧的起点开始，已消费的字节会被移除，不会重复解析。
    """

    def __init__(self, max_header_size: int = MAX_HEADER_SIZE):
        self.max_header_size = max_header_size
        self._buffer = bytearray()
        # 下次搜索头部结束符的起点
        self._scan_from = 0
        self.dropped = 0

    @property
    def pending(self) -> bytes:
        """尚未消费的字节"""
        return bytes(self._buffer)

    def feed(self, data: bytes) -> list[dict]:
        """喂入字节，返回解码出的完整消息列表"""
        self._buffer.extend(data)
        messages: list[dict] = []

        while True:
            header_end = self._buffer.find(HEADER_TERMINATOR, self._scan_from)
            if header_end == -1:
                self._stall()
                break

            body_start = header_end + len(HEADER_TERMINATOR)
            length = parse_content_length(bytes(self._buffer[:header_end]))
            if length is None:
                logger.warning(f"丢弃无效帧头: {bytes(self._buffer[:header_end])[:80]!r}")
                del self._buffer[:body_start]
                self._scan_from = 0
                self.dropped += 1
                continue

            body_end = body_start + length
            if len(self._buffer) < body_end:
                # 帧体未到齐，下次从当前头部继续
                self._scan_from = header_end
                break

            body = bytes(self._buffer[body_start:body_end])
            del self._buffer[:body_end]
            self._scan_from = 0

            message = self._parse_body(body)
            if message is not None:
                messages.append(message)

        return messages

    def _stall(self) -> None:
        """等待更多数据；过长的无头部数据直接丢弃

        丢弃时保留最后一个 Content-Length 头部 (可能还没到齐) 或可能是
        它开头的尾部字节，解码结果与数据如何切块无关。
        """
        if len(self._buffer) > self.max_header_size:
            keep_from = self._last_header_start()
            if len(self._buffer) - keep_from > self.max_header_size:
                # 头部本身超长，按垃圾数据处理
                keep_from = len(self._buffer) - (len(CONTENT_LENGTH_NAME) - 1)
            if keep_from > 0:
                logger.warning(f"丢弃 {keep_from} 字节无帧头数据")
                del self._buffer[:keep_from]
                self.dropped += 1
        # 保留可能跨块的半个结束符
        self._scan_from = max(0, len(self._buffer) - (len(HEADER_TERMINATOR) - 1))

    def _last_header_start(self) -> int:
        """最后一个 Content-Length 名称的位置；没有时为可能的半个名称的起点"""
        start = None
        for match in CONTENT_LENGTH_NAME_RE.finditer(self._buffer):
            start = match.start()
        if start is not None:
            return start
        return max(0, len(self._buffer) - (len(CONTENT_LENGTH_NAME) - 1))

    def _parse_body(self, body: bytes) -> Optional[dict]:
        try:
            message = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"丢弃无法解析的帧体: {e}")
            self.dropped += 1
            return None

        if not isinstance(message, dict):
            logger.warning(f"丢弃非对象消息: {type(message).__name__}")
            self.dropped += 1
            return None

        return message
