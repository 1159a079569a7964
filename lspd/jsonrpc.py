"""JSON-RPC 2.0 消息类型

LSP 在 JSON-RPC 2.0 之上定义请求、响应和通知。入站消息经
classify_message() 归类后由 RPC 通道的单一分发点处理。
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ValidationError

Params = Optional[Union[Dict[str, Any], List[Any]]]


class JSONRPCRequest(BaseModel):
    """JSON-RPC 2.0 请求"""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int]
    method: str
    params: Params = None

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)


class JSONRPCNotification(BaseModel):
    """JSON-RPC 2.0 通知 (无 id)"""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Params = None

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)


class JSONRPCError(BaseModel):
    """JSON-RPC 2.0 错误"""

    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCResponse(BaseModel):
    """JSON-RPC 2.0 响应"""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int, None] = None
    result: Optional[Any] = None
    error: Optional[JSONRPCError] = None

    def to_wire(self) -> dict:
        # result 为 null 时也必须出现在响应里
        message: dict = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            message["error"] = self.error.model_dump(exclude_none=True)
        else:
            message["result"] = self.result
        return message


class MessageKind(Enum):
    """入站消息类别"""

    RESPONSE = "response"
    NOTIFICATION = "notification"
    SERVER_REQUEST = "server_request"
    INVALID = "invalid"


InboundMessage = Union[JSONRPCRequest, JSONRPCNotification, JSONRPCResponse, None]


def classify_message(data: Any) -> Tuple[MessageKind, InboundMessage]:
    """把解码后的 JSON 对象归类并解析为对应模型"""
    if not isinstance(data, dict):
        return MessageKind.INVALID, None

    try:
        if "method" in data:
            if data.get("id") is not None:
                return MessageKind.SERVER_REQUEST, JSONRPCRequest(**data)
            return MessageKind.NOTIFICATION, JSONRPCNotification(**data)

        if "id" in data and ("result" in data or "error" in data):
            return MessageKind.RESPONSE, JSONRPCResponse(**data)

    except ValidationError:
        return MessageKind.INVALID, None

    return MessageKind.INVALID, None
