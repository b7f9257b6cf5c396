"""客户端消息通道

终端和日志模块通过 MessageTransport 与浏览器通信，
WebSocketTransport 把 FastAPI 的 WebSocket 适配到该接口。
"""

import logging
from typing import Protocol

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from .errors import TransportClosedError

logger = logging.getLogger(__name__)


class MessageTransport(Protocol):
    """基于消息的双向通道"""

    async def receive(self) -> bytes | str:
        """接收一条消息，连接关闭时抛出 TransportClosedError"""
        ...

    async def send_bytes(self, data: bytes) -> None:
        ...

    async def send_text(self, data: str) -> None:
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None:
        ...


class WebSocketTransport:
    """FastAPI WebSocket 适配器（调用方负责 accept）"""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._closed = False

    async def receive(self) -> bytes | str:
        if self._closed:
            raise TransportClosedError("WebSocket 已关闭")
        try:
            message = await self.websocket.receive()
        except (WebSocketDisconnect, RuntimeError) as e:
            self._closed = True
            raise TransportClosedError(f"WebSocket 已断开: {e}") from e

        if message["type"] == "websocket.disconnect":
            self._closed = True
            raise TransportClosedError(f"WebSocket 已断开 (code={message.get('code')})")

        if message.get("bytes") is not None:
            return message["bytes"]
        return message.get("text") or ""

    async def send_bytes(self, data: bytes) -> None:
        if self._closed:
            raise TransportClosedError("WebSocket 已关闭")
        try:
            await self.websocket.send_bytes(data)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            self._closed = True
            raise TransportClosedError(f"发送失败: {e}") from e

    async def send_text(self, data: str) -> None:
        if self._closed:
            raise TransportClosedError("WebSocket 已关闭")
        try:
            await self.websocket.send_text(data)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            self._closed = True
            raise TransportClosedError(f"发送失败: {e}") from e

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError) as e:
            logger.debug("关闭 WebSocket 时出错: %s", e)
