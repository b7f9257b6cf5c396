"""交互式终端会话

每个 WebSocket 连接对应一个 TerminalSession：在容器内创建 exec，
然后用两个并发任务在浏览器和 exec 套接字之间转发字节。

    CREATED -> ATTACHED -> STREAMING -> CLOSED
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, StrictInt, ValidationError

from .config import DEFAULT_SHELL
from .errors import ContainerDebugError, SessionStateError, TransportClosedError
from .runtime import READ_CHUNK_SIZE, ExecChannel, RuntimeClient
from .transport import MessageTransport

logger = logging.getLogger(__name__)

TERMINAL_ENV = {"TERM": "xterm-256color"}


class SessionState(str, Enum):
    CREATED = "created"
    ATTACHED = "attached"
    STREAMING = "streaming"
    CLOSED = "closed"


class ResizeMessage(BaseModel):
    """浏览器发送的终端尺寸变更"""
    type: Literal["resize"]
    rows: StrictInt = Field(ge=0)
    cols: StrictInt = Field(ge=0)


def sniff_control(message: bytes | str) -> dict[str, Any] | None:
    """识别控制消息

    只有合法 JSON 对象且 type 为 resize 时才算控制消息，其余内容
    （包括看起来像 JSON 的残缺数据）一律按终端输入处理。
    """
    # TODO: 改为独立的控制帧通道，不再依赖内容嗅探
    text = message.lstrip()
    if text[:1] not in ("{", b"{"):
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("type") != "resize":
        return None
    return data


class TerminalSession:
    """浏览器与容器 exec 之间的终端会话"""

    def __init__(
        self,
        runtime: RuntimeClient,
        container_id: str,
        transport: MessageTransport,
        shell: str = DEFAULT_SHELL,
    ):
        self.runtime = runtime
        self.container_id = container_id
        self.transport = transport
        self.shell = shell

        self.state = SessionState.CREATED
        self.exec_id = ""
        self._channel: ExecChannel | None = None
        self._cancel = asyncio.Event()
        self._error: BaseException | None = None
        self._client_gone = False

    def _require(self, state: SessionState) -> None:
        if self.state != state:
            raise SessionStateError(f"会话状态为 {self.state.value}，需要 {state.value}")

    async def serve(self) -> None:
        """打开会话并一直转发到结束"""
        await self.open()
        await self.run()

    async def open(self) -> None:
        """创建 exec 并附加，得到容器终端的双向通道"""
        self._require(SessionState.CREATED)
        try:
            self.exec_id = await self.runtime.create_exec(
                self.container_id,
                cmd=[self.shell],
                env=dict(TERMINAL_ENV),
            )
            self._channel = await self.runtime.attach_exec(self.exec_id)
        except ContainerDebugError as e:
            logger.error("打开容器 %s 终端失败: %s", self.container_id[:12], e)
            self._error = e
            await self._shutdown()
            raise

        self.state = SessionState.ATTACHED
        logger.info("终端已连接: container=%s exec=%s", self.container_id[:12], self.exec_id[:12])

    async def run(self) -> None:
        """启动输入、输出两个任务，任一结束即关闭会话"""
        self._require(SessionState.ATTACHED)
        self.state = SessionState.STREAMING

        tasks = [
            asyncio.create_task(self._pump_input()),
            asyncio.create_task(self._pump_output()),
        ]
        for task in tasks:
            task.add_done_callback(self._on_pump_done)

        try:
            await self._cancel.wait()
        finally:
            for task in tasks:
                task.cancel()
            try:
                await asyncio.gather(*tasks, return_exceptions=True)
            finally:
                # 外部取消时清理也必须完成
                await asyncio.shield(self._shutdown())

    def close(self) -> None:
        """主动结束会话"""
        self._cancel.set()

    @property
    def error(self) -> BaseException | None:
        """导致会话结束的错误（正常结束为 None）"""
        return self._error

    def _on_pump_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and self._error is None:
            self._error = task.exception()
        self._cancel.set()

    # ==================== 转发任务 ====================

    async def _receive(self) -> bytes | str:
        try:
            return await self.transport.receive()
        except TransportClosedError:
            self._client_gone = True
            raise

    async def _send(self, data: bytes) -> None:
        try:
            await self.transport.send_bytes(data)
        except TransportClosedError:
            self._client_gone = True
            raise

    async def _pump_input(self) -> None:
        """浏览器 -> 容器"""
        while not self._cancel.is_set():
            message = await self._receive()

            control = sniff_control(message)
            if control is not None:
                await self._resize(control)
                continue

            data = message.encode('utf-8') if isinstance(message, str) else message
            if data:
                await self._channel.write(data)

    async def _resize(self, control: dict[str, Any]) -> None:
        try:
            resize = ResizeMessage.model_validate(control)
        except ValidationError as e:
            logger.warning("忽略非法的 resize 消息: %s", e.errors(include_url=False))
            return
        try:
            await self.runtime.resize_exec(self.exec_id, resize.rows, resize.cols)
        except ContainerDebugError as e:
            logger.warning("调整终端大小失败: %s", e)

    async def _pump_output(self) -> None:
        """容器 -> 浏览器"""
        while not self._cancel.is_set():
            data = await self._channel.read(READ_CHUNK_SIZE)
            if not data:
                logger.info("容器 %s 终端进程已退出", self.container_id[:12])
                return
            await self._send(data)

    # ==================== 清理 ====================

    async def _shutdown(self) -> None:
        if self.state == SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED

        error = self._error
        if error is not None and not self._client_gone:
            if isinstance(error, TransportClosedError):
                text = f"\r\n[连接已断开: {error}]\r\n"
            elif isinstance(error, ContainerDebugError):
                text = f"Error: {error}"
            else:
                logger.error("终端会话异常: %r", error)
                text = f"\r\n[会话异常: {error}]\r\n"
            try:
                await self.transport.send_text(text)
            except TransportClosedError:
                pass

        if self._channel is not None:
            await self._channel.close()
        await self.transport.close()
        logger.info("终端已关闭: container=%s", self.container_id[:12])
