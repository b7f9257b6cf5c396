"""容器日志流解码与转发

非 TTY 容器的日志由 Docker 把 stdout/stderr 复用到一个字节流中，
每帧格式为:

    [1 字节流标识][3 字节保留, 全 0][4 字节大端长度][payload]

TTY 容器的日志则是普通文本，不分帧。
"""

import asyncio
import logging
import struct
from contextlib import AsyncExitStack
from typing import AsyncIterator, Iterable, Iterator

from .config import DEFAULT_LOG_TAIL
from .errors import ContainerDebugError, LogDecodeError, TransportClosedError
from .models import ContainerDetails, LogFrame, LogStream
from .runtime import RuntimeClient
from .transport import MessageTransport

logger = logging.getLogger(__name__)

HEADER = struct.Struct(">BxxxL")
HEADER_SIZE = HEADER.size  # 8


def encode_frame(frame: LogFrame) -> bytes:
    """按 Docker 多路复用格式编码一帧"""
    return HEADER.pack(int(frame.stream), len(frame.payload)) + frame.payload


class LogFrameDecoder:
    """增量解码器：可以按任意大小分块喂入数据"""

    def __init__(self):
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """尚未组成完整帧的字节数"""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[LogFrame]:
        """喂入一块数据，返回其中完整的帧"""
        self._buffer.extend(data)
        frames = []
        while len(self._buffer) >= HEADER_SIZE:
            stream_id, length = HEADER.unpack_from(self._buffer)
            end = HEADER_SIZE + length
            if len(self._buffer) < end:
                break
            payload = bytes(self._buffer[HEADER_SIZE:end])
            del self._buffer[:end]

            try:
                stream = LogStream(stream_id)
            except ValueError:
                logger.debug("跳过未知流标识 %d 的日志帧 (%d 字节)", stream_id, length)
                continue
            frames.append(LogFrame(stream=stream, payload=payload))
        return frames

    def finish(self) -> None:
        """流结束时调用；停在帧中间则报错"""
        if not self._buffer:
            return
        if len(self._buffer) < HEADER_SIZE:
            raise LogDecodeError(f"日志流在帧头中间结束 ({len(self._buffer)}/{HEADER_SIZE} 字节)")
        _, length = HEADER.unpack_from(self._buffer)
        raise LogDecodeError(
            f"日志流在 payload 中间结束 ({len(self._buffer) - HEADER_SIZE}/{length} 字节)"
        )


async def decode_frames(chunks: AsyncIterator[bytes]) -> AsyncIterator[LogFrame]:
    """把原始字节块解码为帧序列（惰性，不可重复迭代）

    Raises:
        LogDecodeError: 帧格式错误或流在帧中间结束
    """
    decoder = LogFrameDecoder()
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            yield frame
    decoder.finish()


def iter_frames(data: bytes | Iterable[bytes]) -> Iterator[LogFrame]:
    """同步版本，用于已完整读入内存的数据"""
    decoder = LogFrameDecoder()
    chunks = [data] if isinstance(data, (bytes, bytearray)) else data
    for chunk in chunks:
        yield from decoder.feed(chunk)
    decoder.finish()


async def iter_lines(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """按行切分字节流，保留换行符；结尾不完整的行也会输出"""
    buffer = bytearray()
    async for chunk in chunks:
        buffer.extend(chunk)
        while True:
            index = buffer.find(b"\n")
            if index < 0:
                break
            yield bytes(buffer[:index + 1])
            del buffer[:index + 1]
    if buffer:
        yield bytes(buffer)


class LogRelay:
    """把单个容器的日志转发给一个客户端"""

    def __init__(
        self,
        runtime: RuntimeClient,
        container_id: str,
        tail: int = DEFAULT_LOG_TAIL,
        timestamps: bool = True,
    ):
        self.runtime = runtime
        self.container_id = container_id
        self.tail = tail
        self.timestamps = timestamps
        self.details: ContainerDetails | None = None

    async def inspect(self) -> ContainerDetails:
        """获取容器信息（主要是否启用 TTY），结果缓存"""
        if self.details is None:
            self.details = await self.runtime.inspect_container(self.container_id)
        return self.details

    # ==================== 实时跟随 ====================

    async def follow(self, transport: MessageTransport) -> None:
        """持续转发日志，直到客户端断开或日志流结束"""
        details = await self.inspect()

        pump = asyncio.create_task(self._pump(transport, details.tty))
        watcher = asyncio.create_task(self._watch_disconnect(transport))

        try:
            done, pending = await asyncio.wait(
                {pump, watcher},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (pump, watcher):
                if not task.done():
                    task.cancel()
            await asyncio.gather(pump, watcher, return_exceptions=True)

        if pump in done and not pump.cancelled():
            error = pump.exception()
            if isinstance(error, TransportClosedError):
                logger.debug("日志客户端已断开: %s", self.container_id[:12])
            elif isinstance(error, ContainerDebugError):
                logger.error("转发容器 %s 日志失败: %s", self.container_id[:12], error)
                await _send_quietly(transport, f"Error: {error}")
            elif error is not None:
                raise error

        await transport.close()

    async def _pump(self, transport: MessageTransport, tty: bool) -> None:
        async with self.runtime.stream_logs(
            self.container_id,
            follow=True,
            tail=self.tail,
            timestamps=self.timestamps,
        ) as chunks:
            if tty:
                async for line in iter_lines(chunks):
                    await transport.send_text(line.decode('utf-8', errors='replace'))
            else:
                async for frame in decode_frames(chunks):
                    if not frame.payload:
                        continue
                    await transport.send_text(frame.payload.decode('utf-8', errors='replace'))
        logger.debug("容器 %s 日志流结束", self.container_id[:12])

    @staticmethod
    async def _watch_disconnect(transport: MessageTransport) -> None:
        # 客户端不发送内容，收到的消息直接丢弃
        try:
            while True:
                await transport.receive()
        except TransportClosedError:
            return

    # ==================== 一次性导出 ====================

    async def drain(self) -> AsyncIterator[bytes]:
        """打开全部历史日志（不跟随），返回逐块产出的迭代器

        日志流在返回前已经打开，容器不存在等错误在这里直接抛出。
        """
        details = await self.inspect()
        stack = AsyncExitStack()
        chunks = await stack.enter_async_context(
            self.runtime.stream_logs(
                self.container_id,
                follow=False,
                tail=None,
                timestamps=self.timestamps,
            )
        )
        return self._drain_chunks(chunks, details.tty, stack)

    async def _drain_chunks(
        self,
        chunks: AsyncIterator[bytes],
        tty: bool,
        stack: AsyncExitStack,
    ) -> AsyncIterator[bytes]:
        async with stack:
            if tty:
                async for chunk in chunks:
                    yield chunk
                return

            try:
                async for frame in decode_frames(chunks):
                    if frame.payload:
                        yield frame.payload
            except LogDecodeError as e:
                logger.error("解析容器 %s 日志失败: %s", self.container_id[:12], e)


async def _send_quietly(transport: MessageTransport, text: str) -> None:
    try:
        await transport.send_text(text)
    except TransportClosedError:
        pass
