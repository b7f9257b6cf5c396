"""容器运行时客户端

监控、终端和日志模块只依赖 RuntimeClient 这一窄接口；
DockerRuntimeClient 是基于 docker SDK 的实现。日志流需要原始的
多路复用字节（SDK 会自行拆帧），因此改用 httpx 直接访问 Docker API。
"""

import asyncio
import logging
import os
import socket
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Protocol
from urllib.parse import urlparse

import docker
import httpx
from docker.errors import DockerException, NotFound
from requests.exceptions import RequestException

from .errors import ContainerNotFoundError, RuntimeClientError, TransportClosedError
from .models import ContainerDetails, ContainerSummary, HealthDetail

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"
READ_CHUNK_SIZE = 4096

# docker SDK 不会包装 requests 的超时和连接错误
SDK_ERRORS = (DockerException, RequestException)


class ExecChannel(Protocol):
    """exec 会话的双向字节通道"""

    async def read(self, n: int = READ_CHUNK_SIZE) -> bytes:
        """读取输出，EOF 时返回 b''"""
        ...

    async def write(self, data: bytes) -> None:
        ...

    async def close(self) -> None:
        ...


class RuntimeClient(Protocol):
    """核心模块需要的运行时能力"""

    async def list_containers(self) -> list[ContainerSummary]:
        ...

    async def inspect_container(self, container_id: str) -> ContainerDetails:
        ...

    async def create_exec(
        self,
        container_id: str,
        cmd: list[str],
        env: dict[str, str],
    ) -> str:
        ...

    async def attach_exec(self, exec_id: str) -> ExecChannel:
        ...

    async def resize_exec(self, exec_id: str, rows: int, cols: int) -> None:
        ...

    def stream_logs(
        self,
        container_id: str,
        follow: bool,
        tail: int | None = None,
        timestamps: bool = True,
    ) -> Any:
        """返回异步上下文管理器，进入后得到原始字节块的异步迭代器"""
        ...


# ==================== 解析 Docker API 返回 ====================

def parse_summary(data: dict[str, Any]) -> ContainerSummary:
    """解析 /containers/json 的一项"""
    names = data.get('Names') or []
    name = names[0].lstrip('/') if names else data.get('Id', '')[:12]
    return ContainerSummary(
        id=data.get('Id', ''),
        name=name,
        state=data.get('State', '') or '',
        labels=data.get('Labels') or {},
    )


def parse_details(data: dict[str, Any]) -> ContainerDetails:
    """解析 /containers/{id}/json"""
    config = data.get('Config') or {}
    state = data.get('State') or {}
    network_settings = data.get('NetworkSettings') or {}

    exposed_ports = []
    for key in (config.get('ExposedPorts') or {}):
        port, _, proto = key.partition('/')
        if (proto or 'tcp') == 'tcp':
            exposed_ports.append(port)

    network_addresses = tuple(
        (network or {}).get('IPAddress', '') or ''
        for network in (network_settings.get('Networks') or {}).values()
    )

    health = None
    health_data = state.get('Health')
    if health_data:
        log = health_data.get('Log') or []
        health = HealthDetail(
            status=health_data.get('Status', ''),
            failing_streak=health_data.get('FailingStreak', 0) or 0,
            last_output=(log[-1].get('Output', '') if log else '').strip(),
        )

    return ContainerDetails(
        id=data.get('Id', ''),
        name=(data.get('Name') or '').lstrip('/'),
        state=state.get('Status', '') or '',
        labels=config.get('Labels') or {},
        tty=bool(config.get('Tty')),
        exposed_ports=tuple(sorted(exposed_ports, key=_port_sort_key)),
        ip_address=network_settings.get('IPAddress', '') or '',
        network_addresses=network_addresses,
        exit_code=state.get('ExitCode', 0) or 0,
        health=health,
    )


def _port_sort_key(port: str) -> tuple[int, str]:
    return (int(port), port) if port.isdigit() else (1 << 16, port)


# ==================== exec 通道 ====================

class SocketExecChannel:
    """把 exec_start(socket=True) 返回的套接字包装为 asyncio 流"""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        handle: Any = None,
    ):
        self._reader = reader
        self._writer = writer
        # 持有 SDK 返回的对象，避免被回收时关闭底层套接字
        self._handle = handle
        self._closed = False

    @classmethod
    async def from_socket(cls, handle: Any) -> "SocketExecChannel":
        raw = getattr(handle, '_sock', handle)
        if not isinstance(raw, socket.socket):
            raise RuntimeClientError(f"exec 返回了不支持的连接类型: {type(raw).__name__}")
        reader, writer = await asyncio.open_connection(sock=raw)
        return cls(reader, writer, handle)

    async def read(self, n: int = READ_CHUNK_SIZE) -> bytes:
        try:
            return await self._reader.read(n)
        except (ConnectionError, OSError) as e:
            raise TransportClosedError(f"容器连接已断开: {e}") from e

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise TransportClosedError("容器连接已关闭")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            raise TransportClosedError(f"写入容器失败: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug("关闭 exec 连接时出错: %s", e)


# ==================== Docker 实现 ====================

class DockerRuntimeClient:
    """基于 docker SDK 的运行时客户端"""

    def __init__(self, docker_host: str | None = None):
        self._base_url = docker_host
        self.docker_host = docker_host or os.getenv("DOCKER_HOST") or DEFAULT_DOCKER_HOST
        self._client: docker.DockerClient | None = None
        self._http: httpx.AsyncClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        """获取 Docker 客户端（延迟初始化）"""
        if self._client is None:
            try:
                if self._base_url:
                    self._client = docker.DockerClient(base_url=self._base_url)
                else:
                    self._client = docker.from_env()
            except SDK_ERRORS as e:
                raise RuntimeClientError(f"无法连接到 Docker: {e}") from e
        return self._client

    @property
    def http(self) -> httpx.AsyncClient:
        """访问 Docker API 的 HTTP 客户端（用于日志流）"""
        if self._http is None:
            parsed = urlparse(self.docker_host)
            if parsed.scheme == 'unix':
                transport = httpx.AsyncHTTPTransport(uds=parsed.path)
                base_url = "http://docker"
            elif parsed.scheme in ('tcp', 'http'):
                transport = httpx.AsyncHTTPTransport()
                base_url = f"http://{parsed.netloc}"
            elif parsed.scheme == 'https':
                transport = httpx.AsyncHTTPTransport()
                base_url = f"https://{parsed.netloc}"
            else:
                raise RuntimeClientError(f"不支持的 DOCKER_HOST: {self.docker_host}")
            self._http = httpx.AsyncClient(
                transport=transport,
                base_url=base_url,
                timeout=httpx.Timeout(10.0, read=None),
            )
        return self._http

    async def ping(self) -> None:
        """测试 Docker 连接"""
        try:
            await asyncio.to_thread(self.client.ping)
        except SDK_ERRORS as e:
            raise RuntimeClientError(f"无法连接到 Docker: {e}") from e

    async def list_containers(self) -> list[ContainerSummary]:
        try:
            items = await asyncio.to_thread(self.client.api.containers, all=True)
        except SDK_ERRORS as e:
            raise RuntimeClientError(f"获取容器列表失败: {e}") from e
        return [parse_summary(item) for item in items]

    async def inspect_container(self, container_id: str) -> ContainerDetails:
        try:
            data = await asyncio.to_thread(self.client.api.inspect_container, container_id)
        except NotFound as e:
            raise ContainerNotFoundError(container_id) from e
        except SDK_ERRORS as e:
            raise RuntimeClientError(f"检查容器 {container_id} 失败: {e}") from e
        return parse_details(data)

    async def create_exec(
        self,
        container_id: str,
        cmd: list[str],
        env: dict[str, str],
    ) -> str:
        try:
            result = await asyncio.to_thread(
                self.client.api.exec_create,
                container_id,
                cmd=cmd,
                stdin=True,
                stdout=True,
                stderr=True,
                tty=True,
                environment=env,
            )
        except NotFound as e:
            raise ContainerNotFoundError(container_id) from e
        except SDK_ERRORS as e:
            raise RuntimeClientError(f"创建 exec 失败: {e}") from e
        return result['Id']

    async def attach_exec(self, exec_id: str) -> ExecChannel:
        try:
            handle = await asyncio.to_thread(
                self.client.api.exec_start,
                exec_id,
                tty=True,
                socket=True,
                demux=False,
            )
        except SDK_ERRORS as e:
            raise RuntimeClientError(f"附加到 exec 失败: {e}") from e
        return await SocketExecChannel.from_socket(handle)

    async def resize_exec(self, exec_id: str, rows: int, cols: int) -> None:
        try:
            await asyncio.to_thread(
                self.client.api.exec_resize,
                exec_id,
                height=rows,
                width=cols,
            )
        except SDK_ERRORS as e:
            raise RuntimeClientError(f"调整终端大小失败: {e}") from e

    @asynccontextmanager
    async def stream_logs(
        self,
        container_id: str,
        follow: bool,
        tail: int | None = None,
        timestamps: bool = True,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """打开原始日志流

        Yields:
            原始字节块的异步迭代器（非 TTY 容器为多路复用格式）
        """
        params: dict[str, Any] = {
            'stdout': 1,
            'stderr': 1,
            'follow': int(follow),
            'timestamps': int(timestamps),
            'tail': str(tail) if tail is not None else 'all',
        }
        request = self.http.build_request("GET", f"/containers/{container_id}/logs", params=params)
        try:
            response = await self.http.send(request, stream=True)
        except httpx.HTTPError as e:
            raise RuntimeClientError(f"获取日志失败: {e}") from e

        try:
            if response.status_code == 404:
                raise ContainerNotFoundError(container_id)
            if response.status_code >= 400:
                body = await response.aread()
                raise RuntimeClientError(
                    f"获取日志失败: HTTP {response.status_code} {body.decode('utf-8', 'replace')}"
                )
            yield _raw_chunks(response)
        finally:
            await response.aclose()

    async def close(self) -> None:
        """关闭客户端"""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
        if self._client is not None:
            self._client.close()
            self._client = None


async def _raw_chunks(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        raise RuntimeClientError(f"日志流中断: {e}") from e
