"""测试用的假运行时、exec 通道和消息通道"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable

import pytest

from container_debug.compose import LABEL_CONFIG_FILES, LABEL_SERVICE, LABEL_WORKING_DIR
from container_debug.errors import ContainerNotFoundError, TransportClosedError
from container_debug.models import (
    ComposeTopology,
    ContainerDetails,
    ContainerSummary,
    ServiceSpec,
)

PROJECT_DIR = "/srv/app"
PROJECT_FILE = "/srv/app/docker-compose.yml"

DISCONNECT = object()


def compose_labels(service: str, working_dir: str = PROJECT_DIR, config_files: str = "docker-compose.yml") -> dict[str, str]:
    return {
        LABEL_WORKING_DIR: working_dir,
        LABEL_CONFIG_FILES: config_files,
        LABEL_SERVICE: service,
    }


def make_summary(container_id: str, name: str, service: str = "", state: str = "running", labels: dict | None = None) -> ContainerSummary:
    if labels is None:
        labels = compose_labels(service) if service else {}
    return ContainerSummary(id=container_id, name=name, state=state, labels=labels)


def make_details(
    container_id: str,
    ports: Iterable[str] = (),
    ip: str = "172.17.0.2",
    tty: bool = False,
    labels: dict | None = None,
    exit_code: int = 0,
) -> ContainerDetails:
    return ContainerDetails(
        id=container_id,
        name=container_id,
        state="running",
        labels=labels or {},
        tty=tty,
        exposed_ports=tuple(ports),
        ip_address=ip,
        exit_code=exit_code,
    )


def make_topology(*services: ServiceSpec | str, path: str = PROJECT_FILE) -> ComposeTopology:
    specs = {}
    for service in services:
        if isinstance(service, str):
            service = ServiceSpec(name=service, image=f"{service}:latest")
        specs[service.name] = service
    return ComposeTopology(path=path, services=specs)


def make_probe(reachable: Iterable[tuple[str, str]] | Iterable[str]):
    """返回假的端口探测函数，reachable 为端口或 (地址, 端口)"""
    reachable = set(reachable)
    calls = []

    async def probe(host: str, port: str, timeout: float) -> bool:
        calls.append((host, port))
        return port in reachable or (host, port) in reachable

    probe.calls = calls
    return probe


class FakeChannel:
    """内存中的 exec 通道；read 返回 b'' 表示 EOF"""

    def __init__(self, output: Iterable[bytes] = (), echo: bool = False, eof_on: bytes | None = None):
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self.echo = echo
        self.eof_on = eof_on
        for chunk in output:
            self._queue.put_nowait(chunk)
        self.written: list[bytes] = []
        self.closed = False

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    async def read(self, n: int = 4096) -> bytes:
        return await self._queue.get()

    async def write(self, data: bytes) -> None:
        if self.closed:
            raise TransportClosedError("closed")
        self.written.append(data)
        if self.echo:
            self._queue.put_nowait(data)
        if data == self.eof_on:
            self._queue.put_nowait(b"")

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(b"")


class FakeTransport:
    """内存中的消息通道；放入 DISCONNECT 模拟客户端断开"""

    def __init__(self, incoming: Iterable = ()):
        self._queue: asyncio.Queue = asyncio.Queue()
        for message in incoming:
            self._queue.put_nowait(message)
        self.sent: list[tuple[str, bytes | str]] = []
        self.closed = False
        self.disconnected = False

    def disconnect(self) -> None:
        self._queue.put_nowait(DISCONNECT)

    async def receive(self) -> bytes | str:
        message = await self._queue.get()
        if message is DISCONNECT:
            self.disconnected = True
            raise TransportClosedError("client gone")
        return message

    async def send_bytes(self, data: bytes) -> None:
        if self.disconnected:
            raise TransportClosedError("client gone")
        self.sent.append(("bytes", data))

    async def send_text(self, data: str) -> None:
        if self.disconnected:
            raise TransportClosedError("client gone")
        self.sent.append(("text", data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True

    @property
    def texts(self) -> list[str]:
        return [data for kind, data in self.sent if kind == "text"]

    @property
    def binaries(self) -> list[bytes]:
        return [data for kind, data in self.sent if kind == "bytes"]


class FakeRuntime:
    """RuntimeClient 的内存实现"""

    def __init__(self, containers: Iterable[ContainerSummary] = (), details: dict | None = None):
        self.containers = list(containers)
        self.details = dict(details or {})
        self.logs: dict[str, list[bytes]] = {}
        self.list_error: Exception | None = None
        self.exec_error: Exception | None = None
        self.channel = FakeChannel()
        self.exec_calls: list[tuple[str, list[str], dict[str, str]]] = []
        self.resizes: list[tuple[str, int, int]] = []
        self.log_requests: list[dict] = []
        self.log_errors: dict[str, Exception] = {}

    async def list_containers(self) -> list[ContainerSummary]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.containers)

    async def inspect_container(self, container_id: str) -> ContainerDetails:
        details = self.details.get(container_id)
        if details is None:
            raise ContainerNotFoundError(container_id)
        if isinstance(details, Exception):
            raise details
        return details

    async def create_exec(self, container_id: str, cmd: list[str], env: dict[str, str]) -> str:
        self.exec_calls.append((container_id, cmd, env))
        if self.exec_error is not None:
            raise self.exec_error
        return "exec-1"

    async def attach_exec(self, exec_id: str) -> FakeChannel:
        return self.channel

    async def resize_exec(self, exec_id: str, rows: int, cols: int) -> None:
        self.resizes.append((exec_id, rows, cols))

    @asynccontextmanager
    async def stream_logs(self, container_id: str, follow: bool, tail: int | None = None, timestamps: bool = True):
        self.log_requests.append({
            'container_id': container_id,
            'follow': follow,
            'tail': tail,
            'timestamps': timestamps,
        })
        if container_id in self.log_errors:
            raise self.log_errors[container_id]

        async def chunks() -> AsyncIterator[bytes]:
            for chunk in self.logs.get(container_id, []):
                yield chunk

        yield chunks()


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()
