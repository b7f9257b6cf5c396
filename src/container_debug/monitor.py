"""容器状态监控模块

定时列出容器、匹配 compose 服务、探测端口，并把结果作为一个整体快照发布。
"""

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from .compose import ComposeMatcher
from .config import DEFAULT_MONITOR_INTERVAL, DEFAULT_PROBE_TIMEOUT
from .errors import ContainerDebugError, ContainerNotFoundError
from .models import (
    ComposeTopology,
    ContainerDetails,
    ContainerRecord,
    ContainerSummary,
    MonitorSnapshot,
    ServiceRecord,
)
from .runtime import RuntimeClient

logger = logging.getLogger(__name__)

# 按 ID 前缀查找容器时要求的最短长度
MIN_ID_PREFIX = 4

PortProbe = Callable[[str, str, float], Awaitable[bool]]


async def probe_tcp_port(host: str, port: str, timeout: float) -> bool:
    """尝试建立 TCP 连接，成功即视为端口可达"""
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, int(port)),
            timeout=timeout,
        )
    except (OSError, asyncio.TimeoutError, ValueError):
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class StatusMonitor:
    """容器状态监控器

    refresh() 在锁外完成全部计算，只在发布快照时短暂持锁；
    snapshot() 永远返回某一轮完整的结果。
    """

    def __init__(
        self,
        runtime: RuntimeClient,
        topology: ComposeTopology,
        interval: float = DEFAULT_MONITOR_INTERVAL,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        probe: PortProbe = probe_tcp_port,
    ):
        self.runtime = runtime
        self.topology = topology
        self.matcher = ComposeMatcher.for_topology(topology)
        self.interval = interval
        self.probe_timeout = probe_timeout
        self._probe = probe

        self._lock = threading.Lock()
        self._snapshot = MonitorSnapshot()
        self._task: asyncio.Task | None = None

    # ==================== 快照 ====================

    def snapshot(self) -> MonitorSnapshot:
        """获取当前发布的快照（不等待正在进行的刷新）"""
        with self._lock:
            return self._snapshot

    def _publish(
        self,
        containers: dict[str, ContainerRecord],
        services: dict[str, ServiceRecord],
        checked_at: datetime,
    ) -> MonitorSnapshot:
        with self._lock:
            previous = self._snapshot.last_update
            # 时钟回拨时沿用上一轮时间，保证 last_update 单调不减
            if previous is not None and checked_at < previous:
                checked_at = previous
            self._snapshot = MonitorSnapshot(
                containers=containers,
                services=services,
                last_update=checked_at,
            )
            return self._snapshot

    # ==================== 刷新 ====================

    async def refresh(self) -> MonitorSnapshot:
        """执行一轮检查并发布快照

        Raises:
            RuntimeClientError: 无法获取容器列表（保留上一轮快照）
        """
        summaries = await self.runtime.list_containers()

        members: list[tuple[ContainerSummary, str]] = []
        for summary in summaries:
            is_member, service = self.matcher.matches(summary.labels)
            if not is_member:
                continue
            members.append((summary, service))

        records = await asyncio.gather(
            *(self._check_container(summary, service) for summary, service in members)
        )

        containers: dict[str, ContainerRecord] = {}
        service_containers: dict[str, str] = {}
        service_ports: dict[str, dict[str, bool]] = {}

        # 按枚举顺序合并，同一服务有多个容器时后出现的覆盖 container_id
        for record in records:
            if record is None:
                continue
            containers[record.id] = record
            if not record.service:
                continue

            service_containers[record.service] = record.id
            ports = service_ports.setdefault(record.service, {})
            for port, healthy in record.ports_healthy.items():
                ports[port] = ports.get(port, True) and healthy

        now = datetime.now(timezone.utc)
        services = {
            name: ServiceRecord(
                name=name,
                container_id=container_id,
                port_status=service_ports.get(name, {}),
                healthy=bool(container_id) and all(service_ports.get(name, {}).values()),
                last_check=now,
            )
            for name, container_id in service_containers.items()
        }

        snapshot = self._publish(containers, services, now)
        logger.debug(
            "状态已更新: %d 个容器, %d 个服务 (compose: %s)",
            len(containers),
            len(services),
            self.topology.path or "<all>",
        )
        return snapshot

    async def _check_container(
        self,
        summary: ContainerSummary,
        service: str,
    ) -> ContainerRecord | None:
        """检查单个容器，失败时只跳过该容器"""
        try:
            details = await self.runtime.inspect_container(summary.id)
        except ContainerDebugError as e:
            logger.warning("检查容器 %s 失败，本轮跳过: %s", summary.id[:12], e)
            return None
        except Exception:
            logger.exception("检查容器 %s 异常，本轮跳过", summary.id[:12])
            return None

        ports_healthy = await self._probe_ports(details, service)

        return ContainerRecord(
            id=summary.id,
            name=summary.name or details.name,
            state=summary.state or details.state,
            labels=summary.labels,
            service=service,
            ports_healthy=ports_healthy,
            last_check=datetime.now(timezone.utc),
            exit_code=details.exit_code,
            tty=details.tty,
            address=details.address,
            health=details.health,
        )

    def _ports_to_probe(self, details: ContainerDetails, service: str) -> list[str]:
        """镜像暴露的端口加上 compose 中为该服务声明的容器端口"""
        ports = list(details.exposed_ports)
        spec = self.topology.services.get(service)
        if spec:
            for port in spec.ports:
                if port not in ports:
                    ports.append(port)
        return ports

    async def _probe_ports(self, details: ContainerDetails, service: str) -> dict[str, bool]:
        ports = self._ports_to_probe(details, service)
        address = details.address
        if not address:
            return {port: False for port in ports}

        results = await asyncio.gather(
            *(self._probe(address, port, self.probe_timeout) for port in ports)
        )
        return dict(zip(ports, results))

    # ==================== 定时任务 ====================

    async def run(self) -> None:
        """定时刷新循环，单轮失败只记录日志"""
        while True:
            try:
                await self.refresh()
            except asyncio.CancelledError:
                break
            except ContainerDebugError as e:
                logger.error("刷新容器状态失败: %s", e)
            except Exception:
                logger.exception("刷新容器状态异常")

            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break

    def start(self) -> None:
        """启动后台刷新任务"""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
            logger.info("状态监控已启动，间隔 %.1f 秒", self.interval)

    async def stop(self) -> None:
        """停止后台刷新任务"""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("状态监控已停止")

    # ==================== 查询 ====================

    def find_container(self, ref: str) -> ContainerRecord:
        """按完整 ID、ID 前缀、容器名或服务名查找被监控的容器

        Raises:
            ContainerNotFoundError: 当前快照中没有匹配的容器
        """
        snapshot = self.snapshot()
        if not ref:
            raise ContainerNotFoundError(ref)

        record = snapshot.containers.get(ref)
        if record:
            return record

        service = snapshot.services.get(ref)
        if service and service.container_id in snapshot.containers:
            return snapshot.containers[service.container_id]

        for record in snapshot.containers.values():
            if record.name == ref:
                return record

        if len(ref) >= MIN_ID_PREFIX:
            matches = [r for r in snapshot.containers.values() if r.id.startswith(ref)]
            if len(matches) == 1:
                return matches[0]

        raise ContainerNotFoundError(ref)


# ==================== 对外视图 ====================

def _format_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else ""


def _health_dict(record: ContainerRecord) -> dict[str, Any] | None:
    if record.health is None:
        return None
    return {
        'status': record.health.status,
        'failing_streak': record.health.failing_streak,
        'last_output': record.health.last_output,
    }


def _container_row(record: ContainerRecord, service: ServiceRecord | None) -> dict[str, Any]:
    healthy = all(record.ports_healthy.values())
    if service is not None:
        healthy = healthy and service.healthy
    return {
        'id': record.id,
        'name': record.name,
        'status': record.state,
        'service': record.service,
        'ports_health': dict(record.ports_healthy),
        'healthy': healthy,
        'labels': dict(record.labels),
        'exit_code': record.exit_code,
        'health_status': _health_dict(record),
    }


def _placeholder_row(service: str, status: str) -> dict[str, Any]:
    return {
        'id': '',
        'name': f"{service} ({status})",
        'status': status,
        'service': service,
        'ports_health': {},
        'healthy': False,
        'labels': {},
        'exit_code': 0,
        'health_status': None,
    }


def build_status_rows(snapshot: MonitorSnapshot, topology: ComposeTopology) -> list[dict[str, Any]]:
    """容器列表：每个声明的服务一行，按服务名排序

    未指定 compose 文件时列出全部容器，按容器名排序。
    """
    if not topology.tracking_project:
        records = sorted(snapshot.containers.values(), key=lambda r: (r.name, r.id))
        return [_container_row(r, snapshot.services.get(r.service)) for r in records]

    rows = []
    for name in topology.sorted_services:
        service = snapshot.services.get(name)
        if service is None:
            rows.append(_placeholder_row(name, "not started"))
            continue
        record = snapshot.containers.get(service.container_id)
        if record is None:
            rows.append(_placeholder_row(name, "not running"))
            continue
        rows.append(_container_row(record, service))
    return rows


def build_health_report(snapshot: MonitorSnapshot, topology: ComposeTopology) -> dict[str, Any]:
    """整体健康状态：code 0 表示健康，1 表示异常"""
    report: dict[str, Any] = {
        'code': 0,
        'status': 'healthy',
        'message': '',
        'last_check': _format_time(snapshot.last_update),
        'services': {},
    }

    if not topology.tracking_project:
        report['message'] = "未指定 compose 文件，不检查服务健康状态"
        return report

    unhealthy = []
    for name in topology.sorted_services:
        service = snapshot.services.get(name)
        if service is None:
            report['services'][name] = {
                'status': 'not started',
                'healthy': False,
                'ports_health': {},
                'last_check': '',
            }
            unhealthy.append(name)
            continue

        record = snapshot.containers.get(service.container_id)
        report['services'][name] = {
            'status': record.state if record else 'not running',
            'healthy': service.healthy,
            'ports_health': dict(record.ports_healthy) if record else {},
            'last_check': _format_time(service.last_check),
        }
        if not service.healthy:
            unhealthy.append(name)

    if unhealthy:
        report['code'] = 1
        report['status'] = 'unhealthy'
        report['message'] = f"以下服务异常: {', '.join(unhealthy)}"
    else:
        report['message'] = f"全部 {len(topology.services)} 个服务运行正常"
    return report
