"""数据模型定义"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from types import MappingProxyType
from typing import Mapping


def _freeze(obj: object, name: str) -> None:
    """把 dict 字段替换为只读视图（frozen dataclass 内部使用）"""
    object.__setattr__(obj, name, MappingProxyType(dict(getattr(obj, name))))


# ==================== compose 拓扑 ====================

@dataclass(frozen=True)
class ServiceSpec:
    """compose 文件中声明的服务"""
    name: str                                        # 服务名（唯一）
    image: str = ""                                  # 声明的镜像
    ports: tuple[str, ...] = ()                      # 容器侧端口，如 ("80", "443")


@dataclass(frozen=True)
class ComposeTopology:
    """已加载的 compose 项目"""
    path: str                                        # compose 文件绝对路径，空串表示监控全部容器
    services: Mapping[str, ServiceSpec] = field(default_factory=dict)

    def __post_init__(self):
        _freeze(self, "services")

    @property
    def sorted_services(self) -> list[str]:
        return sorted(self.services)

    @property
    def tracking_project(self) -> bool:
        return bool(self.path)


# ==================== 运行时返回的容器信息 ====================

@dataclass(frozen=True)
class HealthDetail:
    """容器自带 HEALTHCHECK 的结果"""
    status: str                                      # starting, healthy, unhealthy
    failing_streak: int = 0
    last_output: str = ""


@dataclass(frozen=True)
class ContainerSummary:
    """容器列表中的一项"""
    id: str
    name: str
    state: str                                       # created, running, exited ...
    labels: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        _freeze(self, "labels")


@dataclass(frozen=True)
class ContainerDetails:
    """inspect 结果中我们关心的部分"""
    id: str
    name: str
    state: str
    labels: Mapping[str, str] = field(default_factory=dict)
    tty: bool = False
    exposed_ports: tuple[str, ...] = ()              # 仅 TCP 端口号
    ip_address: str = ""                             # 默认 bridge 地址
    network_addresses: tuple[str, ...] = ()          # 其它网络的地址，按返回顺序
    exit_code: int = 0
    health: HealthDetail | None = None

    def __post_init__(self):
        _freeze(self, "labels")

    @property
    def address(self) -> str:
        """探测用地址：优先默认 bridge，其次第一个非空网络地址"""
        if self.ip_address:
            return self.ip_address
        for ip in self.network_addresses:
            if ip:
                return ip
        return ""


# ==================== 监控快照 ====================

@dataclass(frozen=True)
class ContainerRecord:
    """单个容器在某一轮检查中的状态"""
    id: str
    name: str
    state: str
    labels: Mapping[str, str]
    service: str                                     # 未匹配时为空串
    ports_healthy: Mapping[str, bool]
    last_check: datetime
    exit_code: int = 0
    tty: bool = False
    address: str = ""
    health: HealthDetail | None = None

    def __post_init__(self):
        _freeze(self, "labels")
        _freeze(self, "ports_healthy")

    @property
    def short_id(self) -> str:
        return self.id[:12]


@dataclass(frozen=True)
class ServiceRecord:
    """服务的聚合状态"""
    name: str
    container_id: str                                # 当前承载该服务的容器，无则为空串
    port_status: Mapping[str, bool]
    healthy: bool
    last_check: datetime

    def __post_init__(self):
        _freeze(self, "port_status")


@dataclass(frozen=True)
class MonitorSnapshot:
    """一轮刷新的完整结果，发布后不再修改"""
    containers: Mapping[str, ContainerRecord] = field(default_factory=dict)
    services: Mapping[str, ServiceRecord] = field(default_factory=dict)
    last_update: datetime | None = None

    def __post_init__(self):
        _freeze(self, "containers")
        _freeze(self, "services")


# ==================== 日志帧 ====================

class LogStream(IntEnum):
    """多路复用日志头中的流标识"""
    STDIN = 0
    STDOUT = 1
    STDERR = 2


@dataclass(frozen=True)
class LogFrame:
    """一帧日志"""
    stream: LogStream
    payload: bytes

    @property
    def length(self) -> int:
        return len(self.payload)
