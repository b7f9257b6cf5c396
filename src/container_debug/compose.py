"""compose 文件解析与容器归属判断

加载 docker-compose 文件得到服务拓扑，并根据容器上的 compose 标签
判断容器是否属于被监控的项目、对应哪个服务。
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from .errors import ComposeConfigError
from .models import ComposeTopology, ServiceSpec

logger = logging.getLogger(__name__)

# docker compose 写入容器的标签
LABEL_WORKING_DIR = "com.docker.compose.project.working_dir"
LABEL_CONFIG_FILES = "com.docker.compose.project.config_files"
LABEL_SERVICE = "com.docker.compose.service"

# 传入目录时按 docker compose 的默认顺序查找
DEFAULT_COMPOSE_FILES = (
    "compose.yaml",
    "compose.yml",
    "docker-compose.yml",
    "docker-compose.yaml",
)


def resolve_compose_file(path: str) -> Path:
    """把文件或目录参数解析为 compose 文件路径

    Raises:
        ComposeConfigError: 找不到 compose 文件
    """
    candidate = Path(path)
    if candidate.is_dir():
        for name in DEFAULT_COMPOSE_FILES:
            if (candidate / name).is_file():
                return candidate / name
        raise ComposeConfigError(f"目录中没有 compose 文件: {path}")
    if not candidate.is_file():
        raise ComposeConfigError(f"compose 文件不存在: {path}")
    return candidate


def load_compose_topology(path: str) -> ComposeTopology:
    """加载 compose 文件

    Args:
        path: compose 文件路径；空串表示不限定项目，监控全部容器

    Returns:
        ComposeTopology: 服务拓扑

    Raises:
        ComposeConfigError: 文件不存在、YAML 错误或没有声明服务
    """
    if not path:
        return ComposeTopology(path="")

    compose_file = resolve_compose_file(path)
    path = str(compose_file)

    try:
        with open(compose_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ComposeConfigError(f"compose 文件解析失败: {e}") from e
    except OSError as e:
        raise ComposeConfigError(f"读取 compose 文件失败: {e}") from e

    if not isinstance(data, dict):
        raise ComposeConfigError("compose 文件格式错误: 顶层必须是映射")

    services = data.get('services')
    if not isinstance(services, dict) or not services:
        raise ComposeConfigError("compose 文件中没有定义 services")

    specs: dict[str, ServiceSpec] = {}
    for name, config in services.items():
        config = config or {}
        if not isinstance(config, dict):
            raise ComposeConfigError(f"服务 '{name}' 的配置格式错误")
        if not config.get('image') and not config.get('build'):
            raise ComposeConfigError(f"服务 '{name}' 没有指定 image 或 build")

        ports = _collect_ports(config.get('ports') or [], config.get('expose') or [])
        specs[str(name)] = ServiceSpec(
            name=str(name),
            image=str(config.get('image') or ''),
            ports=ports,
        )

    topology = ComposeTopology(path=_canonical(path), services=specs)
    logger.info("已加载 compose 文件 %s: %d 个服务", topology.path, len(specs))
    return topology


def _collect_ports(ports: Iterable[Any], expose: Iterable[Any]) -> tuple[str, ...]:
    """汇总 ports 和 expose 中的容器侧 TCP 端口（保持声明顺序，去重）"""
    result: list[str] = []
    for entry in ports:
        for port in _parse_port_entry(entry):
            if port not in result:
                result.append(port)
    for entry in expose:
        for port in _parse_port_entry(str(entry)):
            if port not in result:
                result.append(port)
    return tuple(result)


def _parse_port_entry(entry: Any) -> list[str]:
    """解析单个端口声明，返回容器侧端口列表

    支持格式：
    - 80
    - 8080:80
    - 127.0.0.1:8080:80
    - 8080:80/tcp（udp 忽略）
    - 9090-9091:8080-8081
    - {target: 80, published: 8080, protocol: tcp}
    """
    if isinstance(entry, dict):
        if str(entry.get('protocol', 'tcp')).lower() != 'tcp':
            return []
        entry = entry.get('target')
        if entry is None:
            return []

    mapping = str(entry).strip()
    if mapping.endswith('/udp') or mapping.endswith('/sctp'):
        return []
    # 移除协议后缀
    mapping = re.sub(r'/tcp$', '', mapping)

    container_part = mapping.rsplit(':', 1)[-1]
    try:
        if '-' in container_part:
            start, end = (int(p) for p in container_part.split('-', 1))
            return [str(p) for p in range(start, end + 1)]
        return [str(int(container_part))]
    except ValueError:
        logger.warning("无法解析端口声明: %r", entry)
        return []


def _canonical(path: str) -> str:
    return os.path.normpath(os.path.abspath(path))


class ComposeMatcher:
    """判断容器是否属于被监控的 compose 项目"""

    def __init__(self, project_path: str, service_names: Iterable[str] = ()):
        # 项目路径只解析一次
        self.project_path = _canonical(project_path) if project_path else ""
        self.service_names = frozenset(service_names)

    @classmethod
    def for_topology(cls, topology: ComposeTopology) -> "ComposeMatcher":
        return cls(topology.path, topology.services.keys())

    @property
    def tracking_project(self) -> bool:
        return bool(self.project_path)

    def matches(self, labels: Mapping[str, str]) -> tuple[bool, str]:
        """返回 (是否属于项目, 服务名)"""
        service = labels.get(LABEL_SERVICE) or ""

        # 未指定 compose 文件时监控全部容器
        if not self.project_path:
            return True, service

        config_files = labels.get(LABEL_CONFIG_FILES) or ""
        working_dir = labels.get(LABEL_WORKING_DIR) or ""
        if not config_files or not working_dir or not service:
            return False, ""

        if service not in self.service_names:
            return False, ""

        # 多个 -f 参数时标签值以逗号分隔
        for config_file in config_files.split(','):
            config_file = config_file.strip()
            if not config_file:
                continue
            if not os.path.isabs(config_file):
                config_file = os.path.join(working_dir, config_file)
            if _canonical(config_file) == self.project_path:
                return True, service

        return False, ""
