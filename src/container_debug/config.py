"""配置管理模块"""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# 默认配置
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_MONITOR_INTERVAL = 5.0      # 秒
DEFAULT_PROBE_TIMEOUT = 2.0         # 端口探测超时（秒）
DEFAULT_SHELL = "/bin/sh"
DEFAULT_LOG_TAIL = 100


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("环境变量 %s=%r 不是有效数字，使用默认值 %s", name, value, default)
        return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("环境变量 %s=%r 不是有效整数，使用默认值 %s", name, value, default)
        return default


@dataclass
class AppSettings:
    """运行参数"""
    compose_path: str = ""                          # 空串表示监控本机全部容器
    monitor_interval: float = DEFAULT_MONITOR_INTERVAL
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    password: str = ""                              # 空串表示不开启认证
    shell: str = DEFAULT_SHELL
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    log_tail: int = DEFAULT_LOG_TAIL

    @classmethod
    def from_env(cls) -> "AppSettings":
        """从环境变量读取配置"""
        return cls(
            compose_path=os.getenv("COMPOSE_PATH", ""),
            monitor_interval=_env_float("MONITOR_INTERVAL", DEFAULT_MONITOR_INTERVAL),
            host=os.getenv("HOST", DEFAULT_HOST),
            port=_env_int("PORT", DEFAULT_PORT),
            password=os.getenv("PASSWORD", ""),
            shell=os.getenv("SHELL_CMD", DEFAULT_SHELL),
            probe_timeout=_env_float("PROBE_TIMEOUT", DEFAULT_PROBE_TIMEOUT),
            log_tail=_env_int("LOG_TAIL", DEFAULT_LOG_TAIL),
        )
