"""Container Debug Online 入口模块"""

import logging
import socket
import sys

import click
import uvicorn

from .app import create_app
from .compose import load_compose_topology
from .config import (
    DEFAULT_HOST,
    DEFAULT_LOG_TAIL,
    DEFAULT_MONITOR_INTERVAL,
    DEFAULT_PORT,
    DEFAULT_PROBE_TIMEOUT,
    DEFAULT_SHELL,
    AppSettings,
)
from .errors import ComposeConfigError

logger = logging.getLogger(__name__)


def setup_logging(log_level: str = "INFO") -> None:
    """配置日志"""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # 降低第三方库日志级别
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def is_port_in_use(port: int, host: str = DEFAULT_HOST) -> bool:
    """检查端口是否被占用"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            return False
        except OSError:
            return True


@click.command()
@click.option(
    "--compose-path",
    envvar="COMPOSE_PATH",
    default="",
    help="compose 文件或所在目录；不指定则监控本机全部容器",
)
@click.option(
    "--interval",
    "monitor_interval",
    envvar="MONITOR_INTERVAL",
    type=float,
    default=DEFAULT_MONITOR_INTERVAL,
    show_default=True,
    help="状态检查间隔（秒）",
)
@click.option("--host", envvar="HOST", default=DEFAULT_HOST, show_default=True, help="监听地址")
@click.option("--port", envvar="PORT", type=int, default=DEFAULT_PORT, show_default=True, help="监听端口")
@click.option("--password", envvar="PASSWORD", default="", help="Basic 认证密码（用户名 admin）")
@click.option("--shell", envvar="SHELL_CMD", default=DEFAULT_SHELL, show_default=True, help="终端使用的 shell")
@click.option(
    "--probe-timeout",
    envvar="PROBE_TIMEOUT",
    type=float,
    default=DEFAULT_PROBE_TIMEOUT,
    show_default=True,
    help="端口探测超时（秒）",
)
@click.option("--log-tail", envvar="LOG_TAIL", type=int, default=DEFAULT_LOG_TAIL, show_default=True, help="实时日志先输出的行数")
@click.option("--log-level", envvar="LOG_LEVEL", default="INFO", show_default=True, help="日志级别")
def main(
    compose_path: str,
    monitor_interval: float,
    host: str,
    port: int,
    password: str,
    shell: str,
    probe_timeout: float,
    log_tail: int,
    log_level: str,
) -> None:
    """主入口函数"""
    setup_logging(log_level)

    settings = AppSettings(
        compose_path=compose_path,
        monitor_interval=monitor_interval,
        host=host,
        port=port,
        password=password,
        shell=shell,
        probe_timeout=probe_timeout,
        log_tail=log_tail,
    )

    # compose 配置错误在启动时直接退出
    try:
        topology = load_compose_topology(settings.compose_path)
    except ComposeConfigError as e:
        logger.error("加载 compose 配置失败: %s", e)
        sys.exit(1)

    if is_port_in_use(port, host):
        logger.error("端口 %d 已被占用，请使用 --port 指定其它端口", port)
        sys.exit(1)

    logger.info("=" * 50)
    logger.info("Container Debug Online 启动")
    logger.info("=" * 50)
    logger.info("监听地址: http://%s:%d", host, port)
    logger.info("compose 文件: %s", topology.path or "<未指定，监控全部容器>")
    logger.info("检查间隔: %.1f 秒", monitor_interval)
    logger.info("认证: %s", "已启用" if password else "未启用")
    logger.info("=" * 50)

    app = create_app(settings, topology=topology)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    main()
