"""FastAPI 应用主模块"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Response, WebSocket
from fastapi.responses import RedirectResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from .auth import BasicAuthMiddleware
from .compose import LABEL_SERVICE, load_compose_topology
from .config import AppSettings
from .errors import ContainerDebugError, ContainerNotFoundError
from .log_frames import LogRelay
from .models import ComposeTopology
from .monitor import StatusMonitor, build_health_report, build_status_rows
from .runtime import DockerRuntimeClient, RuntimeClient
from .terminal import TerminalSession
from .transport import WebSocketTransport

logger = logging.getLogger(__name__)

WEB_DIR = Path(__file__).parent / "web"


# ==================== Pydantic 模型 ====================

class HealthStatusResponse(BaseModel):
    """容器 HEALTHCHECK 结果"""
    status: str
    failing_streak: int = 0
    last_output: str = ""


class ContainerResponse(BaseModel):
    """容器列表中的一行"""
    id: str
    name: str
    status: str
    service: str
    ports_health: dict[str, bool]
    healthy: bool
    labels: dict[str, str]
    exit_code: int = 0
    health_status: HealthStatusResponse | None = None


class ServiceHealthResponse(BaseModel):
    status: str
    healthy: bool
    ports_health: dict[str, bool]
    last_check: str


class HealthCheckResponse(BaseModel):
    """健康检查响应"""
    code: int                     # 0 健康，1 异常
    status: str
    message: str
    last_check: str
    services: dict[str, ServiceHealthResponse]


# ==================== 生命周期 ====================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    settings: AppSettings = app.state.settings

    logger.info("Container Debug Online 启动中...")

    topology: ComposeTopology | None = app.state.topology
    if topology is None:
        topology = load_compose_topology(settings.compose_path)
        app.state.topology = topology

    runtime: RuntimeClient | None = app.state.runtime
    owns_runtime = runtime is None
    if runtime is None:
        docker_runtime = DockerRuntimeClient()
        await docker_runtime.ping()
        logger.info("Docker 连接成功")
        runtime = docker_runtime
        app.state.runtime = runtime

    monitor = StatusMonitor(
        runtime,
        topology,
        interval=settings.monitor_interval,
        probe_timeout=settings.probe_timeout,
    )
    # 首次检查完成后再对外服务
    try:
        await monitor.refresh()
    except ContainerDebugError as e:
        logger.error("首次刷新容器状态失败: %s", e)
    monitor.start()
    app.state.monitor = monitor

    logger.info("Container Debug Online 启动完成")

    yield

    logger.info("Container Debug Online 关闭中...")
    await monitor.stop()
    app.state.monitor = None
    if owns_runtime:
        await runtime.close()
        app.state.runtime = None
    logger.info("Container Debug Online 已关闭")


# ==================== 创建应用 ====================

def create_app(
    settings: AppSettings | None = None,
    runtime: RuntimeClient | None = None,
    topology: ComposeTopology | None = None,
) -> FastAPI:
    """创建 FastAPI 应用

    Args:
        settings: 运行参数，默认从环境变量读取
        runtime: 容器运行时客户端，默认在启动时连接本机 Docker
        topology: 已加载的 compose 拓扑，默认在启动时按 settings 加载
    """
    settings = settings or AppSettings.from_env()

    app = FastAPI(
        title="Container Debug Online",
        description="查看 compose 项目容器状态，并在浏览器中打开终端和日志",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.runtime = runtime
    app.state.topology = topology
    app.state.monitor = None

    if settings.password:
        app.add_middleware(BasicAuthMiddleware, password=settings.password)
        logger.info("已启用 Basic 认证")

    _register_routes(app)
    _setup_static_files(app)

    return app


def _setup_static_files(app: FastAPI) -> None:
    """设置静态文件"""
    if WEB_DIR.exists():
        app.mount("/static", StaticFiles(directory=WEB_DIR), name="static")


def _register_routes(app: FastAPI) -> None:
    """注册路由"""

    def get_monitor() -> StatusMonitor:
        monitor = app.state.monitor
        if monitor is None:
            raise HTTPException(status_code=503, detail="服务未就绪")
        return monitor

    # ==================== 根路由 ====================

    @app.get("/", include_in_schema=False)
    async def root():
        """重定向到页面"""
        return RedirectResponse(url="/static/index.html")

    # ==================== 状态 ====================

    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check(response: Response) -> dict[str, Any]:
        """整体健康状态，异常时返回 503"""
        monitor = get_monitor()
        report = build_health_report(monitor.snapshot(), monitor.topology)
        if report['code'] != 0:
            response.status_code = 503
        return report

    @app.get("/containers", response_model=list[ContainerResponse])
    async def list_containers() -> list[dict[str, Any]]:
        """按服务名排序的容器列表"""
        monitor = get_monitor()
        return build_status_rows(monitor.snapshot(), monitor.topology)

    # ==================== 终端 ====================

    @app.websocket("/ws")
    async def terminal(websocket: WebSocket, container: str = ""):
        """容器终端 WebSocket"""
        monitor = app.state.monitor
        if monitor is None:
            await websocket.close(code=1011, reason="服务未就绪")
            return

        try:
            record = monitor.find_container(container)
        except ContainerNotFoundError as e:
            await websocket.close(code=1008, reason=str(e))
            return

        await websocket.accept()
        session = TerminalSession(
            app.state.runtime,
            record.id,
            WebSocketTransport(websocket),
            shell=app.state.settings.shell,
        )
        try:
            await session.serve()
        except ContainerDebugError as e:
            logger.debug("终端会话结束: %s", e)

    # ==================== 日志 ====================

    async def stream_container_logs(websocket: WebSocket, ref: str) -> None:
        monitor = app.state.monitor
        if monitor is None:
            await websocket.close(code=1011, reason="服务未就绪")
            return

        try:
            record = monitor.find_container(ref)
        except ContainerNotFoundError as e:
            await websocket.close(code=1008, reason=str(e))
            return

        await websocket.accept()
        transport = WebSocketTransport(websocket)
        relay = LogRelay(app.state.runtime, record.id, tail=app.state.settings.log_tail)
        try:
            await relay.follow(transport)
        except ContainerDebugError as e:
            logger.error("获取容器 %s 日志失败: %s", record.short_id, e)
            await transport.close(code=1011, reason=str(e)[:120])

    @app.websocket("/containers/{ref}/logs")
    async def container_logs(websocket: WebSocket, ref: str):
        """实时日志 WebSocket"""
        await stream_container_logs(websocket, ref)

    @app.websocket("/container/logs")
    async def container_logs_query(websocket: WebSocket, container: str = ""):
        """实时日志 WebSocket（查询参数形式）"""
        await stream_container_logs(websocket, container)

    @app.get("/container/logs/download")
    async def download_logs(container: str = ""):
        """下载全部日志"""
        monitor = get_monitor()
        try:
            record = monitor.find_container(container)
        except ContainerNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

        relay = LogRelay(app.state.runtime, record.id)
        # 先打开日志流，错误还能以 404 / 500 返回
        try:
            details = await relay.inspect()
            chunks = await relay.drain()
        except ContainerNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ContainerDebugError as e:
            logger.error("打开容器 %s 日志失败: %s", record.short_id, e)
            raise HTTPException(status_code=500, detail="获取容器日志失败")

        filename = details.labels.get(LABEL_SERVICE) or record.service or record.name
        return StreamingResponse(
            chunks,
            media_type="text/plain; charset=utf-8",
            headers={"Content-Disposition": f"attachment; filename={filename}.log"},
        )


# 创建应用实例
app = create_app()
