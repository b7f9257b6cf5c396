"""异常定义"""


class ContainerDebugError(Exception):
    """所有业务异常的基类"""


class RuntimeClientError(ContainerDebugError):
    """容器运行时调用失败（列表、检查、exec、日志）"""


class ContainerNotFoundError(ContainerDebugError):
    """按 ID / 名称 / 服务名找不到容器"""

    def __init__(self, ref: str):
        super().__init__(f"容器 '{ref}' 不存在")
        self.ref = ref


class TransportClosedError(ContainerDebugError):
    """客户端或容器端连接已关闭"""


class LogDecodeError(ContainerDebugError):
    """多路复用日志流格式错误"""


class ComposeConfigError(ContainerDebugError):
    """compose 文件缺失或无法解析"""


class SessionStateError(ContainerDebugError):
    """终端会话状态切换非法"""
