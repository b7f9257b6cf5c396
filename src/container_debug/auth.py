"""HTTP Basic 认证中间件

纯 ASGI 实现，同时拦截 HTTP 请求和 WebSocket 握手。
"""

import base64
import binascii
import logging
import secrets

from starlette.datastructures import Headers
from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocketClose

logger = logging.getLogger(__name__)

DEFAULT_USERNAME = "admin"
REALM = "Restricted"

# 需要密码保护的路径
PROTECTED_PATHS = ("/ws",)
PROTECTED_PREFIXES = ("/containers", "/container/")


def is_protected(path: str) -> bool:
    return path in PROTECTED_PATHS or path.startswith(PROTECTED_PREFIXES)


def parse_basic_auth(header: str) -> tuple[str, str] | None:
    """解析 Authorization 头，返回 (用户名, 密码)"""
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() != "basic" or not credentials:
        return None
    try:
        decoded = base64.b64decode(credentials.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password


class BasicAuthMiddleware:
    """为受保护路径校验 admin:<password>，未设置密码时直接放行"""

    def __init__(self, app: ASGIApp, password: str, username: str = DEFAULT_USERNAME):
        self.app = app
        self.password = password
        self.username = username

    def _authorized(self, headers: Headers) -> bool:
        parsed = parse_basic_auth(headers.get("authorization", ""))
        if parsed is None:
            return False
        username, password = parsed
        user_ok = secrets.compare_digest(username.encode(), self.username.encode())
        pass_ok = secrets.compare_digest(password.encode(), self.password.encode())
        return user_ok and pass_ok

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope["type"] not in ("http", "websocket")
            or not self.password
            or not is_protected(scope["path"])
        ):
            await self.app(scope, receive, send)
            return

        if self._authorized(Headers(scope=scope)):
            await self.app(scope, receive, send)
            return

        client = scope.get("client") or ("?", 0)
        logger.warning("认证失败: %s %s", client[0], scope["path"])

        if scope["type"] == "websocket":
            await WebSocketClose(code=1008)(scope, receive, send)
            return

        response = PlainTextResponse(
            "Unauthorized",
            status_code=401,
            headers={"WWW-Authenticate": f'Basic realm="{REALM}"'},
        )
        await response(scope, receive, send)
