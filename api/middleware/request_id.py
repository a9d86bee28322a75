"""
Request ID 中间件

为每个请求生成或透传追踪ID，并绑定到 structlog 上下文。网关回调没有
X-Request-ID 时，优先沿用网关自带的投递ID（例如 PayPal-Transmission-Id），
便于把日志与网关后台的投递记录对上。
"""
import uuid
from contextvars import ContextVar
from typing import Optional

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# 按顺序尝试的请求头；第一个为本服务自己的追踪头
TRACE_HEADERS = ("X-Request-ID", "PayPal-Transmission-Id", "X-Correlation-ID")

_CALLBACK_PREFIXES = ("/api/v1/payments/webhooks/", "/api/v1/payments/redirect/")


def _callback_provider(path: str) -> Optional[str]:
    """从回调路径中取出网关名，其余路径返回 None"""
    for prefix in _CALLBACK_PREFIXES:
        if path.startswith(prefix):
            rest = path[len(prefix):].strip("/")
            return rest.split("/", 1)[0] or None
    return None


class RequestIDMiddleware(BaseHTTPMiddleware):
    HEADER_NAME = TRACE_HEADERS[0]

    async def dispatch(self, request: Request, call_next):
        request_id = next((request.headers[h] for h in TRACE_HEADERS if request.headers.get(h)), None)
        request_id = request_id or str(uuid.uuid4())
        # 仅记录直连对端地址；代理转发头可被伪造，不作为来源依据
        client_ip = request.client.host if request.client else "unknown"

        request.state.request_id = request_id
        request.state.client_ip = client_ip
        request_id_var.set(request_id)

        structlog.contextvars.clear_contextvars()
        context = {
            "request_id": request_id,
            "client_ip": client_ip,
            "method": request.method,
            "path": request.url.path,
        }
        provider = _callback_provider(request.url.path)
        if provider:
            context["provider"] = provider
        structlog.contextvars.bind_contextvars(**context)

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = request_id
        return response


def get_request_id() -> Optional[str]:
    """当前请求的 request_id；不在请求上下文中时为 None"""
    return request_id_var.get()
