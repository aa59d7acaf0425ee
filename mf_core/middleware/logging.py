"""
请求日志中间件
每个请求一个 trace_id（沿用 X-Request-Id 或新生成），写入日志上下文并通过 X-Trace-Id 回传。
Shopify Webhook 投递额外记录主题与投递 ID。
"""
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from mf_core.utils.logger import get_logger, LogContext

SKIP_PATHS = {"/healthz", "/favicon.ico"}

WEBHOOK_HEADERS = {
    "x-shopify-topic": "webhook_topic",
    "x-shopify-webhook-id": "webhook_id",
}


class LoggingMiddleware(BaseHTTPMiddleware):
    """请求日志中间件"""

    def __init__(self, app, logger=None):
        super().__init__(app)
        self.logger = logger or get_logger("mf_core.http")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in SKIP_PATHS:
            return await call_next(request)

        trace_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.trace_id = trace_id
        fields = {"method": request.method, "path": request.url.path}
        for header, key in WEBHOOK_HEADERS.items():
            if header in request.headers:
                fields[key] = request.headers[header]

        started = time.perf_counter()
        with LogContext(trace_id=trace_id, shop_domain=request.headers.get("x-shopify-shop-domain")):
            self.logger.info("API request", query=dict(request.query_params) or None, **fields)
            try:
                response = await call_next(request)
            except Exception:
                self.logger.error(
                    "API request failed",
                    latency_ms=_elapsed_ms(started),
                    exc_info=True,
                    **fields,
                )
                raise

            log = self.logger.warning if response.status_code >= 400 else self.logger.info
            log(
                "API response",
                status_code=response.status_code,
                latency_ms=_elapsed_ms(started),
                **fields,
            )

        response.headers["X-Trace-Id"] = trace_id
        return response


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
