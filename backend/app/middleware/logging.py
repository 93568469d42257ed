# backend/app/middleware/logging.py
"""
Per-request access log.

One line per request with method, path, status, latency and client IP.
Health checks and docs are skipped to keep the log readable.
"""
import logging
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from backend.app.api.deps import get_client_ip

logger = logging.getLogger(__name__)

_SKIP_LOG_PATHS = {"/", "/health", "/docs", "/redoc", "/openapi.json"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in _SKIP_LOG_PATHS or path.endswith("/openapi.json"):
            return await call_next(request)

        start_time = time.perf_counter()
        context = {
            "method": request.method,
            "path": path,
            "ip": get_client_ip(request) or "unknown",
        }

        try:
            response = await call_next(request)
        except Exception:
            context["latency_ms"] = round((time.perf_counter() - start_time) * 1000, 2)
            logger.exception("%s %s failed", request.method, path, extra={"context": context})
            raise

        context["status_code"] = response.status_code
        context["latency_ms"] = round((time.perf_counter() - start_time) * 1000, 2)

        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(
            level,
            "%s %s %d %.2fms",
            request.method,
            path,
            response.status_code,
            context["latency_ms"],
            extra={"context": context},
        )
        return response
