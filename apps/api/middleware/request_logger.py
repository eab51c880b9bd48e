"""Request logging middleware"""
import logging
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration of every request"""

    # Skip logging for health check, docs, and static files
    skip_paths = ["/health", "/docs", "/openapi.json", "/redoc", "/favicon.ico"]

    async def dispatch(self, request: Request, call_next):
        if any(request.url.path.startswith(path) for path in self.skip_paths):
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        client_host = request.client.host if request.client else "unknown"
        forwarded_for = request.headers.get("X-Forwarded-For")
        ip_address = forwarded_for.split(",")[0] if forwarded_for else client_host

        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"({elapsed_ms:.1f} ms) from {ip_address}"
        )
        return response
