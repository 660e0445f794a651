from __future__ import annotations

import time
from typing import Iterable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import log_debug, log_error, log_info


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log each admin and API request with its outcome and duration."""

    def __init__(self, app, *, exempt_paths: Iterable[str] | None = None) -> None:
        super().__init__(app)
        self.exempt_paths = tuple(exempt_paths or ())

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path.startswith(self.exempt_paths):
            return await call_next(request)

        started = time.perf_counter()
        log_debug("Request received", method=request.method, path=path, client_ip=client_ip(request))
        try:
            response = await call_next(request)
        except Exception as exc:
            log_error(
                "Request failed",
                method=request.method,
                path=path,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                error=str(exc),
            )
            raise

        log = log_error if response.status_code >= 500 else log_info
        log(
            "Request completed",
            method=request.method,
            path=path,
            query=request.url.query or "-",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response
