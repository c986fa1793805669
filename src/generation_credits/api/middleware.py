"""
Request context middleware for the credit API.

  1. Every request gets a correlation id (taken from ``X-Request-Id`` or
     generated) on ``request.state.correlation_id``; it is echoed back on the
     response and threaded into ledger entries.
  2. Paths under ``path_prefix`` must identify the caller with the user id
     header; requests without it are refused before any credit work starts.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, Sequence
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response


logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: Any,
        *,
        path_prefix: str = "/writer",
        user_id_header: str = "X-User-Id",
        correlation_header: str = "X-Request-Id",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.path_prefix = path_prefix.rstrip("/")
        self.user_id_header = user_id_header
        self.correlation_header = correlation_header
        self.skip_paths = tuple(skip_paths or ())

    def _requires_user(self, path: str) -> bool:
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        correlation_id = request.headers.get(self.correlation_header) or uuid4().hex
        request.state.correlation_id = correlation_id

        if self._requires_user(request.url.path) and not request.headers.get(self.user_id_header):
            return JSONResponse(
                status_code=401,
                content={
                    "detail": f"Missing user identification ({self.user_id_header} header).",
                    "code": "UNAUTHORIZED",
                },
                headers={self.correlation_header: correlation_id},
            )

        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "%s %s -> %d in %.1fms [%s]",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
            correlation_id,
        )
        response.headers[self.correlation_header] = correlation_id
        return response
