# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Request logging middleware.

Prompts and generated text never reach the logs: only method, path,
status and duration are recorded. Status polling is logged at DEBUG so a
client watching ``/api/status`` does not flood the log, and server errors
are logged at WARNING.
"""

import logging
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("llrt.api")

POLLING_PATHS = frozenset({"/health", "/api/status", "/api/version"})


def _level_for(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.WARNING
    if path in POLLING_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLogger(BaseHTTPMiddleware):
    """Metadata-only access log."""

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        path = request.url.path
        logger.log(
            _level_for(path, response.status_code),
            "method=%s path=%s status=%d duration=%.3fs",
            request.method,
            path,
            response.status_code,
            elapsed,
        )
        return response
