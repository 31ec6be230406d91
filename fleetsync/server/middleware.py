"""
MODULE OVERVIEW:
Request timing for the HTTP surface.

WHAT IS HAPPENING HERE:
Report requests run aggregation queries on the request path, so every HTTP
response carries an `X-Process-Time-Ms` header and slow report computations
show up in the logs next to the filters that caused them.
"""

import time

from fastapi import Request
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

SLOW_REQUEST_MS = 1000.0


class TimingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        process_time_ms = (time.perf_counter() - start_time) * 1000

        response.headers["X-Process-Time-Ms"] = f"{process_time_ms:.2f}"

        # Short polls arrive every few seconds per tab; keep them out of the logs.
        if process_time_ms >= SLOW_REQUEST_MS:
            logger.warning(
                f"path={request.url.path} query='{request.url.query}' event=slow_request "
                f"duration_ms={process_time_ms:.2f}"
            )
        elif "/poll/" not in request.url.path:
            logger.debug(f"path={request.url.path} event=request duration_ms={process_time_ms:.2f}")

        return response
