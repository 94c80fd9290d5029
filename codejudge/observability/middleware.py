"""
FastAPI middleware for OpenTelemetry metrics collection.
"""

import re
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from codejudge.observability.metrics import record_api_request


# Any segment after /jobs/ is a job id, generated or caller-chosen
_JOB_ID_PATTERN = re.compile(r"^(/jobs/)[^/]+")


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect API request metrics using OpenTelemetry."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics endpoint to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = self._normalize_path(request.url.path)

        start_time = time.time()
        status_code = 500  # Default for exceptions

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration = time.time() - start_time
            record_api_request(method, path, status_code, duration)

    def _normalize_path(self, path: str) -> str:
        """Replace job ids with a placeholder to keep label cardinality bounded."""
        return _JOB_ID_PATTERN.sub(r"\1{job_id}", path)
