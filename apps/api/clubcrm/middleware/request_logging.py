from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from clubcrm.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("clubcrm.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            fields = self._observe(request, method, 500, started)
            logger.error("http.error", exc_info=True, extra=fields)
            raise

        fields = self._observe(request, method, response.status_code, started)
        logger.info("http.request", extra=fields)
        return response

    @staticmethod
    def _observe(request: Request, method: str, status_code: int, started: float) -> dict:
        # the route label is only known once the router has handled the request
        path = resolve_http_path_label(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=method, path=path, status=status_code, duration=duration_ms / 1000)
        return {
            "method": method,
            "path": path,
            "status_code": status_code,
            "duration_ms": duration_ms,
        }
