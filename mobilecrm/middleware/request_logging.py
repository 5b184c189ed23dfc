from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from mobilecrm.core.context import current_context
from mobilecrm.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("mobilecrm.request")


def _emit(request: Request, status_code: int, started: float, failed: bool = False) -> None:
    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    # the matched route is only on the scope once the app has handled the request
    path = resolve_http_path_label(request)
    observe_http_request(method=request.method, path=path, status=status_code, duration=duration_ms / 1000)

    context = current_context(request)
    fields = {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "user_id": context.user_id if context else None,
        "client_platform": context.client_platform if context else None,
    }
    if failed:
        logger.error("http.error", exc_info=True, extra=fields)
    else:
        logger.info("http.request", extra=fields)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            _emit(request, 500, started, failed=True)
            raise
        _emit(request, response.status_code, started)
        return response
