from __future__ import annotations

from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

CLIENT_PLATFORMS = frozenset({"ios", "android", "web"})


def normalize_client_platform(raw: str | None) -> str:
    value = (raw or "").strip().lower()
    return value if value in CLIENT_PLATFORMS else "unknown"


@dataclass
class RequestContext:
    """Per-request facts shared by logging, metrics and the auth dependency."""

    correlation_id: str
    client_platform: str
    app_version: str | None = None
    user_id: str | None = None

    @property
    def request_id(self) -> str:
        return self.correlation_id

    @classmethod
    def from_request(cls, request: Request) -> RequestContext:
        return cls(
            correlation_id=getattr(request.state, "correlation_id", None) or "",
            client_platform=normalize_client_platform(request.headers.get("x-client-platform")),
            app_version=(request.headers.get("x-app-version") or None),
        )


def current_context(request: Request) -> RequestContext | None:
    return getattr(request.state, "context", None)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        context = RequestContext.from_request(request)
        request.state.context = context
        response = await call_next(request)
        if context.request_id:
            response.headers["x-request-id"] = context.request_id
        return response
