from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from mobilecrm.api.errors import install_exception_handlers
from mobilecrm.api.routes import router as api_router
from mobilecrm.core.config import get_settings
from mobilecrm.core.context import RequestContextMiddleware
from mobilecrm.core.events import InternalEvent, event_bus
from mobilecrm.logging import configure_logging
from mobilecrm.middleware.correlation_id import CorrelationIdMiddleware
from mobilecrm.middleware.request_logging import RequestLoggingMiddleware
from mobilecrm.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("mobilecrm.lifecycle")
_subscriptions_registered = False

_audited_event_types = [
    "crm.opportunity.stage_changed",
    "crm.opportunity.closed_won",
    "crm.opportunity.closed_lost",
    "crm.lead.converted",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_crm_domain_event(event: InternalEvent) -> None:
    envelope = event.payload if isinstance(event.payload, dict) else {}
    body = envelope.get("payload") or {}
    logger.info(
        "domain_event",
        extra={"event_name": event.name, "entity_id": body.get("opportunity_id") or body.get("lead_id")},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _audited_event_types:
            event_bus.subscribe(event_name, _on_crm_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
install_exception_handlers(app)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("mobilecrm-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
