from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from clubcrm.api.routes import router as api_router
from clubcrm.core.config import get_settings
from clubcrm.crm.directory import directory_from_settings, set_directory_client
from clubcrm.events import InternalEvent, event_bus
from clubcrm.logging import configure_logging
from clubcrm.middleware.correlation_id import CorrelationIdMiddleware
from clubcrm.middleware.request_logging import RequestLoggingMiddleware
from clubcrm.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("clubcrm.lifecycle")
_subscriptions_registered = False

_reported_event_types = [
    "crm.prospect.converted",
    "crm.import.completed",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_type": event.name})


def _on_reported_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload") if isinstance(event.payload, dict) else None
    logger.info("domain_event", extra={"event_type": event.name, "actor_id": event.payload.get("actor_user_id")})
    if event.name == "crm.import.completed" and isinstance(payload, dict) and payload.get("failed"):
        logger.warning(
            "import.rows_failed",
            extra={"import_source": payload.get("source"), "import_failed": payload.get("failed")},
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _reported_event_types:
            event_bus.subscribe(event_name, _on_reported_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Club CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.directory_url:
    set_directory_client(directory_from_settings(settings))

if settings.otel_enabled:
    setup_otel("clubcrm-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
