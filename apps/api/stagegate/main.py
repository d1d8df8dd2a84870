from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from stagegate.api.routes import router as api_router
from stagegate.core.config import get_settings
from stagegate.core.context import RequestContextMiddleware
from stagegate.core.database import SessionLocal, get_db
from stagegate.core.events import (
    APPROVAL_REQUESTED,
    APPROVAL_RESOLVED,
    PROJECT_PROVISIONED,
    TRANSITION_COMMITTED,
    TRANSITION_REJECTED,
    InternalEvent,
    event_bus,
)
from stagegate.logging import configure_logging
from stagegate.middleware.correlation_id import CorrelationIdMiddleware
from stagegate.middleware.rate_limit import MutationRateLimitMiddleware
from stagegate.middleware.request_logging import RequestLoggingMiddleware
from stagegate.otel import get_fastapi_server_request_hook, setup_otel
from stagegate.transitions.notifications import dispatch_pending, log_dispatched


configure_logging()
logger = logging.getLogger("stagegate.lifecycle")
_subscriptions_registered = False

_transition_event_types = [
    TRANSITION_COMMITTED,
    TRANSITION_REJECTED,
    APPROVAL_REQUESTED,
    APPROVAL_RESOLVED,
    PROJECT_PROVISIONED,
]

# Events that leave queued notification intents behind.
_notifying_event_types = [APPROVAL_REQUESTED, APPROVAL_RESOLVED, PROJECT_PROVISIONED]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_transition_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload") if isinstance(event.payload, dict) else None
    if not isinstance(payload, dict):
        return
    logger.info(
        "transition_event",
        extra={
            "event_name": event.name,
            "entity_type": payload.get("entity_type"),
            "entity_id": payload.get("entity_id"),
            "from_stage": payload.get("from_stage"),
            "to_stage": payload.get("to_stage"),
            "outcome": payload.get("outcome") or payload.get("status"),
        },
    )


@contextmanager
def _session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_notifying_event(event: InternalEvent) -> None:
    settings = get_settings()
    if not settings.auto_dispatch_notifications:
        return
    try:
        with _session_scope() as session:
            dispatch_pending(session, limit=settings.notification_batch_size)
    except Exception as exc:
        logger.exception("notification_auto_dispatch_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe("stagegate.notification.dispatched", log_dispatched)
        for event_name in _transition_event_types:
            event_bus.subscribe(event_name, _on_transition_event)
        for event_name in _notifying_event_types:
            event_bus.subscribe(event_name, _on_notifying_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "stagegate-api"})
    yield


app = FastAPI(title="Stagegate API", version="0.1.0", lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("stagegate-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
