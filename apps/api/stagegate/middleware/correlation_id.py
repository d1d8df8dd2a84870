from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from stagegate.context import reset_correlation_id, set_correlation_id

_MAX_CORRELATION_ID_LENGTH = 128


def _incoming_correlation_id(request: Request) -> str:
    raw = (request.headers.get("x-correlation-id") or "").strip()
    if not raw or len(raw) > _MAX_CORRELATION_ID_LENGTH:
        return str(uuid.uuid4())
    return raw


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _incoming_correlation_id(request)
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response
