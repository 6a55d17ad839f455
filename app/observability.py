"""Per-request id, Prometheus metrics and one structured log line."""
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"


def _route_template(request: Request) -> str:
    # Label by template so /payments/{payment_id} stays one series.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def _actor_id(request: Request) -> str | None:
    actor = getattr(request.state, "actor", None)
    if actor is not None:
        return str(getattr(actor, "id", actor))
    return getattr(request.state, "actor_id", None)


def _record(request: Request, request_id: str, status_code: int, started: float) -> dict:
    elapsed = time.monotonic() - started
    path = _route_template(request)
    labels = (request.method, path, str(status_code))
    REQUEST_COUNT.labels(*labels).inc()
    REQUEST_LATENCY.labels(*labels).observe(elapsed)
    if status_code >= 500:
        REQUEST_ERRORS.labels(*labels).inc()
    context = {
        "request_id": request_id,
        "actor_id": _actor_id(request),
        "path": path,
        "method": request.method,
        "status": status_code,
        "duration_ms": round(elapsed * 1000.0, 2),
    }
    subscription_id = request.path_params.get("subscription_id")
    payment_id = request.path_params.get("payment_id")
    if subscription_id:
        context["subscription_id"] = subscription_id
    if payment_id:
        context["payment_id"] = payment_id
    return context


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_failed", extra=_record(request, request_id, 500, started)
            )
            raise
        logger.info(
            "request_completed",
            extra=_record(request, request_id, response.status_code, started),
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
