from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from starlette.responses import JSONResponse, Response

from app.api.billing import router as billing_router
from app.config import settings, validate_settings
from app.db import SessionLocal
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.observability import ObservabilityMiddleware
from app.services.billing.plans import PlanCatalog
from app.services.payment_gateway import WaafiPayGateway

logger = logging.getLogger(__name__)


def _seed_plan_catalog() -> None:
    db = SessionLocal()
    try:
        created = PlanCatalog(db).seed_default_plans(currency=settings.billing_currency)
        db.commit()
    finally:
        db.close()
    if created:
        logger.info("Seeded %s pricing plan(s)", len(created))


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[arg-type]
    for warning in validate_settings(settings):
        logger.warning("Config warning: %s", warning)
    _seed_plan_catalog()
    logger.info("Billing API started (pid=%s)", os.getpid())
    yield
    logger.info("Billing API shutting down")


app = FastAPI(title="Tenant Billing API", lifespan=lifespan)

configure_logging()
register_error_handlers(app)

# Last added runs first.
cors_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
    )
app.add_middleware(ObservabilityMiddleware)


def _include_api_router(router: object, dependencies: list[Any] | None = None) -> None:
    app.include_router(router, dependencies=dependencies)  # type: ignore[arg-type]
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)  # type: ignore[arg-type]


_include_api_router(billing_router)


@app.get("/health")
def health_check() -> dict[str, str]:
    """Liveness check: always ok while the process is running."""
    return {"status": "ok"}


@app.get("/health/ready")
def readiness_check() -> JSONResponse:
    """Readiness check.

    Only the database gates readiness. The gateway flag is reported so an
    operator can tell that mobile-money payments will be refused with 503
    while offline proofs still work.
    """
    checks: dict[str, str] = {}
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            checks["database"] = "ok"
        finally:
            db.close()
    except Exception as e:
        checks["database"] = f"error: {e}"

    all_ok = all(v == "ok" for v in checks.values())
    gateway = "configured" if WaafiPayGateway().is_configured() else "not_configured"
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={
            "status": "ok" if all_ok else "degraded",
            "checks": checks,
            "payment_gateway": gateway,
        },
    )


@app.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
