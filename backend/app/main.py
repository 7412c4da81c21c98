"""FastAPI application (read-only view of the bitmap dataset).

Operational goals:
- Deterministic, low-noise responses
- Conservative rate limiting
- Request-id propagation and structured access logs
- Safe failure modes (a missing or half-written file never yields fabricated rows)
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.router import router as api_router
from app.core.config import TrackerSettings, load_settings
from app.schemas.blocks import HealthResponse
from app.security.rate_limit import InMemoryHourlyRateLimiter
from tracker.core.errors import StoreError
from tracker.core.store import DatasetStore


logger = logging.getLogger("bitmap")
# Ensure access logs are emitted by default.
logger.setLevel(logging.INFO)


def create_app(
    store: Optional[DatasetStore] = None,
    *,
    settings: Optional[TrackerSettings] = None,
    limiter: Optional[InMemoryHourlyRateLimiter] = None,
) -> FastAPI:
    if settings is None:
        settings = load_settings()

    app = FastAPI(
        title="Bitmap Block Dataset API",
        version="1.0.0",
        openapi_url="/openapi.json",
        docs_url=None,
        redoc_url=None,
        description="Read-only access to blocks carrying a bitmap inscription.",
    )
    app.state.store = store or DatasetStore(settings.csv_file, sort_every=settings.sort_every)
    app.state.limiter = limiter or InMemoryHourlyRateLimiter(limit_per_hour=settings.query_rate_limit_per_hour)

    app.include_router(api_router)

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    def health(request: Request) -> HealthResponse:
        return HealthResponse(status="ok", dataset_entries=request.app.state.store.count())

    @app.middleware("http")
    async def request_id_and_access_log(request: Request, call_next: Callable):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        start = time.time()
        try:
            response = await call_next(request)
        except StoreError:
            # Dataset unreadable: fail safely.
            return JSONResponse(
                status_code=503,
                content={"detail": "Dataset temporarily unavailable."},
                headers={"x-request-id": request_id},
            )
        except Exception:  # noqa: BLE001
            logger.exception("Unhandled error", extra={"request_id": request_id})
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal error."},
                headers={"x-request-id": request_id},
            )

        duration_ms = int((time.time() - start) * 1000)
        response.headers["x-request-id"] = request_id

        # Structured access log (no query strings).
        logger.info(
            json.dumps(
                {
                    "event": "access",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": getattr(response, "status_code", None),
                    "duration_ms": duration_ms,
                }
            )
        )
        return response

    return app


app = create_app()
