"""
FastAPI Application — Event ingestion and operational endpoints.

Provides:
- POST /events for signed event submission (202, queued for routing)
- Event status lookup against the idempotency ledger
- Queue statistics, failed-event listing and DLQ replay
- Liveness and readiness probes
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from config.settings import Settings, get_settings
from core.errors import (
    AuthenticationFailure, ConfigurationError, InfrastructureFailure, ValidationFailure,
)
from core.pipeline import Pipeline
from ingestion.gate import new_correlation_id
from job_queue.rate_limiter import TokenBucketRateLimiter
from models.schemas import EventStatus
from utils.logging import bind_correlation_id, clear_correlation_id, configure_logging

logger = structlog.get_logger()

CORRELATION_HEADER = "X-Correlation-ID"
SIGNATURE_HEADER = "X-HMAC-Signature"
RATE_LIMIT_EXEMPT_PATHS = frozenset({"/health", "/ready"})


def _error(status_code: int, message: str, correlation_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "correlationId": correlation_id},
    )


def _too_many_requests(ingestion: bool) -> JSONResponse:
    if ingestion:
        content = {
            "error": "Too many requests",
            "message": "Rate limit exceeded. Please try again later.",
            "retryAfter": 1,
        }
    else:
        content = {
            "error": "Too many requests",
            "message": "Rate limit exceeded for status endpoint.",
        }
    return JSONResponse(status_code=429, content=content, headers={"Retry-After": "1"})


def create_app(settings: Settings = None, pipeline: Optional[Pipeline] = None,
               run_workers: bool = True) -> FastAPI:
    """Build the app. A supplied ``pipeline`` is started/stopped by the app's lifespan."""
    settings = settings or get_settings()
    pipeline = pipeline or Pipeline.from_settings(settings)

    ingest_limiter = TokenBucketRateLimiter.per_window(
        settings.ingestion.rate_limit_max_requests, settings.ingestion.rate_limit_window_ms,
    )
    status_limiter = TokenBucketRateLimiter.per_window(
        settings.ingestion.status_rate_limit_max, settings.ingestion.status_rate_limit_window_ms,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.logging.level, settings.logging.json_output,
                          service=settings.app_name)
        await pipeline.start(with_workers=run_workers)
        logger.info("event_gateway_started",
                    queue_backend=type(pipeline.queue).__name__,
                    workers=settings.worker.concurrency if run_workers else 0)
        yield
        await pipeline.stop()
        logger.info("event_gateway_stopped")

    app = FastAPI(
        title="Event Gateway",
        description="Durable, idempotent event ingestion and routing",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    app.state.settings = settings

    @app.middleware("http")
    async def correlation_and_rate_limit(request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or new_correlation_id()
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            path = request.url.path
            if path not in RATE_LIMIT_EXEMPT_PATHS:
                ingestion = request.method == "POST" and path == "/events"
                limiter = ingest_limiter if ingestion else status_limiter
                if not limiter.try_acquire():
                    logger.warning("rate_limit_exceeded", path=path,
                                   client=request.client.host if request.client else None)
                    response = _too_many_requests(ingestion)
                    response.headers[CORRELATION_HEADER] = correlation_id
                    return response
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            clear_correlation_id()

    # ══════════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "service": settings.app_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/ready")
    async def ready():
        report = await pipeline.readiness()
        return JSONResponse(status_code=200 if report["ready"] else 503, content=report)

    # ══════════════════════════════════════════════════════════════
    #  INGESTION
    # ══════════════════════════════════════════════════════════════

    @app.post("/events")
    async def ingest_event(request: Request):
        correlation_id = request.state.correlation_id
        raw_body = await request.body()
        try:
            receipt = await pipeline.gate.ingest(
                raw_body, request.headers.get(SIGNATURE_HEADER), correlation_id,
            )
        except AuthenticationFailure as e:
            return _error(401, str(e), correlation_id)
        except ValidationFailure as e:
            return _error(400, str(e), correlation_id)
        except ConfigurationError:
            return _error(500, "Server misconfiguration", correlation_id)
        except InfrastructureFailure:
            return _error(500, "Internal server error", correlation_id)
        return JSONResponse(status_code=202, content=receipt.to_response())

    # ══════════════════════════════════════════════════════════════
    #  OPERATIONS
    # ══════════════════════════════════════════════════════════════

    @app.get("/events/stats")
    async def event_stats():
        stats = await pipeline.stats()
        return stats.model_dump()

    @app.get("/events/failed")
    async def failed_events(request: Request, limit: int = Query(100, ge=1, le=1000)):
        try:
            events = await pipeline.ledger.list_by_status(EventStatus.FAILED, limit=limit)
        except Exception as e:
            logger.error("failed_events_query_failed", error=str(e))
            return _error(500, "Internal server error", request.state.correlation_id)
        return {"count": len(events), "events": [e.to_public_dict() for e in events]}

    @app.post("/events/dlq/replay")
    async def replay_dlq():
        replayed = await pipeline.replay_dead_letters()
        return {"replayed": replayed, "message": "DLQ jobs replayed"}

    @app.get("/events/{event_id}")
    async def event_status(event_id: str, request: Request):
        correlation_id = request.state.correlation_id
        try:
            event = await pipeline.ledger.get_event(event_id)
        except Exception as e:
            logger.error("event_status_query_failed", event_id=event_id, error=str(e))
            return _error(500, "Internal server error", correlation_id)
        if event is None:
            return _error(404, "Event not found", correlation_id)
        return event.to_public_dict()

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import os
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "3000")))
