"""
FastAPI Application — Entry Point

Document Processing Service

The HTTP surface is operational only; documents arrive through the queue.

  GET  /health           datastore + AI reachability (503 when unhealthy)
  GET  /metrics          in-flight jobs, worker counts, queue depth
  POST /api/v1/process   manual single-document processing

Lifespan:
  startup   build the collaborator graph once (gateway → router → engine →
            consumer) and start the worker pool; without a queue URL the
            service runs standalone (manual processing only)
  shutdown  stop the pool (bounded drain), dispose the DB engine
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.api.v1.processing import router as processing_router
from app.core.config import settings
from app.db.repository import DocumentRepository
from app.db.session import check_db_health, dispose_engine
from app.llm.gateway import ExtractionGateway
from app.processing.embeddings import EmbeddingGenerator
from app.processing.strategy import ExtractionStrategyRouter
from app.schemas.documents import ErrorResponse, HealthResponse, MetricsResponse
from app.services.processor import DocumentProcessingEngine
from app.storage.s3 import ObjectStorage
from app.workers.consumer import QueueConsumer
from app.workers.sqs import SQSQueue

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Collaborator graph
# ---------------------------------------------------------------------------

def build_consumer(gateway: ExtractionGateway) -> QueueConsumer:
    repository = DocumentRepository()
    engine = DocumentProcessingEngine(
        repository=repository,
        storage=ObjectStorage(),
        router=ExtractionStrategyRouter(gateway),
        embeddings=EmbeddingGenerator(gateway),
    )
    queue = SQSQueue(settings.sqs_queue_url) if settings.sqs_queue_url else None
    return QueueConsumer(queue, engine, repository)


# ---------------------------------------------------------------------------
# Application lifespan — startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting Document Processing Service | env=%s concurrency=%d model=%s",
        settings.app_env, settings.processing_concurrency, settings.extraction_model,
    )

    gateway  = ExtractionGateway()
    consumer = build_consumer(gateway)
    app.state.gateway  = gateway
    app.state.consumer = consumer

    await consumer.start()

    yield

    logger.info("Shutting down Document Processing Service")
    await consumer.stop()
    await dispose_engine()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Document Processing Service",
        description="Queue-driven document extraction, normalisation and embedding.",
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.started_at = time.monotonic()

    # ----------------------------------------------------------------
    # Request ID + logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers — uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        body = ErrorResponse(
            error="BAD_REQUEST" if exc.status_code < 500 else "PROCESSING_ERROR",
            message=str(exc.detail),
        )
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        body = ErrorResponse(
            error="VALIDATION_ERROR",
            message="Request validation failed.",
            detail=[
                {"field": ".".join(str(loc) for loc in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ],
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        logger.exception("Unhandled exception | path=%s", request.url.path)
        body = ErrorResponse(error="INTERNAL_ERROR", message="An unexpected error occurred.")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(processing_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Operations endpoints
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], response_model=HealthResponse)
    async def health(request: Request) -> JSONResponse:
        uptime = time.monotonic() - request.app.state.started_at
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            database = await check_db_health()
            gateway = getattr(request.app.state, "gateway", None)
            ai_service = await gateway.ping() if gateway is not None else False
            error = None
        except Exception as exc:
            logger.error("Health check failed: %s", exc)
            database, ai_service, error = False, False, str(exc)

        healthy = database and ai_service
        body = HealthResponse(
            status="healthy" if healthy else "unhealthy",
            timestamp=timestamp,
            uptime_seconds=round(uptime, 3),
            database=database,
            ai_service=ai_service,
            environment=settings.app_env,
            error=error,
        )
        return JSONResponse(
            status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body.model_dump(mode="json"),
        )

    @app.get("/metrics", tags=["Operations"], response_model=MetricsResponse)
    async def metrics(request: Request) -> MetricsResponse:
        consumer = getattr(request.app.state, "consumer", None)
        if consumer is None:
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Processing service not initialised")
        return await consumer.metrics()

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
