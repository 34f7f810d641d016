from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import os
from prometheus_client import CONTENT_TYPE_LATEST
from order_export.core.config import get_settings
from order_export.core.exceptions import (
    DataSourceUnavailableError,
    ExportFileMissingError,
    ExportNotReadyError,
    ExportQueueFullError,
    JobNotFoundError,
    UnknownColumnError,
)
from order_export.core.logger import setup_logging
from order_export.api.endpoints import API_PREFIX, get_service, router as export_router
from order_export.services.export_service import (
    ExportService,
    get_export_service,
    shutdown_export_service,
)
from order_export.db.factory import close_data_source
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from order_export.core.rate_limit import limiter

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup sequence.
    Validates settings and opens the database pool before accepting requests.
    """
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    logger.info(f"Starting {settings.APP_NAME} in {settings.ENVIRONMENT} mode.")

    os.makedirs(settings.EXPORT_DIRECTORY, exist_ok=True)
    try:
        service = get_export_service()
        logger.info(
            f"Export service ready: {service.worker_pool.max_workers} workers, "
            f"backlog {service.worker_pool.queue_max}, sync threshold {service.sync_threshold} rows"
        )
    except Exception as e:
        logger.error(f"FATAL: Could not initialise the export service. Error: {str(e)}")
        raise RuntimeError(f"Export service failed on startup: {str(e)}")

    yield

    logger.info(f"Shutting down {settings.APP_NAME}...")
    # Running exports are not cancelled; the process exit ends them
    shutdown_export_service(wait=False)
    close_data_source()
    logger.info("Application shutdown complete.")


app = FastAPI(
    title="Order Export Engine",
    description="Memory-bounded Excel exports of orders, streamed or run as background jobs.",
    version="1.0.0",
    lifespan=lifespan,
)

# Attach rate limiter to app
limiter.enabled = get_settings().RATE_LIMIT_ENABLED
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(JobNotFoundError)
async def job_not_found_handler(request: Request, exc: JobNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ExportNotReadyError)
async def export_not_ready_handler(request: Request, exc: ExportNotReadyError):
    return JSONResponse(
        status_code=409, content={"detail": str(exc), "status": exc.status}
    )


@app.exception_handler(ExportFileMissingError)
async def export_file_missing_handler(request: Request, exc: ExportFileMissingError):
    return JSONResponse(status_code=410, content={"detail": str(exc)})


@app.exception_handler(UnknownColumnError)
async def unknown_column_handler(request: Request, exc: UnknownColumnError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# Fail fast with 503 when the worker pool or the DB pool is exhausted
@app.exception_handler(ExportQueueFullError)
@app.exception_handler(DataSourceUnavailableError)
async def backpressure_handler(request: Request, exc: Exception):
    logger.warning(f"503 Backpressure: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc)},
        headers={"Retry-After": "5"},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in get_settings().ALLOWED_ORIGINS],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(export_router, prefix=API_PREFIX, tags=["Order Export"])


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def get_metrics(service: ExportService = Depends(get_service)):
    """Prometheus exposition of export counters, timers and database pool gauges."""
    service.refresh_pool_metrics()
    return Response(content=service.metrics.render(), media_type=CONTENT_TYPE_LATEST)
