"""
FastAPI application main module.
Wires the job store, report queue and (optionally) an embedded report worker,
plus request logging, error handling and health checks.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import uuid
import os
from contextlib import asynccontextmanager
from clinicore.api.v1 import api_router
from clinicore.utils import setup_logging, get_logger
from clinicore.jobs.report_queue import ReportQueue
from clinicore.jobs.schedule import InvalidRepeatPattern
from clinicore.jobs.store import JobStoreError
from clinicore.jobs.worker import ReportWorker, create_job_store, create_report_worker
from clinicore.integrations.email import SmtpMailer
from clinicore.database import engine
from clinicore.database import Base
from clinicore.config import QUEUE_SETTINGS

# Setup logging before creating the app
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/app.log"),
    enable_console=True
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Application startup initiated")

    worker: ReportWorker | None = None
    store = None
    try:
        logger.info("Creating database tables")
        Base.metadata.create_all(bind=engine)

        store = create_job_store()
        mailer = SmtpMailer()
        # exposed on app state so endpoints reach them through dependencies
        app.state.job_store = store  # type: ignore[attr-defined]
        app.state.report_queue = ReportQueue(store)  # type: ignore[attr-defined]
        app.state.mailer = mailer  # type: ignore[attr-defined]

        if QUEUE_SETTINGS.get("embedded_worker", False):
            worker = create_report_worker(store, mailer=mailer)
            worker.start()
            try:
                app.state.report_queue.setup_recurring_report_schedule()
            except (JobStoreError, InvalidRepeatPattern) as e:
                logger.error("Failed to set up recurring report schedule", error=str(e), exc_info=True)
            logger.info("Embedded report worker started")
        else:
            logger.info("Embedded report worker disabled; run `python -m clinicore.jobs.runner`")
        logger.info("Application startup completed successfully")
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if worker:
            worker.shutdown(timeout=30)
        if store is not None:
            store.close()
        logger.info("Application shutdown completed")

app = FastAPI(
    title="Clinicore Jobs",
    description="""
    Background jobs for clinic management.

    ## Features
    * **Clinic reports** - periodic performance emails to organization admins
    * **Appointment reminders** - next-day reminder emails to patients
    * **Durable queue** - Redis-backed job store with retries and a daily schedule

    ## Authentication
    In production the trigger endpoints require the cron secret:
    ```
    Authorization: Bearer <CRON_SECRET>
    ```
    Manual reminders use the staff member's API key.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request ID and request/response logging middleware
@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    request.state.start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        remote_addr=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)

    process_time = time.time() - request.state.start_time
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2),
        request_id=request_id
    )

    return response

# Custom exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "Request validation failed",
        errors=exc.errors(),
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Request validation failed",
            "details": [
                {"loc": list(err.get("loc", [])), "msg": err.get("msg"), "type": err.get("type")}
                for err in exc.errors()
            ],
            "request_id": request_id
        }
    )

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
            "request_id": request_id
        },
        headers=getattr(exc, "headers", None)
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=request_id,
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "request_id": request_id
        }
    )

@app.get("/health", tags=["health"], summary="Basic health check")
def health_check(request: Request):
    """Health check with job store backend and report lane counts."""
    store = getattr(request.app.state, "job_store", None)  # type: ignore[attr-defined]
    queue = getattr(request.app.state, "report_queue", None)  # type: ignore[attr-defined]
    status = "healthy"
    queue_info: dict = {}
    if store is not None:
        queue_info["backend"] = store.snapshot().get("backend")
        if queue_info["backend"] == "redis" and hasattr(store, "health_check"):
            queue_info["redis_status"] = "healthy" if store.health_check() else "unavailable"
    if queue is not None:
        try:
            queue_info["counts"] = queue.get_queue_stats()
        except JobStoreError as e:
            queue_info["error"] = str(e)
            status = "degraded"
    return {
        "status": status,
        "service": "clinicore-jobs",
        "version": "1.0.0",
        "timestamp": time.time(),
        "queue": queue_info,
    }

@app.get("/", tags=["root"])
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "Clinicore Jobs API",
        "version": "1.0.0",
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }

app.include_router(api_router, prefix="/api/v1")

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")

    uvicorn.run(
        "clinicore.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["clinicore"],
        log_level="info",
        access_log=True
    )
