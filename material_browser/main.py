"""Material Browser API - FastAPI application."""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from material_browser.config import settings
from material_browser.dependencies import get_services, reset_services
from material_browser.exceptions import BrowserError
from material_browser.metrics import ERROR_COUNT
from material_browser.middleware.metrics import MetricsMiddleware, normalize_path
from material_browser.routers import backend, databases, files, metrics


def setup_logging() -> None:
    """Configure structlog: console output in debug, JSON lines otherwise."""
    level_name = settings.log_level or ("DEBUG" if settings.debug else "INFO")
    render_json = not settings.debug if settings.log_json is None else settings.log_json

    renderer = (
        structlog.processors.JSONRenderer()
        if render_json
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level_name.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


async def pool_sweep_task():
    """Run ConnectionPoolRegistry.sweep every pool_sweep_interval seconds.

    The sweep is blocking (it touches DuckDB connections), so it runs in a worker
    thread. Pools themselves are never evicted by the default registry.
    """
    log = structlog.get_logger()

    while True:
        try:
            await asyncio.sleep(settings.pool_sweep_interval)
            report = await asyncio.to_thread(get_services().registry.sweep)
            if report["retired"] or report["leaks"]:
                log.info("pool_sweep_completed", **report)
        except asyncio.CancelledError:
            log.info("pool_sweep_task_cancelled")
            break
        except Exception as e:
            log.error("pool_sweep_failed", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services on startup; stop the sweep and close every pool on shutdown."""
    log = structlog.get_logger()
    log.info(
        "application_startup",
        version=settings.api_version,
        debug=settings.debug,
        duckdb_dir=str(settings.duckdb_dir),
        image_bucket=settings.image_bucket_name,
        text_bucket=settings.text_bucket_name,
    )

    get_services()

    sweep_task = asyncio.create_task(pool_sweep_task())
    log.info("background_tasks_started", tasks=["pool_sweep"])

    yield

    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass

    reset_services()
    log.info("application_shutdown")


setup_logging()
logger = structlog.get_logger()

app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description="""
Material Browser API.

Browse tables of several DuckDB databases and the images and text documents
matched to each row from an S3-compatible object store:
- Database and table discovery with cached schema and row counts
- Paged table data with image and text attachment columns
- Attachment content (data URIs, thumbnails, text previews, CSV parsing)
- Cache management

Row counts may be approximate (storage statistics) and lag behind recent writes.
    """,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request count/duration by normalized endpoint
app.add_middleware(MetricsMiddleware)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Bind a request_id for every log line of the request and log its outcome."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        endpoint=normalize_path(request.url.path),
    )

    started = time.perf_counter()
    logger.debug(
        "request_started",
        method=request.method,
        path=request.url.path,
        query=str(request.url.query) or None,
    )

    response = await call_next(request)

    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )

    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(BrowserError)
async def browser_error_handler(request: Request, exc: BrowserError):
    """Map domain errors to their HTTP status and error body."""
    ERROR_COUNT.labels(type=exc.code, endpoint=normalize_path(request.url.path)).inc()

    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request_failed",
        method=request.method,
        path=request.url.path,
        error=exc.code,
        message=exc.message,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    """Log anything unexpected and answer 500 in the same shape as domain errors."""
    error_type = type(exc).__name__
    ERROR_COUNT.labels(type=error_type, endpoint=normalize_path(request.url.path)).inc()

    logger.error(
        "unhandled_exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=error_type,
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "internal_server_error",
            "message": str(exc) if settings.debug else "An internal error occurred",
            "details": {"type": error_type} if settings.debug else None,
        },
    )


for router in (backend.router, databases.router, files.router, metrics.router):
    app.include_router(router)


@app.get("/", include_in_schema=False)
async def root():
    """Service info and entry points."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "health": "/health",
        "databases": f"{settings.api_prefix}/databases",
        "metrics": "/metrics",
        "docs": "/docs" if settings.debug else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "material_browser.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
