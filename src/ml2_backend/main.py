"""ML2 backend - FastAPI application."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import structlog

from . import __version__, routers
from .config import get_settings
from .database import create_tables, engine
from .exceptions import PipelineError
from .logging_config import clear_context, set_correlation_id, setup_logging

ERROR_PREFIX = "There's an error regarding ML2's functionality: "


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    settings = get_settings()
    setup_logging(
        service_name=settings.service_name,
        log_format=settings.log_format,
        log_level=settings.log_level,
    )
    await create_tables()
    yield
    await engine.dispose()


app = FastAPI(
    title="ML2 Backend",
    description="Model conversion, code generation and execution pipeline",
    version=__version__,
    lifespan=lifespan,
)


@app.middleware("http")
async def correlation_middleware(request: Request, call_next):
    correlation_id = request.headers.get("X-Correlation-ID", f"req_{uuid.uuid4().hex[:8]}")
    set_correlation_id(correlation_id)
    structlog.contextvars.bind_contextvars(method=request.method, path=request.url.path)

    start = time.time()
    logger = structlog.get_logger()

    try:
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        duration_ms = (time.time() - start) * 1000

        if response.status_code >= 500:  # noqa: PLR2004
            logger.error(
                "http_request_failed",
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
        else:
            logger.info(
                "http_request", status_code=response.status_code, duration_ms=round(duration_ms, 2)
            )

        return response
    except Exception as e:
        duration_ms = (time.time() - start) * 1000
        logger.error(
            "http_request_exception",
            error=str(e),
            error_type=type(e).__name__,
            duration_ms=round(duration_ms, 2),
            exc_info=True,
        )
        raise
    finally:
        clear_context()


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    structlog.get_logger().warning(
        "pipeline_error",
        error_type=type(exc).__name__,
        error=exc.message,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content={"message": ERROR_PREFIX + exc.message})


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "ML2 Backend",
        "version": __version__,
        "description": "Model conversion, code generation and execution pipeline",
    }


app.include_router(routers.health.router)
app.include_router(routers.users.router, prefix="/api/v1")
app.include_router(routers.projects.router, prefix="/api/v1")
