"""Main FastAPI application entry point"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

from cv_pipeline import __version__
from cv_pipeline.api.internal_v1 import internal_api_router
from cv_pipeline.api.v1 import api_router
from cv_pipeline.core.config import settings
from cv_pipeline.core.logging import setup_logging
from cv_pipeline.db.database import async_session_factory, init_db
from cv_pipeline.services.metrics import setup_metrics
from cv_pipeline.utils.exceptions import CustomHTTPException
from cv_pipeline.workers.cv_extraction_worker import get_cv_extraction_worker

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


async def _check_database_startup():
    """Validate database connectivity during startup with retries."""
    start = time.perf_counter()
    max_retries = 5
    retry_delay = 2.0  # seconds

    for attempt in range(1, max_retries + 1):
        try:
            async with async_session_factory() as session:
                await asyncio.wait_for(session.execute(select(1)), timeout=3.0)
            duration = time.perf_counter() - start
            logger.info(
                "Startup database check succeeded",
                extra={"duration_seconds": round(duration, 3), "attempt": attempt},
            )
            return
        except (asyncio.TimeoutError, SQLAlchemyError, ConnectionRefusedError) as exc:
            if attempt < max_retries:
                logger.warning(
                    f"Startup database check failed (attempt {attempt}/{max_retries}), retrying in {retry_delay}s...",
                    extra={"error": str(exc), "attempt": attempt},
                )
                await asyncio.sleep(retry_delay)
            else:
                logger.error(
                    "Startup database check failed after all retries",
                    extra={"error": str(exc), "attempts": max_retries},
                )
                raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler
    """
    logger.info("Starting CV pipeline...")

    await _check_database_startup()
    await init_db()

    worker = None
    if settings.CV_WORKER_ENABLED:
        worker = get_cv_extraction_worker()
        await worker.start()
    else:
        logger.info("CV extraction worker disabled (CV_WORKER_ENABLED=false)")

    logger.info("CV pipeline started successfully")

    try:
        yield
    finally:
        logger.info("Shutting down CV pipeline...")
        if worker is not None:
            await worker.stop()
        logger.info("CV pipeline shutdown complete")


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="CV ingestion pipeline: upload, extraction and import into employee profiles",
    version=__version__,
    openapi_url=f"{settings.API_PREFIX}/openapi.json",
    docs_url=f"{settings.API_PREFIX}/docs",
    redoc_url=f"{settings.API_PREFIX}/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(CustomHTTPException)
async def custom_http_exception_handler(request, exc: CustomHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "message": exc.detail,
            "details": exc.details,
        },
        headers=exc.headers,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": exc.detail,
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError):
    """
    Handle validation errors without echoing user input.
    """
    errors = []
    for error in exc.errors():
        errors.append(
            {
                "type": error.get("type", ""),
                "location": error.get("loc", []),
                "message": error.get("msg", ""),
            }
        )

    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Invalid request data",
            "details": errors,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_SERVER_ERROR",
            "message": "An unexpected error occurred",
        },
    )


# Include internal routes (service-to-service, HMAC signed)
app.include_router(internal_api_router, prefix=f"{settings.API_PREFIX}/internal")

# Include public routes (JWT)
app.include_router(api_router, prefix=settings.API_PREFIX)

if settings.PROMETHEUS_ENABLED:
    setup_metrics(app)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": __version__,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "cv_pipeline.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        reload=settings.APP_DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
