"""
Flag Engine - service entrypoint
Flag management API, snapshot distribution and local evaluation
"""

import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from flagengine import __version__
from flagengine.api import api_router
from flagengine.api.dependencies import build_runtime, get_runtime, set_runtime
from flagengine.core.config import get_settings
from flagengine.core.errors import ErrorCode
from flagengine.utils.logging import setup_logging

setup_logging()
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start and stop the background cache and analytics workers."""
    logger.info(f"Starting flag engine ({settings.ENVIRONMENT})...")
    runtime = build_runtime(get_settings())
    set_runtime(runtime)
    runtime.start()

    yield

    logger.info("Shutting down flag engine...")
    runtime.stop()
    set_runtime(None)


app = FastAPI(
    title="Flag Engine",
    description="Feature-flag management and evaluation service",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(api_router, prefix="/api")

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


# Error handlers
@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Report malformed request bodies in the same shape as rejected flag writes."""
    violations = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = error.get("msg", "invalid value")
        violations.append(f"{location}: {message}" if location else message)
    logger.warning(f"Rejected malformed request to {request.url.path}: {len(violations)} violation(s)")
    return JSONResponse(
        status_code=400,
        content={"code": ErrorCode.VALIDATION_FAILED.value, "violations": violations},
    )


@app.get("/")
async def root():
    return {
        "name": "Flag Engine",
        "version": __version__,
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check with cache status."""
    runtime = get_runtime()
    cache_status = runtime.cache.status()
    emitter = runtime.emitter
    return {
        "status": "degraded" if cache_status["stale"] else "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "runtime": {
            "python_version": sys.version.split(" ")[0],
            "environment": settings.ENVIRONMENT,
            "store_version": runtime.store.current_snapshot().version,
        },
        "cache": cache_status,
        "analytics": None if emitter is None else {
            "pending": emitter.pending,
            "flushed": emitter.flushed_count,
            "failed": emitter.failed_count,
            "dropped": emitter.dropped_count,
        },
    }


if __name__ == "__main__":
    uvicorn.run(
        "flagengine.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
