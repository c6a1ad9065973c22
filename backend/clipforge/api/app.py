"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clipforge import __version__, check_credentials
from clipforge.db import init_database, shutdown
from clipforge.errors import PipelineError
from clipforge.services.stream_client import close_stream_client
from clipforge.api.routes import close_orchestrator, router, status_code_for

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Report provider configuration (Cloudflare Stream, caption model)
        - Initialize database schema

    Shutdown:
        - Close provider HTTP clients
        - Close database connections
    """
    # Startup
    logger.info("Starting Clipforge API...")
    check_credentials()
    await init_database()
    logger.info("API startup complete")

    yield

    # Shutdown
    logger.info("Shutting down Clipforge API...")
    await close_orchestrator()
    await close_stream_client()
    await shutdown()
    logger.info("API shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Clipforge API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["authorization", "content-type"],
)

# Include router with all endpoints
app.include_router(router)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    """Step-tagged failures raised before the orchestrator takes over."""
    logger.warning(f"{request.method} {request.url.path} failed at {exc.step}: {exc.message}")
    return JSONResponse(status_code=status_code_for(exc), content=exc.to_response())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all exception handler to prevent stack traces in API responses."""
    logger.error(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc),
        }
    )
