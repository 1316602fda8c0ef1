"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from reelflow import __version__
from reelflow.db import init_database, shutdown
from reelflow.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ReelflowError,
    ValidationError,
)
from reelflow.orchestrator.service import WorkflowService
from reelflow.services.generation_client import close_generation_client
from reelflow.services.merge_client import close_merge_client
from reelflow.api.routes import router

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    NotFoundError: 404,
    ValidationError: 422,
    InvalidStateError: 409,
    ConflictError: 409,
}


def status_code_for(exc: ReelflowError) -> int:
    for exc_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, exc_type):
            return code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Initialize database schema
        - Resume every running or waiting document

    Shutdown:
        - Cancel background runs (in-flight items keep their handles)
        - Close provider clients and database connections
    """
    logger.info("Starting Reelflow API...")
    await init_database()
    if getattr(app.state, "service", None) is None:
        app.state.service = WorkflowService()
    await app.state.service.resume_all()
    logger.info("API startup complete")

    yield

    logger.info("Shutting down Reelflow API...")
    await app.state.service.shutdown()
    await close_generation_client()
    await close_merge_client()
    await shutdown()
    logger.info("API shutdown complete")


app = FastAPI(
    title="Reelflow API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.exception_handler(ReelflowError)
async def reelflow_exception_handler(request: Request, exc: ReelflowError):
    """Map orchestrator errors to HTTP status codes."""
    code = status_code_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
    return JSONResponse(status_code=code, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Unexpected failures become a bare 500 with no traceback."""
    logger.exception(f"{request.method} {request.url.path} raised {type(exc).__name__}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})
