"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from docuvid import __version__, validate_dependencies
from docuvid.api.routes import close_executors, router
from docuvid.config import settings
from docuvid.db import init_database, shutdown

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Validate system dependencies (ffmpeg, ffprobe)
        - Initialize database schema

    Shutdown:
        - Close provider HTTP clients and database connections
    """
    logger.info("Starting docuvid API...")
    validate_dependencies()
    await init_database()
    logger.info("API startup complete")

    yield

    logger.info("Shutting down docuvid API...")
    await close_executors()
    await shutdown()
    logger.info("API shutdown complete")


app = FastAPI(
    title="Docuvid API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.server.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)

# Generated clips, narration and final videos
settings.storage.media_dir.mkdir(parents=True, exist_ok=True)
app.mount(
    settings.storage.media_url_prefix,
    StaticFiles(directory=str(settings.storage.media_dir)),
    name="media",
)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all exception handler to prevent stack traces in API responses."""
    logger.error(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )
