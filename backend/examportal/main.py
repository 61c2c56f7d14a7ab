from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from fastapi.responses import JSONResponse
import logging
import os
import time

from .core.config import settings
from .core.database import create_db_and_tables
from .core.cache import cache
from .api.v1.api import api_router
from .api.v1.endpoints.sessions import registry
from .detection.face_detector import face_detector
from .utils.file_paths import FileTypes, ensure_upload_directory, get_upload_paths

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Exam Portal API",
    description="Proctored exam sessions: timers, integrity monitoring, scoring and submission",
    version="1.0.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Warning snapshots are served from the same origin the media storage links to
base_dir, uploads_dir = get_upload_paths()
ensure_upload_directory(FileTypes.WARNING_SNAPSHOTS)
app.mount(f"/{uploads_dir}", StaticFiles(directory=os.path.join(base_dir, uploads_dir)), name="uploads")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        }
    )


@app.on_event("startup")
async def startup_event():
    """Application startup tasks"""
    logger.info("Starting Exam Portal API...")

    ensure_upload_directory(FileTypes.WARNING_SNAPSHOTS)
    logger.info("Upload directories ready")

    await create_db_and_tables()
    logger.info("Database initialized")

    if cache.enabled:
        if await cache.ahealth_check():
            logger.info("Cache connection established")
        else:
            logger.warning("Cache connection failed - running without cache")

    logger.info("Exam Portal API startup completed")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown tasks"""
    logger.info("Shutting down Exam Portal API...")
    if len(registry):
        logger.warning(f"{len(registry)} exam session(s) still live at shutdown")

    try:
        await cache.aclose()
        logger.info("Cache connections closed")
    except Exception as e:
        logger.error(f"Error closing cache connections: {e}")

    face_detector.close()
    logger.info("Exam Portal API shutdown completed")


app.include_router(api_router, prefix="/api/v1")


@app.get("/")
async def read_root():
    return {
        "message": "Welcome to the Exam Portal API!",
        "version": "1.0.0",
        "timestamp": time.time(),
    }
