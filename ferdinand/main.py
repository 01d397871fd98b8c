import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .core.logging_config import setup_logging
from .core.object_storage import ensure_buckets_exist
from .core.db import engine
from .services.exceptions import DriveAccessError, RateLimitedError

# Import the Base object and all models to ensure they are registered with SQLAlchemy's metadata
from .models import Base

# Set up logging as the first step
setup_logging()
logger = logging.getLogger(__name__)

def create_tables():
    """
    Creates all database tables based on the current models.
    This is a non-destructive operation: it only creates tables that do not already exist.
    """
    logger.info("Ensuring all database tables exist...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables checked.")

app = FastAPI(
    title="Ferdinand Drive Access Core",
    description="Credential vault, permission engine and secure file broker for Google Drive assets.",
    version="0.1.0"
)

@app.exception_handler(DriveAccessError)
def drive_access_error_handler(request: Request, exc: DriveAccessError):
    headers = {}
    if isinstance(exc, RateLimitedError) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

@app.on_event("startup")
def on_startup():
    """
    Actions to perform on application startup.
    """
    logger.info("Application is starting up...")

    # 1. Ensure database tables are created
    create_tables()

    # 2. Ensure Minio buckets exist
    try:
        ensure_buckets_exist()
    except Exception as e:
        # Local originals are unavailable until MinIO is reachable; Drive access still works
        logger.error("Could not connect to Minio or create buckets on startup: %s", e)
    logger.info("Startup actions finished.")


@app.get("/", tags=["Root"])
def read_root():
    """
    A simple health check endpoint.
    """
    return {"status": "ok", "message": "Ferdinand Drive access core is running"}

from .routers import admin, drive_auth, secure_access, thumbnails

app.include_router(drive_auth.router, prefix="/api/v1/drive", tags=["Drive Connection"])
app.include_router(secure_access.router, prefix="/api/v1/drive", tags=["Secure Access"])
app.include_router(thumbnails.router, prefix="/api/v1/drive", tags=["Thumbnails"])
app.include_router(admin.router, prefix="/api/v1/drive", tags=["Drive Administration"])
app.include_router(secure_access.proxy_router, prefix="/api/v1/proxy", tags=["Secure Access"])
