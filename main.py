"""
FastAPI application entry point for the object removal service.
"""

# Load .env before anything reads settings
from dotenv import load_dotenv
load_dotenv()

import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from retouch.api.removal import router as removal_router
from retouch.config import get_settings
from retouch.services.inpaint_client import RemoteInpaintClient
from retouch.services.quota_service import QuotaStorage, SqlQuotaStorage, UsageQuotaTracker

logger = logging.getLogger(__name__)


def create_app(
    quota_storage: Optional[QuotaStorage] = None,
    remote_client: Optional[RemoteInpaintClient] = None,
    init_database: bool = True,
) -> FastAPI:
    """Create and configure FastAPI application."""

    settings = get_settings()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description=(
            "Object removal for photos: brush strokes are turned into soft masks and filled "
            "by spot removal, remote AI inpainting or local PatchMatch synthesis."
        ),
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    cors_origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins if cors_origins else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(removal_router)

    app.state.quota_tracker = UsageQuotaTracker(quota_storage or SqlQuotaStorage())
    app.state.remote_client = remote_client or RemoteInpaintClient()

    @app.on_event("startup")
    async def startup_event():
        """Initialize logging and the database on startup."""
        from retouch.logging_config import setup_logging
        setup_logging(log_dir=settings.LOG_DIR, log_level=settings.LOG_LEVEL)

        if not init_database:
            return
        try:
            logger.info("Initializing database...")
            from retouch.database import init_db
            init_db()
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on shutdown."""
        try:
            from retouch.database import close_db
            close_db()
        except Exception as e:
            logger.warning(f"Error closing database: {e}")

    return app


# Application instance
app = create_app()


def run():
    """Run the application with uvicorn."""
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )


if __name__ == "__main__":
    run()
