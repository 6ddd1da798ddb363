"""FastAPI application exposing the on-demand queue endpoints.

Run with:
    uvicorn src.apisync.sync.app:app --port 8000
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api.dependencies import close_services, init_services
from .api.router import router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Handles startup and shutdown events:
    - Startup: Build the queue engine (database pool, HTTP client, stores)
    - Shutdown: Close the HTTP client and database pool
    """
    logger.info("Starting API-Sync queue endpoints...")

    try:
        await init_services()
    except Exception as e:
        logger.error(f"Failed to initialize API-Sync services: {e}")
        raise

    yield

    logger.info("Shutting down API-Sync queue endpoints...")
    await close_services()


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Build the application; tests pass use_lifespan=False and install services themselves."""
    application = FastAPI(
        title="API-Sync Queue Engine",
        description="On-demand pull and push queue processing for API-Sync mappings.",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else None,
    )
    application.include_router(router)
    return application


app = create_app()


# Entry point for running with uvicorn
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.apisync.sync.app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
    )
