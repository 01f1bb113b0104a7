"""regmirror - local cache of a private container registry."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from regmirror.api import api_router
from regmirror.config import Settings
from regmirror.db import AsyncSessionLocal, init_db
from regmirror.services.deletion import DeletionCoordinator
from regmirror.services.registry_cache import RegistryCache
from regmirror.services.sync import RegistrySyncService

settings = Settings.from_env()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info(f"Starting regmirror for registry {settings.registry_url}...")
    if settings.public_api_url:
        logger.info(f"Public API URL: {settings.public_api_url}")

    await init_db()
    logger.info("Database initialized")

    registry_cache = RegistryCache(logger=logging.getLogger("regmirror.cache"))
    sync_service = RegistrySyncService(
        settings,
        AsyncSessionLocal,
        cache=registry_cache,
        logger=logging.getLogger("regmirror.sync"),
    )
    app.state.registry_cache = registry_cache
    app.state.sync_service = sync_service
    app.state.deletion_coordinator = DeletionCoordinator(
        settings,
        resync=sync_service.sync_now,
        logger=logging.getLogger("regmirror.delete"),
    )

    await sync_service.start()
    logger.info("Registry sync service started")

    yield

    await sync_service.stop()
    logger.info("Shutting down regmirror...")


app = FastAPI(
    title="regmirror",
    description="Browsable local cache of a container registry",
    lifespan=lifespan,
)
app.include_router(api_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
