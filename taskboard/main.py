import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from taskboard.cache.layer import cache_layer
from taskboard.core.config import get_settings
from taskboard.core.exceptions import register_exception_handlers
from taskboard.core.logging_config import configure_logging
from taskboard.database import async_session, create_db_and_tables
from taskboard.routers import auth, stats, tags, tasks, users
from taskboard.services.auth_service import AuthService

logger = logging.getLogger(__name__)


async def run_maintenance():
    """Drop expired refresh tokens and old blacklist entries."""
    async with async_session() as db:
        refresh_removed = await AuthService.cleanup_expired_refresh_tokens(db)
        blacklist_removed = await AuthService.cleanup_blacklist(db)
    logger.info(
        "Token cleanup removed %d refresh tokens and %d blacklist entries",
        refresh_removed,
        blacklist_removed,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    if settings.create_tables_on_startup:
        await create_db_and_tables()
    await cache_layer.init_cache()
    await run_maintenance()
    logger.info("Taskboard API started")
    yield
    await cache_layer.close()
    logger.info("Taskboard API stopped")


app = FastAPI(
    title="Taskboard API",
    description="Async multi-user task management API with SQLModel and a two-tier cache",
    swagger_ui_parameters={"displayRequestDuration": True},
    version="1.0.0",
    lifespan=lifespan,
)

register_exception_handlers(app)

# Include routers
app.include_router(auth.router)
app.include_router(users.router)
app.include_router(tasks.router)
app.include_router(tags.router)
app.include_router(stats.router)


@app.get("/")
async def root():
    return {
        "message": "Welcome to Taskboard API",
        "docs": "/docs",
        "version": "1.0.0",
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "cache": cache_layer.get_stats()}
