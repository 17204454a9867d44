from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from sqlalchemy import text

from driftwatch.api.routes import drift as drift_router
from driftwatch.core.config import settings
from driftwatch.core.database import async_session, create_db_and_tables, engine, get_db
from driftwatch.core.observability import initialize_metrics, setup_tracing
from driftwatch.services.runtime import build_runtime

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # StorageUnavailable propagates and aborts startup
    await create_db_and_tables()
    runtime = build_runtime(settings, async_session)
    app.state.runtime = runtime
    await runtime.start()
    logger.info("Application started - drift engine running")
    try:
        yield
    finally:
        await runtime.stop()
        await engine.dispose()


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Drift detection and reconciliation engine",
        version=settings.VERSION,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    # Set up observability
    initialize_metrics(app)
    setup_tracing()

    app.include_router(drift_router.router, prefix=settings.API_V1_STR)

    @app.get("/api/health", tags=["Health"])
    async def health_check():
        try:
            async for db in get_db():
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"Health check could not reach storage: {str(e)}")
            return {"status": "error", "storage": "unavailable"}
        runtime = getattr(app.state, "runtime", None)
        engine_status = runtime.health.snapshot()["status"] if runtime else "starting"
        return {"status": engine_status, "storage": "ok"}

    return app


app = create_app()
