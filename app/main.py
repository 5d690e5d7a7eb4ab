import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.v1.auth import router as auth_router
from app.api.v1.customers import router as customers_router
from app.api.v1.estimates import router as estimates_router
from app.api.v1.exports import router as exports_router
from app.api.v1.imports import router as imports_router
from app.api.v1.jobs import router as jobs_router
from app.api.v1.storage import router as storage_router
from app.core.config import Settings, get_settings
from app.core.errors import register_error_handlers
from app.core.middleware import register_middleware
from app.core.rate_limit import build_limiters
from app.db.init_db import create_schema
from app.db.session import engine

logger = logging.getLogger("moveops")


def configure_logging(level: str) -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, level.upper(), logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )


def _lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        create_schema(engine)
        if settings.is_production and not settings.COOKIE_SECURE:
            logger.warning("COOKIE_SECURE is disabled in production")
        logger.info("startup app_env=%s addr=%s", settings.APP_ENV, settings.API_ADDR)
        yield

    return lifespan


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0",
        description="MoveOps - customers, estimates, jobs, calendar and storage",
        lifespan=_lifespan(settings),
    )
    app.state.settings = settings
    app.state.rate_limiters = build_limiters(settings.RATE_LIMIT_MAX_IPS)

    register_error_handlers(app)
    register_middleware(app, settings)

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    app.include_router(auth_router, prefix="/api")
    app.include_router(customers_router, prefix="/api")
    app.include_router(estimates_router, prefix="/api")
    app.include_router(jobs_router, prefix="/api")
    app.include_router(storage_router, prefix="/api")
    app.include_router(imports_router, prefix="/api")
    app.include_router(exports_router, prefix="/api")
    return app


app = create_app()
