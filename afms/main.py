"""Main FastAPI application entry point."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from afms.api import health
from afms.api.routes import router
from afms.container import build_container, shutdown_container, start_container
from afms.core.config import Settings, get_settings
from afms.core.logging import Logger, configure_logging
from afms.database import build_engine, build_session_factory, init_models

logger = Logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        configure_logging(settings.LOG_LEVEL)
        logger.info("Starting AFMS core", version=settings.APP_VERSION)

        engine = build_engine(settings.DATABASE_URL)
        await init_models(engine)

        container = build_container(
            settings=settings,
            engine=engine,
            session_factory=build_session_factory(engine),
        )
        app.state.container = container
        await start_container(container)

        yield

        logger.info("Shutting down AFMS core")
        await shutdown_container(container)
        await engine.dispose()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Event store, event bus, idempotency, rules engine and read models for attendance and payroll.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    # Enable CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(router, prefix="/api", tags=["AFMS"])
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
