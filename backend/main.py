from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import tasks
from core.config import EngineConfig, Settings, get_settings
from core.database import build_engine, build_session_factory, create_tables
from core.errors import register_error_handlers
from core.locks import LearnerLocks
from core.logging import configure_logging, get_logger
from core.middleware import RequestLoggingMiddleware
from engines.content import OpenAIContentGenerator
from engines.pipeline import TaskPipeline
from stores.sql import SqlContentRepository, SqlProfileStore

log = get_logger(__name__)

VERSION = "0.1.0"


def create_app(settings: Settings | None = None, pipeline: TaskPipeline | None = None) -> FastAPI:
    """Build the API. A prebuilt ``pipeline`` skips database setup entirely."""
    settings = settings or get_settings()
    configure_logging(
        level=settings.LOG_LEVEL,
        json_logs=settings.LOG_JSON,
        log_sql=settings.LOG_SQL,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("startup", message="Tessera engine starting up")
        if pipeline is not None:
            app.state.pipeline = pipeline
            yield
            log.info("shutdown", message="Tessera engine shutting down")
            return

        engine = build_engine(settings)
        await create_tables(engine)
        log.info("database_connected", message="Database tables initialized")
        factory = build_session_factory(engine)
        app.state.pipeline = TaskPipeline(
            repository=SqlContentRepository(factory),
            store=SqlProfileStore(factory),
            generator=OpenAIContentGenerator(settings) if settings.content_generation_enabled else None,
            locks=LearnerLocks(),
            config=EngineConfig.from_settings(settings),
        )
        try:
            yield
        finally:
            log.info("shutdown", message="Tessera engine shutting down")
            await engine.dispose()
            log.debug("database_disposed", message="Database connections closed")

    app = FastAPI(
        title="Tessera Engine",
        description="Adaptive multi-object task generation with IRT ability calibration",
        version=VERSION,
        lifespan=lifespan,
    )

    # Register structured error handlers
    register_error_handlers(app)

    # Middleware (order matters: last added = first executed)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(tasks.router, prefix="/api/tasks", tags=["tasks"])

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "version": VERSION}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    log.info("server_config", host=settings.BACKEND_HOST, port=settings.BACKEND_PORT, debug=settings.APP_DEBUG)
    uvicorn.run(
        "main:app",
        host=settings.BACKEND_HOST,
        port=settings.BACKEND_PORT,
        reload=settings.APP_DEBUG,
        log_config=None,  # Disable uvicorn's default logging, we handle it
    )
