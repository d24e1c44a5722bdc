import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from app.config import Settings, get_settings
from app.api.v1 import tasks
from app.core.errors import register_exception_handlers
from app.database import create_engine, create_sessionmaker, init_db, close_db
from app.middleware.logging import LoggingMiddleware
from app.middleware.monitoring import MonitoringMiddleware
from app.middleware.request_id import RequestIDMiddleware, RequestIDLogFilter
from app.middleware.security import SecurityHeadersMiddleware
from app.monitoring import metrics
from app.services.fetch_service import ContentFetcher
from app.services.health_service import get_detailed_health
from app.services.image_service import VariantRenderer
from app.services.task_service import TaskOrchestrator, TaskQueryService
from app.services.task_store import TaskStore

logger = logging.getLogger(__name__)

USER_AGENT = "ImageVariantTasks/1.0"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else settings.LOG_LEVEL.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(RequestIDLogFilter())


async def init_state(app: FastAPI, settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> None:
    """Build the store, fetcher, renderer and services and hang them on app.state"""
    settings.ensure_directories()

    engine = create_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)
    await init_db(engine)
    store = TaskStore(create_sessionmaker(engine))

    if http_client is None:
        http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.FETCH_TIMEOUT_SECONDS, connect=10.0),
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
        )

    fetcher = ContentFetcher(
        http_client,
        tmp_dir=settings.TMP_DIR,
        max_download_mb=settings.MAX_DOWNLOAD_MB,
        allowed_types=settings.ALLOWED_IMAGE_TYPES,
    )
    renderer = VariantRenderer(
        settings.OUTPUT_DIR,
        url_prefix=settings.OUTPUT_URL_PREFIX,
        widths=settings.TARGET_WIDTHS,
        quality=settings.JPEG_QUALITY,
    )
    query_service = TaskQueryService(store, resolution_order=[str(w) for w in settings.TARGET_WIDTHS])
    orchestrator = TaskOrchestrator(
        store,
        fetcher,
        renderer,
        query_service,
        price_range=(settings.PRICE_MIN, settings.PRICE_MAX),
        processing_timeout=settings.PROCESSING_TIMEOUT_SECONDS,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store
    app.state.http_client = http_client
    app.state.query_service = query_service
    app.state.orchestrator = orchestrator


async def close_state(app: FastAPI) -> None:
    settings: Settings = app.state.settings
    await app.state.orchestrator.shutdown(grace=settings.SHUTDOWN_GRACE_SECONDS)
    await app.state.http_client.aclose()
    await close_db(app.state.engine)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        await init_state(app, settings)
        logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started ({settings.ENVIRONMENT})")
        yield
        await close_state(app)
        logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.APP_NAME,
        description="""
    Derive fixed-width JPEG variants from a source image in the background.

    * `POST /tasks` with `imageUrl` or `imageFile` (data URI) creates a pending task
    * `GET /tasks/{taskId}` reports status, price and, once completed, the images
    * Variants are served from `/output/<name>/<width>/<md5>.jpg`
    """,
        version=settings.APP_VERSION,
        openapi_tags=[
            {"name": "tasks", "description": "Image processing tasks"},
            {"name": "monitoring", "description": "System monitoring"},
        ],
        lifespan=lifespan,
    )

    register_exception_handlers(app, debug=settings.DEBUG)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )
    app.add_middleware(MonitoringMiddleware)
    app.add_middleware(
        SecurityHeadersMiddleware,
        hsts=settings.ENVIRONMENT == "production",
        static_prefix=settings.OUTPUT_URL_PREFIX,
    )
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.include_router(tasks.router, prefix="/tasks", tags=["tasks"])

    if settings.EXPOSE_METRICS:
        app.include_router(metrics.router, prefix="/internal", tags=["monitoring"])

    app.mount(
        settings.OUTPUT_URL_PREFIX,
        StaticFiles(directory=settings.OUTPUT_DIR, check_dir=False),
        name="output",
    )

    @app.get("/health", tags=["monitoring"])
    async def health_check(request: Request):
        state = request.app.state
        health = await get_detailed_health(
            state.store.session_factory,
            settings.OUTPUT_DIR,
            settings.TMP_DIR,
            in_flight=state.orchestrator.in_flight,
        )
        health["version"] = settings.APP_VERSION
        return JSONResponse(status_code=200 if health["status"] == "ok" else 503, content=health)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=get_settings().PORT, reload=get_settings().DEBUG)
