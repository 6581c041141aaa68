"""
Apparel Design Pipeline - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Injected job store, artifact storage and external API clients
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from design_pipeline.core.config import Settings, settings as default_settings
from design_pipeline.core.logging import setup_logging, get_logger
from design_pipeline.core.exceptions import register_exception_handlers
from design_pipeline.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from design_pipeline.core.storage import IStorage, LocalStorage
from design_pipeline.modules.designs.store import IJobStore, InMemoryJobStore
from design_pipeline.pipeline.clients import (
    IGenerativeImageClient,
    IPostProcessingClient,
    GeminiImageClient,
    PicsartClient
)
from design_pipeline.pipeline.orchestrator import PipelineOrchestrator
from design_pipeline.pipeline.runner import PipelineRunner
from design_pipeline.api.v1 import api_v1_router

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    job_store: Optional[IJobStore] = None,
    storage: Optional[IStorage] = None,
    generation_client: Optional[IGenerativeImageClient] = None,
    post_processing_client: Optional[IPostProcessingClient] = None
) -> FastAPI:
    """
    Build the application. Collaborators that are not passed in are built
    from settings when the app starts.
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler - startup and shutdown."""
        logger.info(
            "application_starting",
            app_name=settings.APP_NAME,
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT
        )

        gemini = generation_client or GeminiImageClient.from_settings(settings)
        picsart = post_processing_client or PicsartClient.from_settings(settings)

        if not settings.GEMINI_API_KEY and generation_client is None:
            logger.warning("gemini_api_key_missing", message="Generation requests will fail until GEMINI_API_KEY is set")
        if picsart is None:
            logger.warning("post_processing_disabled", message="PICSART_API_KEY is not set; background removal and upscaling are skipped")

        app.state.settings = settings
        app.state.job_store = job_store or InMemoryJobStore()
        app.state.storage = storage or LocalStorage(base_path=settings.LOCAL_STORAGE_PATH)

        orchestrator = PipelineOrchestrator.from_settings(
            settings,
            store=app.state.job_store,
            storage=app.state.storage,
            generation_client=gemini,
            post_processing_client=picsart
        )
        app.state.runner = PipelineRunner(orchestrator, timeout=settings.PIPELINE_TIMEOUT_SECONDS)

        set_app_info(version=settings.APP_VERSION, environment=settings.ENVIRONMENT)
        logger.info(
            "application_ready",
            background_removal_default=settings.ENABLE_BG_REMOVAL,
            post_processing_enabled=picsart is not None
        )

        yield

        logger.info("application_shutting_down")
        await app.state.runner.shutdown()
        await gemini.aclose()
        if picsart is not None:
            await picsart.aclose()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title=settings.APP_NAME,
        description="""
        Turns an uploaded reference image into an apparel-ready design:

        1. **Generation** - Gemini image model with a fixed design brief
        2. **Background Removal** (optional) - Picsart
        3. **2x Upscaling** - Picsart

        Enhancement failures fall back to the best earlier artifact.
        """,
        version=settings.APP_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_timing(request: Request, call_next):
        """Track request timing for metrics."""
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(duration)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code
        ).inc()

        response.headers["X-Process-Time"] = str(duration)
        return response

    register_exception_handlers(app)
    app.include_router(api_v1_router)

    @app.get("/", tags=["root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/api/docs",
            "api_v1": "/api/v1",
            "metrics": "/api/v1/metrics"
        }

    @app.get("/health", tags=["health"])
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": settings.APP_VERSION
        }

    return app


setup_logging(
    log_level=default_settings.LOG_LEVEL,
    json_format=default_settings.LOG_FORMAT_JSON
)
app = create_app()


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "design_pipeline.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
