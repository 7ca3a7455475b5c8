import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

import httpx
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.v1.api import api_router
from core.config import get_settings
from core.error_handler import (
    ExceptionNormalizationMiddleware,
    global_exception_handler,
    setup_logging,
)
from core.exceptions import DomainError
from core.middleware import CorrelationIdMiddleware
from dependencies.db import AsyncSessionLocal, create_tables
from services.batch.adapters import (
    HttpUnitFinalizer,
    HttpUnitGenerator,
    ReadinessRegistry,
    UpstreamChapters,
)
from services.batch.job_store import BatchJobStore
from services.batch.manager import BatchJobManager
from services.streaming.client import GenerationStreamClient


logger = logging.getLogger(__name__)


def validate_cors_origins(origins: list[str]) -> list[str]:
    """Drop CORS origins that are not absolute http(s) URLs."""

    def is_valid_url(url: str) -> bool:
        parsed = urlparse(url)
        return bool(parsed.scheme in {"http", "https"} and parsed.netloc)

    validated_origins = []
    for origin in origins:
        if is_valid_url(origin):
            validated_origins.append(origin)
        else:
            logger.warning("Invalid CORS origin '%s' ignored", origin)
    return validated_origins


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    setup_logging()
    await create_tables()

    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.UPSTREAM_TIMEOUT_SECONDS, read=None)
    )
    streams = GenerationStreamClient(http_client, settings)
    chapters = UpstreamChapters(http_client, settings)
    readiness = ReadinessRegistry()
    generator = HttpUnitGenerator(streams, chapters)
    manager = BatchJobManager(
        settings,
        BatchJobStore(AsyncSessionLocal),
        generator,
        HttpUnitFinalizer(chapters, readiness),
        readiness=readiness,
        chapters=chapters,
    )
    app.state.batch_manager = manager

    resumed = await manager.reconcile_unfinished_jobs()
    if resumed:
        logger.info("Reconciled %d unfinished batch job(s)", len(resumed))
    try:
        yield
    finally:
        await manager.shutdown()
        await generator.aclose()
        await streams.aclose()
        await http_client.aclose()


settings = get_settings()

app = FastAPI(
    title=f"{settings.APP_NAME} API",
    description="Streaming chapter generation and multi-chapter batch runs",
    version="0.1.0",
    docs_url=None,  # We'll mount docs under /api/v1/docs
    redoc_url=None,
    lifespan=lifespan,
)

app.add_middleware(ExceptionNormalizationMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=validate_cors_origins(list(settings.CORS_ORIGINS)),
    allow_credentials=settings.ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(StarletteHTTPException, global_exception_handler)
app.add_exception_handler(RequestValidationError, global_exception_handler)
app.add_exception_handler(DomainError, global_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# Include API routes
app.include_router(api_router, prefix="/api/v1")


# Mount OpenAPI docs under /api/v1/docs and /api/v1/redoc
@app.get("/api/v1/docs", include_in_schema=False)
def custom_swagger_ui_html():
    return get_swagger_ui_html(
        openapi_url="/openapi.json", title=f"{settings.APP_NAME} API Docs"
    )


@app.get("/api/v1/redoc", include_in_schema=False)
def redoc_html():
    return get_redoc_html(
        openapi_url="/openapi.json", title=f"{settings.APP_NAME} API Redoc"
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
