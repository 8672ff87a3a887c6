"""
Wardrobe Imagery service entrypoint.

Serves the upload, generation and status endpoints under /api/v1, plus
liveness and readiness probes. Objects written by the local storage backend
are served from /static/storage in development.
"""

import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
import redis.asyncio as redis
from sqlalchemy import text

from wardrobe_imagery.api.v1 import api_v1_router
from wardrobe_imagery.core.config import settings
from wardrobe_imagery.core.database import create_db_and_tables, engine
from wardrobe_imagery.core.exceptions import register_exception_handlers
from wardrobe_imagery.core.logging import get_logger, setup_logging
from wardrobe_imagery.core.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    set_app_info,
)

setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.LOG_FORMAT_JSON)
logger = get_logger(__name__)

API_DESCRIPTION = """
Image pipeline for wardrobe items.

* `POST /api/v1/process-image` stores an upload and removes its background,
  keeping the original when removal fails
* `POST /api/v1/generate-item-image` renders an item from a prompt, always
  background-removed
* `GET /api/v1/status/{item_id}` reports `pending`, `processing`, `completed`
  or `failed`
"""


# =============================================================================
# Lifespan
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    began = time.perf_counter()
    logger.info(
        "service_starting",
        environment=settings.ENVIRONMENT,
        version=settings.APP_VERSION,
        storage_backend=settings.STORAGE_BACKEND
    )

    if settings.AUTO_CREATE_TABLES:
        await create_db_and_tables()
        logger.info("tables_ensured")

    app.state.redis = redis.from_url(settings.REDIS_URL, decode_responses=True)
    set_app_info(version=settings.APP_VERSION, environment=settings.ENVIRONMENT)
    logger.info("service_started", elapsed_seconds=round(time.perf_counter() - began, 3))

    try:
        yield
    finally:
        await app.state.redis.aclose()
        await engine.dispose()
        logger.info("service_stopped")


app = FastAPI(
    title=settings.APP_NAME,
    description=API_DESCRIPTION,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def observe_request(request: Request, call_next):
    began = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - began

    # Label by route template so item ids don't explode cardinality
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    http_request_duration_seconds.labels(method=request.method, endpoint=endpoint).observe(elapsed)
    http_requests_total.labels(
        method=request.method, endpoint=endpoint, status=response.status_code
    ).inc()
    response.headers["X-Process-Time"] = f"{elapsed:.4f}"
    return response


register_exception_handlers(app)
app.include_router(api_v1_router)

_local_storage_root = Path(settings.LOCAL_STORAGE_PATH)
if settings.STORAGE_BACKEND.lower() == "local" and _local_storage_root.is_dir():
    app.mount("/static/storage", StaticFiles(directory=str(_local_storage_root)), name="storage")


# =============================================================================
# Probes
# =============================================================================
@app.get("/", tags=["root"])
async def root():
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/api/docs",
        "api_v1": "/api/v1",
    }


@app.get("/health", tags=["health"])
async def health():
    """Liveness: the process is up and serving."""
    return {"status": "healthy", "version": settings.APP_VERSION}


async def _redis_reachable(request: Request) -> bool:
    try:
        await request.app.state.redis.ping()
    except (redis.RedisError, OSError) as e:
        logger.warning("readiness_redis_unavailable", error=str(e))
        return False
    return True


async def _database_reachable() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("readiness_database_unavailable", error=str(e))
        return False
    return True


@app.get("/ready", tags=["health"])
async def ready(request: Request):
    """Readiness: Redis (Celery broker) and the database both answer."""
    checks: Dict[str, bool] = {
        "redis": await _redis_reachable(request),
        "database": await _database_reachable(),
    }
    is_ready = all(checks.values())
    return JSONResponse(
        status_code=200 if is_ready else 503,
        content={"ready": is_ready, "checks": checks}
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("wardrobe_imagery.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
