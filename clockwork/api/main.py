"""
clockwork.api.main — FastAPI application entry point
=====================================================

Run with::

    uvicorn clockwork.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from clockwork.api.deps import get_cache, get_engine  # noqa: E402
from clockwork.api.routes.achievements import router as achievements_router  # noqa: E402
from clockwork.api.routes.admin import router as admin_router  # noqa: E402
from clockwork.api.routes.public import router as public_router  # noqa: E402
from clockwork.engine.errors import (  # noqa: E402
    AlreadyClaimed,
    NotCompleted,
    NotFound,
    StoreConflict,
)

logger = logging.getLogger(__name__)

# Seconds a client should wait before retrying after a StoreConflict.
RETRY_AFTER_SECONDS = 1


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine and catalog."""
    engine = get_engine()
    get_cache()
    logger.info("Clockwork API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Clockwork API shutting down")


app = FastAPI(
    title="Clockwork Achievements API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(public_router, prefix="/api")
app.include_router(achievements_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


# ---------------------------------------------------------------------------
# Domain errors → HTTP
# ---------------------------------------------------------------------------
@app.exception_handler(NotFound)
async def _not_found(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(NotCompleted)
async def _not_completed(request: Request, exc: NotCompleted):
    return JSONResponse(status_code=409, content={"detail": str(exc), "code": "not_completed"})


@app.exception_handler(AlreadyClaimed)
async def _already_claimed(request: Request, exc: AlreadyClaimed):
    return JSONResponse(status_code=409, content={"detail": str(exc), "code": "already_claimed"})


@app.exception_handler(StoreConflict)
async def _store_conflict(request: Request, exc: StoreConflict):
    logger.warning("Store conflict on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc), "code": "store_conflict"},
        headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
    )


@app.get("/api/health")
def health():
    return {"status": "ok"}
