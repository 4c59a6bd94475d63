# =============================================================================
# Application Entry Point — FastAPI App Factory
# =============================================================================
#
# Assembles the API:
#   - lifespan: schema bootstrap (pgvector extension + tables), engine disposal
#   - middleware: CORS for the dashboard, per-key usage logging
#   - exception handlers: every error leaves as {"error": message}
#   - routers: memories, API keys, dashboard auth, MCP
#
# Run with:
#   uvicorn app.main:app --reload
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.api import auth, keys, mcp, memories
from app.api.usage import UsageLoggingMiddleware
from app.config import settings
from app.db.engine import dispose_engine, init_db
from app.errors import MemoryApiError
from app.models.responses import HealthResponse
from app.services.usage import UsageRecorder

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    if settings.db_auto_create_schema:
        await init_db()
    logger.info(
        "%s %s started (memory store: %s, rate limiter: %s)",
        settings.app_name,
        settings.app_version,
        settings.memory_store_type,
        settings.rate_limit_backend,
    )
    yield
    await dispose_engine()


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


async def handle_memory_api_error(request: Request, exc: MemoryApiError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.message},
        headers=exc.headers(),
    )


async def handle_validation_error(
    request: Request, exc: RequestValidationError,
) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


async def handle_database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Unhandled database error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "Database operation failed"})


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "API-key scoped memory storage with semantic search, "
            "exposed over REST and the Model Context Protocol."
        ),
        lifespan=lifespan,
    )

    app.state.usage_recorder = UsageRecorder()

    app.add_middleware(UsageLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(MemoryApiError, handle_memory_api_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(SQLAlchemyError, handle_database_error)

    app.include_router(memories.router)
    app.include_router(keys.router)
    app.include_router(auth.router)
    app.include_router(mcp.router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(version=settings.app_version, service=settings.app_name)

    return app


configure_logging()
app = create_app()
