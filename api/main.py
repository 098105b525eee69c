"""
FastAPI main application for the Hali rug render API
"""
import logging
import os
import re
import sys
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

# Add api directory to path for imports
api_dir = os.path.dirname(os.path.abspath(__file__))
if api_dir not in sys.path:
    sys.path.insert(0, api_dir)

from core.config import settings  # noqa: E402
from core.database import create_tables, get_db  # noqa: E402
from core.errors import InternalError, RenderPipelineError, UpstreamServiceError  # noqa: E402
from core.logging import setup_logging  # noqa: E402
from middleware import FixedWindowRateLimiter, RateLimitMiddleware, RequestLoggingMiddleware  # noqa: E402
from routers import admin, render, usage  # noqa: E402
from services.render_service import RenderService  # noqa: E402

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting Hali Render API...")

    logger.info("=" * 60)
    logger.info("ENVIRONMENT VARIABLES CHECK")
    logger.info("=" * 60)

    openai_key = settings.openai_api_key or ""
    if openai_key:
        key_preview = f"{openai_key[:7]}...{openai_key[-4:]}" if len(openai_key) > 11 else "***"
        logger.info(f"✅ OPENAI_API_KEY is set: {key_preview}")
    else:
        logger.error("❌ OPENAI_API_KEY is NOT set - renders will fail with 'Server key is not configured.'")

    sanitized = re.sub(r":\/\/[^:]*:[^@]*@", "://***:***@", settings.database_url)
    logger.info(f"DATABASE_URL: {sanitized}")
    logger.info("=" * 60)

    await create_tables()
    logger.info("Application started")

    yield

    logger.info("Shutting down Hali Render API...")
    app.state.render_service.preparation_cache.clear()
    logger.info("Application stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        description="Rug visualization API: places a carpet photo into a room photo",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.environment == "development" else None,
        redoc_url="/redoc" if settings.environment == "development" else None,
    )

    # Process-wide state: the preparation cache and the limiter store live here
    app.state.render_service = RenderService(settings.render_pipeline_config())
    app.state.rate_limiter = FixedWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )

    # Last added runs first: logging wraps rate limiting wraps CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RateLimitMiddleware, limiter=app.state.rate_limiter)
    app.add_middleware(RequestLoggingMiddleware)

    register_exception_handlers(app)

    app.include_router(render.router, prefix="/api", tags=["render"])
    app.include_router(usage.router, prefix="/api/usage", tags=["usage"])
    app.include_router(admin.router, prefix="/api/admin", tags=["admin"])

    @app.get("/health")
    async def health_check(db: AsyncSession = Depends(get_db)):
        """Health check endpoint for load balancers"""
        try:
            await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"Health check database probe failed: {e}")
            return JSONResponse(status_code=500, content={"ok": False, "db": False, "timestamp": time.time()})
        return {"ok": True, "db": True, "version": settings.version, "timestamp": time.time()}

    return app


def register_exception_handlers(app: FastAPI):
    """Translate pipeline errors into {"code", "error"} bodies."""

    @app.exception_handler(UpstreamServiceError)
    async def upstream_error_handler(request: Request, exc: UpstreamServiceError):
        logger.warning(f"Upstream failure ({exc.code}) on {request.url.path}: {exc.message[:200]}")
        return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "error": exc.user_message})

    @app.exception_handler(InternalError)
    async def internal_error_handler(request: Request, exc: InternalError):
        content = {"code": exc.code, "error": exc.message or "Render failed."}
        if exc.attempt_id:
            content["attempt_id"] = exc.attempt_id
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RenderPipelineError)
    async def pipeline_error_handler(request: Request, exc: RenderPipelineError):
        return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "error": exc.message})


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_config=None,  # Use our custom logging
        access_log=False,  # We handle this in middleware
    )
