"""
FastAPI application entry point for CourseCove.

Every API procedure declares its authorization pipeline; the session
middleware verifies the Clerk token once per request and the pipeline
stages build on that single result.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from coursecove import __version__
from coursecove.api.routes import (
    appointment_types,
    appointments,
    memberships,
    organizations,
    pages,
    profile,
    webhooks_clerk,
)
from coursecove.config.settings import get_settings
from coursecove.database.session import get_db_session_sync
from coursecove.platform.errors import (
    CourseCoveError,
    RedirectRequired,
    coursecove_error_handler,
    redirect_required_handler,
)
from coursecove.platform.session_resolver import SessionMiddleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting CourseCove API", extra={"version": __version__})
    settings = get_settings()

    app.state.auth_configured = bool(settings.clerk_issuer_url or settings.clerk_jwks_url)
    if not app.state.auth_configured:
        logger.warning(
            "Clerk session verification not configured (CLERK_ISSUER_URL / CLERK_JWKS_URL). "
            "All requests will be treated as anonymous."
        )

    if not settings.clerk_webhook_secret:
        logger.warning("CLERK_WEBHOOK_SECRET not set; the Clerk webhook endpoint will reject deliveries")

    if not settings.database_url:
        logger.error("DATABASE_URL is not set. Procedures needing the database will return 503.")
        app.state.database_configured = False
    else:
        masked = settings.database_url.split("@")[-1] if "@" in settings.database_url else "(no host)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

    logger.info(
        "Webhook processing mode",
        extra={"mode": settings.webhook_processing_mode},
    )

    yield

    logger.info("Shutting down CourseCove API")


def create_app() -> FastAPI:
    app = FastAPI(
        title="CourseCove API",
        description="Multi-tenant scheduling backend with staged authorization and Clerk identity sync",
        version=__version__,
        lifespan=lifespan,
    )

    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SessionMiddleware)

    app.add_exception_handler(CourseCoveError, coursecove_error_handler)
    app.add_exception_handler(RedirectRequired, redirect_required_handler)

    @app.get("/health", include_in_schema=False)
    def health():
        """Liveness plus a database round trip when configured."""
        database = "not_configured"
        if get_settings().database_url:
            db_gen = get_db_session_sync()
            try:
                next(db_gen).execute(text("SELECT 1"))
                database = "ok"
            except Exception as e:
                logger.warning("Health check database query failed", extra={"error": str(e)})
                database = "error"
            finally:
                db_gen.close()
        return {"status": "healthy", "database": database, "version": __version__}

    # Clerk webhooks use Svix signature verification, not session tokens
    app.include_router(webhooks_clerk.router)
    app.include_router(profile.router)
    app.include_router(memberships.router)
    app.include_router(appointment_types.router)
    app.include_router(appointments.router)
    app.include_router(organizations.router)
    app.include_router(pages.router)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unhandled exceptions with proper logging."""
        logger.error(
            "Unhandled exception",
            extra={
                "error": str(exc),
                "error_type": type(exc).__name__,
                "path": request.url.path,
            },
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": {"code": "INTERNAL_SERVER_ERROR", "message": "An unexpected error occurred"}},
        )

    return app


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
