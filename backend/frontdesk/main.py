"""
Frontdesk AI Receptionist Backend - FastAPI Application Entry Point

Answers clinic phone lines with an AI voice agent:
- Call admission (bridge to the voice session or route to a fallback)
- Tool dispatch to the clinic's PMS or calendar, with HIPAA audit trail
- PMS credential lifecycle
"""

import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware

from .api import cron_router, health_router, tools_router, voice_router, voice_session_router
from .core.config import settings
from .core.database import engine
from .core.exceptions import AuditWriteError
from .services import speech
from .services.telephony import error_twiml


logger = logging.getLogger(__name__)


# =============================================================================
# Performance Monitoring Middleware
# =============================================================================

class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """
    Middleware to track API response times and log slow requests.

    The voice platform waits on tool calls mid-conversation, so slow
    requests are logged as warnings. Adds X-Response-Time to all responses.
    """

    SLOW_REQUEST_THRESHOLD_MS = 2000

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()

        response = await call_next(request)

        process_time_ms = (time.perf_counter() - start_time) * 1000
        response.headers["X-Response-Time"] = f"{process_time_ms:.2f}ms"

        if process_time_ms > self.SLOW_REQUEST_THRESHOLD_MS:
            logger.warning(
                f"Slow request: {request.method} {request.url.path} "
                f"took {process_time_ms:.2f}ms"
            )

        if settings.debug:
            logger.debug(f"{request.method} {request.url.path} - {process_time_ms:.2f}ms")

        return response


# =============================================================================
# Application Lifespan
# =============================================================================

def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Configures logging and refuses to start in production with
    insecure default secrets.
    """
    configure_logging()
    logger.info(f"Starting {settings.app_name} v{settings.app_version} ({settings.environment})")

    _insecure_secrets = []
    if settings.encryption_key.rstrip("0") == "dev-encryption-key-32bytes!":
        _insecure_secrets.append("ENCRYPTION_KEY")
    if not settings.vapi_webhook_secret and not settings.backend_api_key:
        _insecure_secrets.append("VAPI_WEBHOOK_SECRET/BACKEND_API_KEY")

    if _insecure_secrets and settings.is_production:
        logger.critical(
            f"Insecure secrets in production: {', '.join(_insecure_secrets)}. Refusing to start."
        )
        sys.exit(1)
    elif _insecure_secrets:
        logger.warning(f"Dev-default or missing secrets in use: {', '.join(_insecure_secrets)}")

    yield

    logger.info("Shutting down...")
    engine.dispose()


# =============================================================================
# Application Factory
# =============================================================================

def create_application() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "AI voice receptionist backend: call admission, tool dispatch "
            "to practice-management and calendar backends, PMS credential lifecycle."
        ),
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    app.add_middleware(PerformanceMonitoringMiddleware)

    app.include_router(health_router)
    app.include_router(voice_router)
    app.include_router(tools_router)
    app.include_router(voice_session_router)
    app.include_router(cron_router)

    register_exception_handlers(app)
    return app


# =============================================================================
# Exception Handlers
# =============================================================================

def _is_tool_call(request: Request) -> bool:
    return request.url.path.startswith("/tools/")


def _is_voice_webhook(request: Request) -> bool:
    return request.url.path.startswith("/voice/")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuditWriteError)
    async def audit_write_error_handler(request: Request, exc: AuditWriteError):
        """
        The audit trail failed after the tool ran.

        The caller still gets the computed result; the failure is
        surfaced to operators at CRITICAL.
        """
        logger.critical(f"Audit trail write failed on {request.url.path}: {exc}")
        if exc.result is not None:
            return JSONResponse(status_code=status.HTTP_200_OK, content=exc.result.to_response())
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"error": "internal_error", "message": speech.INTERNAL_ERROR_MESSAGE},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        """
        Handle ValueError exceptions.

        Returns user-friendly error response without exposing internals.
        """
        if _is_tool_call(request):
            return JSONResponse(
                status_code=status.HTTP_200_OK,
                content={"error": "invalid_request", "message": speech.INTERNAL_ERROR_MESSAGE},
            )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "validation_error", "message": str(exc)},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """
        Handle unhandled exceptions.

        Logs the error type and returns a generic message (never PHI or
        internals). Tool calls still get a speakable message, and carrier
        webhooks still get TwiML so the caller hears an apology.
        """
        logger.error(f"Unhandled exception on {request.url.path}: {type(exc).__name__}")

        if _is_tool_call(request):
            return JSONResponse(
                status_code=status.HTTP_200_OK,
                content={"error": "internal_error", "message": speech.INTERNAL_ERROR_MESSAGE},
            )
        if _is_voice_webhook(request):
            return Response(content=error_twiml(), media_type="application/xml")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "internal_error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )


app = create_application()


# =============================================================================
# Root Endpoint
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict:
    """
    Root endpoint returning API information.
    """
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "running",
        "docs": "/docs" if settings.is_development else "disabled",
    }


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "frontdesk.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
