"""
ASGI entry point: builds the FleetSync API and wires the import pipeline into it.

Run with ``uvicorn app.main:app``.
"""
import logging

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.router import api_router
from app.api.v1.dependencies import get_monitor
from app.core.config import settings
from app.core.events import shutdown_event_handler, startup_event_handler
from app.core.exceptions import FleetSyncException
from app.services.health.monitor import HealthMonitor

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("fleetsync")


def error_envelope(status_code: int, code: str, message, details=None, headers=None) -> JSONResponse:
    """Every API error, whether raised by a service or by FastAPI, has this body."""
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "code": code, "message": message, "details": details},
        headers=headers,
    )


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(FleetSyncException)
    async def fleetsync_exception_handler(request: Request, exc: FleetSyncException):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
        return error_envelope(exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        # 401s carry WWW-Authenticate
        return error_envelope(
            exc.status_code, f"HTTP_{exc.status_code}", exc.detail,
            headers=getattr(exc, "headers", None),
        )


def create_app() -> FastAPI:
    """Assemble the API: docs under /api, pipeline lifecycle hooks, routers."""
    application = FastAPI(
        title=settings.PROJECT_NAME,
        description=settings.PROJECT_DESCRIPTION,
        version=settings.VERSION,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    if settings.BACKEND_CORS_ORIGINS:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Startup purges expired backups; shutdown pauses running imports
    application.add_event_handler("startup", startup_event_handler)
    application.add_event_handler("shutdown", shutdown_event_handler)

    register_error_handlers(application)
    application.include_router(api_router, prefix=settings.API_PREFIX)

    @application.get("/", tags=["Health"])
    async def root(monitor: HealthMonitor = Depends(get_monitor)):
        """Liveness, plus the GP51 status the import pipeline currently sees."""
        return {
            "status": "ok",
            "service": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "gp51": monitor.status.value,
        }

    return application


app = create_app()
