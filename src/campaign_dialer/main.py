"""FastAPI application entry point."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from campaign_dialer import __version__
from campaign_dialer.api import compliance, dispatch, health, jobs, realtime, webhooks
from campaign_dialer.api.rate_limits import limiter
from campaign_dialer.config import Settings, get_settings, validate_production_settings
from campaign_dialer.core.exceptions import ConfigurationError, DialerError
from campaign_dialer.dependencies import Services, build_services, start_services, stop_services
from campaign_dialer.log import get_logger, setup_logging

log = get_logger(__name__)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "message": "Too many requests. Please try again later.",
            "detail": str(exc.detail),
        },
    )


def dialer_exception_handler(request: Request, exc: DialerError) -> JSONResponse:
    """Render domain errors with their own status code."""
    if exc.status_code >= 500:
        log.error("Request failed", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Consistent error format across all HTTP errors."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": _status_code_to_error_type(exc.status_code),
            "message": str(exc.detail),
            "status_code": exc.status_code,
        },
        headers=getattr(exc, "headers", None),
    )


def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        errors.append({
            "field": field or "request",
            "message": error["msg"],
            "type": error["type"],
        })

    return JSONResponse(
        status_code=422,
        content={
            "error": "validation_error",
            "message": "Request validation failed",
            "details": errors,
        },
    )


def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unexpected errors; hide details outside debug mode."""
    log.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
    )

    services: Services | None = getattr(request.app.state, "services", None)
    debug = services.settings.debug if services else False
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": str(exc) if debug else "An internal error occurred",
        },
    )


def _status_code_to_error_type(status_code: int) -> str:
    error_types = {
        400: "bad_request",
        401: "unauthorized",
        403: "forbidden",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        422: "validation_error",
        429: "rate_limit_exceeded",
        500: "internal_error",
        502: "bad_gateway",
        503: "service_unavailable",
    }
    return error_types.get(status_code, "error")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start every component on startup and stop them in reverse on shutdown."""
    services: Services = app.state.services
    settings = services.settings

    log.info(
        "Starting Campaign Dialer",
        version=__version__,
        environment=settings.environment,
        provider=services.provider.name,
    )
    await start_services(services)
    log.info(
        "Campaign Dialer started",
        dispatch_enabled=settings.dispatch.enabled,
        jobs_enabled=settings.jobs.enabled,
    )

    yield

    log.info("Shutting down Campaign Dialer")
    await stop_services(services)
    log.info("Campaign Dialer stopped")


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Defaults to ``get_settings()``
        services: Prebuilt component registry (tests inject doubles here)
    """
    settings = settings or (services.settings if services else get_settings())
    setup_logging(
        level=settings.log_level,
        json_output=settings.log_json,
        service_name="campaign-dialer",
        environment=settings.environment,
    )

    problems = validate_production_settings(settings)
    if problems:
        raise ConfigurationError(
            "Invalid production configuration", details={"errors": problems}
        )

    app = FastAPI(
        title="Campaign Dialer",
        description="Outbound voice-call campaign dispatch, compliance and call tracking",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.state.services = services or build_services(settings)

    # Rate limiting
    app.state.limiter = limiter

    # Exception handlers (most specific first)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(DialerError, dialer_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Cannot use wildcard origins with credentials
    cors_origins = (
        [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ]
        if settings.debug
        else []
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(webhooks.router, prefix="/api/v1", tags=["Webhooks"])
    app.include_router(realtime.router, prefix="/api/v1/ws", tags=["Realtime"])
    app.include_router(dispatch.router, prefix="/api/v1")
    app.include_router(jobs.router, prefix="/api/v1")
    app.include_router(compliance.router, prefix="/api/v1")

    return app


def run() -> None:
    """Run the API server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "campaign_dialer.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
