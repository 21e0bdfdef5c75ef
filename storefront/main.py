"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from structlog import get_logger

from storefront.api.dependencies import Services, build_services
from storefront.api.routes import gateway_router, router
from storefront.api.security import CsrfMiddleware
from storefront.config import Settings, settings
from storefront.db.session import close_engines, get_engine
from storefront.exceptions import RateLimitedError, StorefrontError
from storefront.observability import log_context, metrics, setup_logging, setup_tracing
from storefront.observability.tracing import instrument_fastapi, instrument_sqlalchemy

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Applies migrations when a database is configured and wires services,
    unless a test already placed a container on app.state.
    """
    app_settings: Settings = app.state.settings
    logger.info(
        "application_starting",
        service=app_settings.api_title,
        version=app_settings.api_version,
        environment=app_settings.environment,
        gateway="sandbox" if app_settings.is_sandbox_gateway else "production",
        turnstile_enabled=app_settings.turnstile_enable,
        confirm_with_query=app_settings.payuni_confirm_with_query,
        tracing_enabled=app_settings.tracing_enabled,
        metrics_enabled=app_settings.metrics_enabled,
    )

    if app_settings.database_url:
        from storefront.db.migration_runner import run_migrations

        await asyncio.to_thread(run_migrations, app_settings.database_url)
        instrument_sqlalchemy(get_engine())

    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(app_settings)

    yield

    logger.info("application_shutting_down")
    services: Services = app.state.services
    await services.close()
    if app_settings.database_url:
        await close_engines()
        logger.info("database_engines_closed")


async def storefront_exception_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    """
    Map domain errors to `{error}` bodies.

    Production callers only ever see the class's public message; development
    responses carry the detailed one.
    """
    app_settings: Settings = request.app.state.settings

    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request_rejected",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
        status_code=exc.status_code,
    )
    metrics.record_error(type(exc).__name__, request.url.path)

    message = exc.public_message if app_settings.is_production else str(exc)
    headers = {}
    if isinstance(exc, RateLimitedError):
        message = exc.public_message
        headers["Retry-After"] = str(exc.retry_after_seconds)

    return JSONResponse(status_code=exc.status_code, content={"error": message}, headers=headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log detailed validation errors for debugging."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (ctx may contain non-serializable objects)
    sanitized_errors = []
    for error in errors:
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    app_settings: Settings = request.app.state.settings
    if app_settings.is_production:
        return JSONResponse(status_code=422, content={"error": "Invalid request"})
    return JSONResponse(
        status_code=422,
        content={"error": "Invalid request", "detail": sanitized_errors},
    )


# Proxy headers middleware - trust X-Forwarded-Proto from the reverse proxy
class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to handle X-Forwarded-* headers from reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto
        return await call_next(request)


async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    method = request.method

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=request.url.path)
        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            metrics.record_http_request(request.url.path, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")
            logger.error(
                "request_failed",
                method=method,
                path=request.url.path,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise

        duration = time.time() - start_time
        # Label by route template so tokens and trade numbers don't explode cardinality
        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        metrics.record_http_request(endpoint, method, response.status_code, duration)
        logger.info(
            "request_completed",
            method=method,
            path=request.url.path,
            status_code=response.status_code,
            duration_seconds=duration,
        )
        return response


def create_app(
    app_settings: Settings = settings,
    services: Services | None = None,
) -> FastAPI:
    """Build the FastAPI application."""
    app = FastAPI(
        title=app_settings.api_title,
        version=app_settings.api_version,
        description=app_settings.api_description,
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.services = services

    app.add_exception_handler(StorefrontError, storefront_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]

    setup_tracing()
    instrument_fastapi(app)

    # Innermost first: CSRF runs after CORS preflight handling and proxy fixes
    app.add_middleware(
        CsrfMiddleware,
        cookie_name=app_settings.csrf_cookie_name,
        header_name=app_settings.csrf_header_name,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", app_settings.csrf_header_name, "X-Request-ID"],
    )
    app.add_middleware(ProxyHeadersMiddleware)
    app.middleware("http")(logging_middleware)

    app.include_router(router)
    app.include_router(gateway_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "service": app_settings.api_title,
            "version": app_settings.api_version,
            "status": "running",
        }

    if app_settings.metrics_enabled:

        @app.get("/metrics")
        async def metrics_endpoint() -> Response:
            """Prometheus metrics endpoint."""
            return PlainTextResponse(generate_latest())

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "storefront.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
    )
