"""
FastAPI application for the payout core.

- request id tracking and structured request logs
- domain errors mapped to their HTTP status
- services built once per process and shared by every route
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from payout_core import __version__
from payout_core.config import Settings, get_settings
from payout_core.container import Container, build_container
from payout_core.domain.exceptions import PayoutCoreError
from payout_core.monitoring.logging import setup_logging

from .routes import (
    charge_router,
    event_router,
    monitoring_router,
    refund_router,
    settlement_router,
    trust_router,
)

logger = structlog.get_logger(__name__)


def create_app(container: Optional[Container] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Create the API application.

    Args:
        container: Prebuilt services (built from settings on startup when omitted)
        settings: Settings override

    Returns:
        FastAPI: Configured application
    """
    settings = settings or (container.settings if container else get_settings())
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        services = container or build_container(settings)
        app.state.container = services
        logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)
        await services.start()

        yield

        logger.info("application_shutdown")
        await services.close()

    app = FastAPI(
        title="Payout Core",
        description=(
            "Money core for creator platforms: routing, charging, trust scoring, "
            "refunds, disputes and settlement reconciliation."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Add a request id to the log context and the response headers."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response
        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(PayoutCoreError)
    async def payout_core_error_handler(request: Request, exc: PayoutCoreError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "request_rejected",
            error_code=exc.code,
            error=exc.message,
            status_code=exc.status_code,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": {
                    "code": "invalid_request",
                    "message": "Request body failed validation",
                    "details": {"errors": exc.errors()},
                }
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                    "details": {},
                }
            },
        )

    app.include_router(charge_router)
    app.include_router(refund_router)
    app.include_router(trust_router)
    app.include_router(settlement_router)
    app.include_router(event_router)
    app.include_router(monitoring_router)
    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "payout_core.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
