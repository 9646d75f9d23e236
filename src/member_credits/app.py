from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Mapping, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.middleware import ActionMeteringMiddleware
from .api.router import router
from .config import settings
from .container import ServiceContainer, build_container
from .errors import (
    AuthError,
    ConfigurationError,
    InsufficientCreditsError,
    NotFoundError,
    PersistenceError,
)
from .models.api_models import ErrorResponse


logger = logging.getLogger(__name__)

ADMIN_TOKEN_SWEEP_INTERVAL_SECONDS = 60.0


def _error(status_code: int, error: str, message: str | None = None, code: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=error, message=message, code=code)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthError)
    async def _auth_error(request: Request, exc: AuthError) -> JSONResponse:
        return _error(exc.status_code or 401, exc.message)

    @app.exception_handler(ConfigurationError)
    async def _configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
        logger.error("Configuration error on %s: %s", request.url.path, exc)
        return _error(500, "Server configuration error", str(exc))

    @app.exception_handler(InsufficientCreditsError)
    async def _insufficient(request: Request, exc: InsufficientCreditsError) -> JSONResponse:
        return _error(
            402,
            "Insufficient credits",
            f"required {exc.required}, available {exc.available}",
            code="INSUFFICIENT_CREDITS",
        )

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(404, "Not found", str(exc))

    @app.exception_handler(PersistenceError)
    async def _persistence(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("Persistence error on %s: %s", request.url.path, exc)
        return _error(500, "Database error", str(exc))

    @app.exception_handler(ValueError)
    async def _value_error(request: Request, exc: ValueError) -> JSONResponse:
        return _error(400, "Invalid request", str(exc))


async def _sweep_admin_tokens(container: ServiceContainer, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        removed = await container.admin_tokens.sweep()
        if removed:
            logger.debug("Swept %d expired admin token(s)", removed)


def create_app(
    container: Optional[ServiceContainer] = None,
    metered_paths: Optional[Mapping[str, Tuple[str, int]]] = None,
    sweep_interval: float = ADMIN_TOKEN_SWEEP_INTERVAL_SECONDS,
) -> FastAPI:
    """
    Build the HTTP app around a service container. Without one, services are
    wired from the environment settings.
    """
    if container is None:
        logging.basicConfig(level=settings.LOG_LEVEL)
        container = build_container(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        ensure_indexes = getattr(container.db, "ensure_indexes", None)
        if ensure_indexes is not None:
            await ensure_indexes()
        sweeper = asyncio.create_task(_sweep_admin_tokens(container, sweep_interval))
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            await container.reconciliation.wait_for_background_tasks()

    app = FastAPI(title="Member credits", lifespan=lifespan)
    app.state.container = container
    _install_error_handlers(app)
    app.include_router(router)

    if metered_paths:
        app.add_middleware(
            ActionMeteringMiddleware,
            metering=lambda: app.state.container.metering,
            metered_paths=metered_paths,
        )
    return app
