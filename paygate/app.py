"""FastAPI application factory — entry point for the web app."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from paygate.config import Settings, get_settings
from paygate.container import ApplicationContainer, build_container
from paygate.errors import PaygateError, RateLimited, UpstreamUnavailable
from paygate.routers import admin, offers, subscription, timer, webhooks

logger = logging.getLogger(__name__)


def _error_body(message: str, exc: Exception, settings: Settings) -> dict:
    body = {"error": message}
    if settings.debug:
        body["type"] = type(exc).__name__
    return body


def create_app(container: ApplicationContainer | None = None) -> FastAPI:
    settings = container.settings if container else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup / shutdown lifecycle."""
        engine = None
        if container is None:
            from paygate.db.session import async_session_factory, engine
            from paygate.models import Base

            # Auto-create tables for SQLite (dev mode); PostgreSQL uses Alembic
            if settings.database_url.startswith("sqlite"):
                async with engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
            app.state.container = build_container(settings, async_session_factory)
        else:
            app.state.container = container

        yield

        await app.state.container.close()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings
    if container is not None:
        app.state.container = container

    # --- Error handlers ---
    @app.exception_handler(PaygateError)
    async def paygate_error_handler(request: Request, exc: PaygateError):
        headers = {}
        if isinstance(exc, RateLimited):
            headers["Retry-After"] = str(exc.retry_after)
        elif isinstance(exc, UpstreamUnavailable):
            headers["Retry-After"] = "5"
        if exc.status_code >= 500:
            logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.message, exc, settings),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content=_error_body(message, exc, settings))

    @app.exception_handler(Exception)
    async def server_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=_error_body("An unexpected error occurred. Please try again later.", exc, settings),
        )

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok"}

    # --- Routers ---
    app.include_router(webhooks.router)
    app.include_router(subscription.router)
    app.include_router(offers.router)
    app.include_router(timer.router)
    app.include_router(admin.router)

    return app


app = create_app()
