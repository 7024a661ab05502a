"""Substream Assist service entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from substream_assist import __version__
from substream_assist.adapters.backends import build_recommendation_backend
from substream_assist.api.router import router
from substream_assist.database import dispose_database, init_database
from substream_assist.errors import AssistError
from substream_assist.observability import configure_logging, get_logger
from substream_assist.settings import Settings, get_settings

logger = get_logger(__name__)


async def handle_assist_error(request: Request, exc: AssistError) -> JSONResponse:
    """Render every AssistError as {message, reason, details?} with its status code."""
    logger.info(
        "assist_error_response",
        path=request.url.path,
        status_code=exc.status_code,
        reason=exc.reason,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application.

    The recommendation backend is constructed once during startup and kept
    on app.state; requests never choose a provider themselves.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        configure_logging(settings.log_level, settings.log_json)
        logger.info(
            "substream-assist starting",
            service=settings.service_name,
            environment=settings.environment,
            recommendation_backend=settings.recommendation_backend,
        )
        init_database(settings)
        app.state.recommendation_backend = build_recommendation_backend(settings)
        yield
        await dispose_database()
        logger.info("substream-assist shutting down")

    app = FastAPI(title=settings.service_name, version=__version__, lifespan=lifespan)
    app.add_exception_handler(AssistError, handle_assist_error)  # type: ignore[arg-type]
    app.include_router(router, prefix="/api/v1")

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.service_name}

    return app


app = create_app()
