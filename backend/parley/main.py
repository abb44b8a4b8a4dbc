"""
Parley - Main FastAPI Application
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import sessions_router
from .config import Settings, settings
from .core.errors import ParleyError
from .core.logging_config import setup_logging
from .middleware import RequestLoggingMiddleware
from .services import SessionServices

# Logger will be initialized after setup_logging() is called
logger = logging.getLogger(__name__)


def create_app(config: Settings = settings, services: Optional[SessionServices] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Settings to use
        services: Prebuilt services (tests inject these); built from ``config`` otherwise
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(config)

        app.state.services = services or SessionServices.build(config)
        await app.state.services.start(run_ticker=config.ticker_enabled)

        logger.info(f"Starting {config.app_name} v{config.app_version}")
        logger.info(f"Storage path: {config.local_storage_path}")
        logger.info(f"LLM provider: {config.llm_provider}")
        logger.info(f"Debug mode: {config.debug}")
        yield
        await app.state.services.stop()
        logger.info(f"Shutting down {config.app_name}")

    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description="Conversational session service: sessions, chat logs and generated titles",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if config.log_api_requests:
        app.add_middleware(RequestLoggingMiddleware)

    @app.exception_handler(ParleyError)
    async def parley_error_handler(request: Request, exc: ParleyError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(f"{exc.error_code}: {exc.message} ({request.method} {request.url.path})")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.error_code},
        )

    app.include_router(sessions_router)

    @app.get("/")
    async def root():
        return {
            "app": config.app_name,
            "version": config.app_version,
            "status": "running",
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        services: SessionServices = request.app.state.services
        return {
            "status": "healthy",
            "storage": config.storage_type,
            "sessions_loaded": services.store.loaded,
            "ticker_running": services.ticker.running,
            "version": config.app_version,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "parley.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
