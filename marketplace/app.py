"""
FastAPI application entry point for the marketplace backend.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketplace import dependencies
from marketplace.config import get_settings
from marketplace.logging_utils import RequestLoggingMiddleware, configure_logging
from marketplace.routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings)
    logger.info("Marketplace API starting with prefix %s", settings.api_prefix)
    yield
    # Only stop the monitor if a request created it.
    if dependencies._transaction_monitor is not None:
        dependencies._transaction_monitor.stop_all()
    logger.info("Marketplace API stopped")


async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="NFT Marketplace Backend", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        RequestLoggingMiddleware, skip_paths=(f"{settings.api_prefix}/health",)
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(Exception, unhandled_error)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
