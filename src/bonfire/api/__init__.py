"""FastAPI application for Bonfire.

Write access to announcements plus operational endpoints for the sync engine.
"""

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from bonfire import __version__
from bonfire.api.health import router as health_router
from bonfire.api.posts import router as posts_router

if TYPE_CHECKING:
    from bonfire.config import Config

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("api_starting")
    yield
    log.info("api_stopping")


def create_app(config: "Config") -> FastAPI:
    """Create and configure the FastAPI application.

    Callers set ``app.state.config``, ``app.state.db``, ``app.state.store``
    and, when the bot runs in-process, ``app.state.sync``.
    """
    app = FastAPI(
        title="Bonfire API",
        description="Announcements mirrored to Discord, with reaction-driven roster sync.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        log.info("request_start", method=request.method, path=request.url.path)
        response = await call_next(request)
        log.info(
            "request_complete",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
        )
        return response

    app.include_router(health_router)
    app.include_router(posts_router)

    app.state.sync = None

    return app
