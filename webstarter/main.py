import logging

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from sqlalchemy.engine import Engine

from webstarter import __version__
from webstarter.core.config import Settings
from webstarter.core.errors import register_exception_handlers
from webstarter.core.middleware import setup_middleware
from webstarter.core.templates import STATIC_DIR
from webstarter.db.session import create_session_factory
from webstarter.web import health, home

logger = logging.getLogger("webstarter.main")


def create_app(settings: Settings, engine: Engine) -> FastAPI:
    """
    Build the application around an already-connected database engine.

    Settings and the engine are stored on ``app.state`` so handlers and
    middleware read them from the request instead of module globals.
    """
    app = FastAPI(
        title="webstarter",
        description="Server-rendered starter application",
        version=__version__,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.is_development else None,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)

    # Logging, recovery, timeout, CORS, sessions, compression
    setup_middleware(app, settings)
    register_exception_handlers(app)

    # Mount static files
    app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")

    app.include_router(home.router, tags=["Web"])
    app.include_router(health.router, tags=["Health"])

    logger.debug(
        "application created",
        extra={
            "environment": settings.ENVIRONMENT,
            "request_timeout_s": settings.request_timeout_seconds,
            "cors_origins": ",".join(settings.CORS_ALLOWED_ORIGINS),
        },
    )
    return app
