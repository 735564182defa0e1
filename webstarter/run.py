#!/usr/bin/env python3
"""
Run the webstarter server.

Lifecycle: STARTING -> LISTENING -> DRAINING -> CLOSED.

On SIGINT or SIGTERM the listener stops accepting connections, in-flight
requests get up to SHUTDOWN_GRACE_PERIOD seconds to finish (anything still
running after that is cancelled), and only then is the database pool closed.
A listener that fails to start (port in use) ends the process with exit
code 1 without draining.

uvicorn raises the signal it caught again once shutdown is complete. For
SIGINT that surfaces as KeyboardInterrupt; for SIGTERM, serve() keeps its own
handler installed while the server runs, so the process is not killed with
status 143 before it can log "server stopped" and return 0.
"""

import enum
import logging
import signal
import socket
import sys
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional

import uvicorn
from fastapi import FastAPI
from pydantic import ValidationError
from sqlalchemy.engine import Engine

from webstarter.core.config import Settings, load_settings
from webstarter.core.logging_config import init_application_logging, setup_logging
from webstarter.db.session import DatabaseConnectionError, close_db_engine, create_db_engine
from webstarter.main import create_app

logger = logging.getLogger("webstarter.server")

SHUTDOWN_GRACE_PERIOD = 10  # seconds


class ServerState(str, enum.Enum):
    STARTING = "starting"
    LISTENING = "listening"
    DRAINING = "draining"
    CLOSED = "closed"


class GracefulServer(uvicorn.Server):
    """uvicorn server that tracks its lifecycle and closes the database last."""

    def __init__(self, config: uvicorn.Config, engine: Engine) -> None:
        super().__init__(config)
        self.engine = engine
        self.state = ServerState.STARTING

    def _transition(self, state: ServerState) -> None:
        logger.debug("server state changed", extra={"from": self.state.value, "to": state.value})
        self.state = state

    def handle_exit(self, sig: int, frame) -> None:
        if not self.should_exit:
            logger.info("shutting down server", extra={"signal": signal.Signals(sig).name})
        super().handle_exit(sig, frame)

    async def startup(self, sockets: Optional[List[socket.socket]] = None) -> None:
        await super().startup(sockets=sockets)
        if self.started:
            self._transition(ServerState.LISTENING)
            logger.info(
                "server listening",
                extra={"addr": f"{self.config.host}:{self.config.port}"},
            )

    async def shutdown(self, sockets: Optional[List[socket.socket]] = None) -> None:
        self._transition(ServerState.DRAINING)
        try:
            await super().shutdown(sockets=sockets)
        except Exception as e:
            logger.error("server shutdown error", extra={"error": str(e)})

        # The listener is fully stopped; no request can touch the pool any more
        close_db_engine(self.engine)
        self._transition(ServerState.CLOSED)


def build_server_config(app: FastAPI, settings: Settings) -> uvicorn.Config:
    return uvicorn.Config(
        app,
        host=settings.HOST,
        port=settings.PORT,
        timeout_graceful_shutdown=SHUTDOWN_GRACE_PERIOD,
        log_config=None,
        access_log=False,
        server_header=False,
    )


@contextmanager
def sigterm_handled_by(server: GracefulServer) -> Iterator[None]:
    """Route SIGTERM to the server for the whole run, including the re-raise after shutdown."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = signal.signal(signal.SIGTERM, server.handle_exit)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def serve(
    app: FastAPI,
    settings: Settings,
    engine: Engine,
    sockets: Optional[List[socket.socket]] = None,
) -> int:
    """Run the server until it is told to stop; returns the process exit code."""
    server = GracefulServer(build_server_config(app, settings), engine=engine)
    try:
        with sigterm_handled_by(server):
            server.run(sockets=sockets)
    except SystemExit as exc:
        # uvicorn exits during startup when it cannot bind
        if server.state is ServerState.STARTING:
            logger.error("server failed to start", extra={"port": settings.PORT})
            close_db_engine(engine)
            return exc.code if isinstance(exc.code, int) else 1
        raise
    except KeyboardInterrupt:
        # uvicorn re-raises the captured SIGINT once it has finished shutting down
        pass

    logger.info("server stopped")
    return 0


def main() -> int:
    try:
        settings = load_settings()
    except ValidationError as e:
        setup_logging()
        logger.error("invalid configuration", extra={"error": str(e)})
        return 1

    init_application_logging(settings)
    logger.info(
        "starting server",
        extra={"port": settings.PORT, "environment": settings.ENVIRONMENT},
    )

    try:
        engine = create_db_engine(settings.DATABASE_URL, query_logging=settings.is_development)
    except DatabaseConnectionError as e:
        logger.error("failed to connect to database", extra={"error": str(e)})
        return 1

    app = create_app(settings, engine)
    return serve(app, settings, engine)


if __name__ == "__main__":
    sys.exit(main())
