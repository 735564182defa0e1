import logging
import time
from typing import Any, Dict, Generator

from fastapi import Request
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

# Pool sizing: up to 25 open connections, 5 of them kept warm
POOL_SIZE = 5
MAX_OVERFLOW = 20
POOL_RECYCLE_SECONDS = 3600


class DatabaseConnectionError(Exception):
    """Raised when the database cannot be reached at startup"""
    pass


def get_connect_args(database_url: str) -> Dict[str, Any]:
    """Get database-specific connection arguments"""
    if database_url.startswith("sqlite"):
        # SQLite needs check_same_thread=False for FastAPI
        return {"check_same_thread": False}
    return {}


def get_pool_args(database_url: str) -> Dict[str, Any]:
    """Pool tuning for server databases; SQLite keeps SQLAlchemy's defaults"""
    if database_url.startswith("sqlite"):
        return {}
    return {
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_recycle": POOL_RECYCLE_SECONDS,
        "pool_pre_ping": True,
    }


def safe_url(database_url: str) -> str:
    """Render a database URL with the password masked"""
    try:
        return make_url(database_url).render_as_string(hide_password=True)
    except Exception:
        return "[unparseable database url]"


def _install_query_logging(engine: Engine) -> None:
    """Log every statement with its duration; failures at error level."""

    @event.listens_for(engine, "before_cursor_execute")
    def _before(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("query_start_time", []).append(time.perf_counter())

    @event.listens_for(engine, "after_cursor_execute")
    def _after(conn, cursor, statement, parameters, context, executemany):
        started = conn.info["query_start_time"].pop()
        logger.debug(
            "database query",
            extra={
                "query": statement,
                "duration_ms": round((time.perf_counter() - started) * 1000, 3),
            },
        )

    @event.listens_for(engine, "handle_error")
    def _error(exception_context):
        conn = exception_context.connection
        starts = conn.info.get("query_start_time") if conn is not None else None
        duration_ms = None
        if starts:
            duration_ms = round((time.perf_counter() - starts.pop()) * 1000, 3)
        logger.error(
            "database query failed",
            extra={
                "query": exception_context.statement,
                "duration_ms": duration_ms,
                "error": str(exception_context.original_exception),
            },
        )


def create_db_engine(database_url: str, query_logging: bool = False) -> Engine:
    """
    Create the pooled engine and verify the database answers.

    Args:
        database_url: SQLAlchemy database URL
        query_logging: Log every statement (development)

    Raises:
        DatabaseConnectionError: If the database cannot be reached
    """
    try:
        engine = create_engine(
            database_url,
            connect_args=get_connect_args(database_url),
            **get_pool_args(database_url),
        )
    except (SQLAlchemyError, ImportError, ValueError) as e:
        raise DatabaseConnectionError(f"invalid database configuration: {e}") from e

    if query_logging:
        _install_query_logging(engine)

    try:
        check_database_health(engine)
    except SQLAlchemyError as e:
        engine.dispose()
        raise DatabaseConnectionError(str(e)) from e

    logger.info("database connected", extra={"url": safe_url(database_url)})
    return engine


def check_database_health(engine: Engine) -> None:
    """Liveness check; raises if the database does not answer."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def close_db_engine(engine: Engine) -> None:
    """Dispose of the connection pool, logging rather than raising on failure."""
    logger.info("closing database connection")
    try:
        engine.dispose()
    except Exception as e:
        logger.error("database close error", extra={"error": str(e)})


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create session factory"""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db(request: Request) -> Generator[Session, None, None]:
    """Dependency for getting DB session"""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
