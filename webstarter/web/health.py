"""Health check route for load balancers and orchestrator health checks"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from webstarter.db.session import get_db

logger = logging.getLogger(__name__)

router = APIRouter()


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    """
    Report whether the server is up and the database answers.

    Returns 200 with ``{"status": "healthy", "database": "connected"}`` or 503
    with ``{"status": "unhealthy", "database": "disconnected", "error": ...}``.
    """
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("database health check failed", extra={"error": str(e)})
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e),
                "timestamp": _timestamp(),
            },
        )

    return {
        "status": "healthy",
        "database": "connected",
        "timestamp": _timestamp(),
    }
