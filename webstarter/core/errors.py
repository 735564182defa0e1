"""
Terminal error rendering.

Every error response goes through ``render_error`` so that API clients get
JSON, HTMX requests get an HTML fragment they can swap in, and browsers get a
full error page.
"""

import logging
from http import HTTPStatus
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from webstarter.core.logging_config import get_request_id
from webstarter.core.sessions import apply_pending_session_cookie
from webstarter.core.templates import templates

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Internal Server Error"


def wants_json(request: Request) -> bool:
    """True for API-style callers that accept or send JSON."""
    accept = request.headers.get("accept", "")
    content_type = request.headers.get("content-type", "")
    return accept.startswith("application/json") or content_type.startswith("application/json")


def is_htmx(request: Request) -> bool:
    return request.headers.get("hx-request") == "true"


def request_id_for(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None) or get_request_id()


def _is_development(request: Request) -> bool:
    settings = getattr(request.app.state, "settings", None)
    return bool(settings is not None and settings.is_development)


def render_error(request: Request, status_code: int, message: str) -> Response:
    """
    Build the error response for a request, picking the format the caller expects.
    """
    request_id = request_id_for(request)

    if wants_json(request):
        response: Response = JSONResponse(
            status_code=status_code,
            content={"error": message, "code": status_code, "request_id": request_id},
        )
    else:
        try:
            title = HTTPStatus(status_code).phrase
        except ValueError:
            title = "Error"
        context = {
            "code": status_code,
            "title": title,
            "message": message,
            "request_id": request_id if _is_development(request) else None,
        }
        template = "partials/error.html" if is_htmx(request) else "error.html"
        response = templates.TemplateResponse(request, template, context, status_code=status_code)

    apply_pending_session_cookie(request.scope, response)
    return response


def describe_exception(request: Request, exc: BaseException) -> str:
    """Raw exception text in development, a generic message otherwise."""
    if _is_development(request):
        return str(exc) or type(exc).__name__
    return GENERIC_ERROR_MESSAGE


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    message = exc.detail if isinstance(exc.detail, str) else HTTPStatus(exc.status_code).phrase
    if exc.status_code >= 500:
        logger.error(
            "http error",
            extra={
                "code": exc.status_code,
                "error": message,
                "request_id": request_id_for(request),
                "path": request.url.path,
            },
        )
    response = render_error(request, exc.status_code, message)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> Response:
    problems = [
        "{}: {}".format(".".join(str(part) for part in error.get("loc", ())), error.get("msg", "invalid"))
        for error in exc.errors()
    ]
    message = "; ".join(problems) or "Invalid request"
    return render_error(request, 422, message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> Response:
    """Last-resort handler for faults raised outside the recovery middleware."""
    logger.error(
        "http error",
        exc_info=exc,
        extra={
            "code": 500,
            "request_id": request_id_for(request),
            "path": request.url.path,
        },
    )
    return render_error(request, 500, describe_exception(request, exc))


def register_exception_handlers(app: FastAPI) -> None:
    # Starlette HTTPException also covers FastAPI's subclass and routing 404/405
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
