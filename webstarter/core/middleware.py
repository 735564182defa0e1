"""
Request pipeline middleware.

Order matters; from outermost to innermost:

1. RequestIDMiddleware  - tags the request and every log line it produces
2. AccessLogMiddleware  - one log line per request, including failed ones
3. RecoveryMiddleware   - turns any exception into a 500 response
4. TimeoutMiddleware    - answers 503 once REQUEST_TIMEOUT passes
5. CORSMiddleware       - answers preflights, adds allow-* headers
6. SessionMiddleware    - decodes the cookie before, writes it after
7. GZipMiddleware       - production only
"""

import logging
import time
import uuid
from typing import Optional

import anyio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from webstarter.core.config import Settings
from webstarter.core.errors import describe_exception, render_error, request_id_for
from webstarter.core.logging_config import request_id_ctx, set_request_id
from webstarter.core.sessions import SessionMiddleware, stash_session_cookie

logger = logging.getLogger("webstarter.access")
recovery_logger = logging.getLogger("webstarter.recovery")

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128

TIMEOUT_STATUS_CODE = 503
TIMEOUT_MESSAGE = "Request timed out"

CORS_ALLOW_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
CORS_ALLOW_HEADERS = [
    "Origin",
    "Content-Type",
    "Accept",
    "Authorization",
    REQUEST_ID_HEADER,
    "HX-Request",
    "HX-Current-URL",
    "HX-Target",
    "HX-Trigger",
]
CORS_MAX_AGE = 86400


def _valid_request_id(value: str) -> bool:
    return 0 < len(value) <= MAX_REQUEST_ID_LENGTH and value.isprintable()


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's X-Request-ID or generate one, and echo it back."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER, "")
        if not _valid_request_id(request_id):
            request_id = uuid.uuid4().hex

        request.state.request_id = request_id
        token = set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and latency once the inner chain is done."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            extra = {
                "method": request.method,
                "path": request.url.path,
                "status": status_code,
                "latency_ms": round((time.perf_counter() - start_time) * 1000, 2),
                "request_id": request_id_for(request),
                "ip": request.client.host if request.client else None,
                "user_agent": request.headers.get("user-agent"),
            }
            if status_code >= 500:
                logger.error("request failed", extra=extra)
            elif status_code >= 400:
                logger.warning("request error", extra=extra)
            else:
                logger.info("request completed", extra=extra)


class RecoveryMiddleware(BaseHTTPMiddleware):
    """Error boundary: log the fault with its traceback and answer with a 500."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            recovery_logger.error(
                "panic recovered",
                exc_info=exc,
                extra={
                    "error": str(exc) or type(exc).__name__,
                    "request_id": request_id_for(request),
                    "path": request.url.path,
                },
            )
            return render_error(request, 500, describe_exception(request, exc))


class TimeoutMiddleware:
    """
    Answer 503 once the request exceeds its time budget.

    The inner chain runs as its own task and this stage only stops waiting for
    it: at the deadline the timeout response goes out and the task is
    cancelled. Async handlers stop at their next await. A sync handler in the
    thread pool cannot be interrupted, so it runs to completion and whatever
    it sends afterwards is dropped. A response that has already started is
    left to finish.
    """

    def __init__(self, app: ASGIApp, timeout: float) -> None:
        self.app = app
        self.timeout = timeout

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        done = anyio.Event()
        response_starting = False
        response_started = False
        timed_out = False
        error: Optional[Exception] = None

        async def send_wrapper(message: Message) -> None:
            nonlocal response_starting, response_started
            if timed_out:
                return
            if message["type"] == "http.response.start":
                response_starting = True
                await send(message)
                response_started = True
                return
            await send(message)

        async def run_app() -> None:
            nonlocal error
            try:
                await self.app(scope, receive, send_wrapper)
            except Exception as exc:
                # Raised again outside the task group, unwrapped
                error = exc
            finally:
                done.set()

        async with anyio.create_task_group() as task_group:
            task_group.start_soon(run_app)
            with anyio.move_on_after(self.timeout):
                await done.wait()

            if not done.is_set():
                logger.warning(
                    "request timed out",
                    extra={
                        "path": request.url.path,
                        "timeout_s": self.timeout,
                        "request_id": request_id_for(request),
                        "response_started": response_started,
                    },
                )
                if not response_starting:
                    timed_out = True
                    stash_session_cookie(scope)
                    response = render_error(request, TIMEOUT_STATUS_CODE, TIMEOUT_MESSAGE)
                    await response(scope, receive, send)
                    task_group.cancel_scope.cancel()

        if error is None:
            return
        if not timed_out:
            raise error
        logger.error(
            "request failed after timing out",
            exc_info=(type(error), error, error.__traceback__),
            extra={"path": request.url.path, "request_id": request_id_for(request)},
        )


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """
    Install the request pipeline.

    Starlette makes the most recently added middleware the outermost one, so
    the stages are added from the innermost (compression) outwards.
    """
    if settings.is_production:
        app.add_middleware(GZipMiddleware)

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET,
        https_only=settings.is_production,
        same_site="lax",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.CORS_ALLOWED_ORIGINS),
        allow_methods=CORS_ALLOW_METHODS,
        allow_headers=CORS_ALLOW_HEADERS,
        allow_credentials=True,
        expose_headers=[REQUEST_ID_HEADER],
        max_age=CORS_MAX_AGE,
    )

    app.add_middleware(TimeoutMiddleware, timeout=settings.request_timeout_seconds)
    app.add_middleware(RecoveryMiddleware)
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestIDMiddleware)
