# casedispatch/transport/middleware.py
import re
import time
import uuid
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from casedispatch.core.errors import InternalError
from casedispatch.infra.logging_config import get_logger, LogContext
from casedispatch.infra.metrics import AppMetrics

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Client-supplied IDs end up in logs; anything else gets replaced
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

# Health checks are polled constantly and only add noise to the access log
_QUIET_PATHS = frozenset({"/health", "/ready"})


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each request with an ID, honouring a well-formed ``X-Request-ID``."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get(REQUEST_ID_HEADER, "")
        request_id = incoming if _REQUEST_ID_RE.match(incoming) else uuid.uuid4().hex
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Access log plus request metrics.

    Metrics are recorded whether or not logging is enabled.
    """

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.perf_counter()
        path = request.url.path
        log_ctx = LogContext(logger, request_id=_request_id(request))

        try:
            response = await call_next(request)
        except Exception as exc:
            duration = time.perf_counter() - start
            AppMetrics.http_request(request.method, 500, duration)
            if self.enabled:
                log_ctx.error(
                    f"Request failed: {request.method} {path} "
                    f"error={exc.__class__.__name__} duration={duration * 1000:.2f}ms"
                )
            raise

        duration = time.perf_counter() - start
        AppMetrics.http_request(request.method, response.status_code, duration)

        if self.enabled and path not in _QUIET_PATHS:
            message = (
                f"Request completed: {request.method} {path} "
                f"status={response.status_code} duration={duration * 1000:.2f}ms"
            )
            if response.status_code >= 500:
                log_ctx.error(message)
            elif response.status_code >= 400:
                log_ctx.warning(message)
            else:
                log_ctx.info(message)
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Anything that escaped the route handlers becomes a generic 500."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = _request_id(request)
            logger.error(
                f"Unhandled exception on {request.method} {request.url.path}: "
                f"{exc.__class__.__name__}",
                extra={"request_id": request_id},
                exc_info=True,
            )
            error = InternalError("Internal server error")
            return JSONResponse(
                status_code=error.status_code,
                content={"success": False, "error": error.to_dict(), "requestId": request_id},
            )
