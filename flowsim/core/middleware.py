"""HTTP middleware: request ids, error mapping and timing."""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Type
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import (
    ConfigurationError,
    ExpressionError,
    GraphValidationError,
    HandlerRegistryError,
    HttpCallError,
    WorkflowEngineError,
    create_error_response,
)
from .logging import get_logger, logging_context


logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Checked in order; the first matching class wins.
ERROR_STATUS_CODES: Dict[Type[WorkflowEngineError], int] = {
    GraphValidationError: 400,
    ExpressionError: 400,
    HandlerRegistryError: 404,
    HttpCallError: 502,
    ConfigurationError: 500,
}


def status_code_for_error(error: WorkflowEngineError) -> int:
    """Map an engine error to the HTTP status returned to the client."""
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_type):
            return status_code
    return 500


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and turns uncaught errors into JSON.

    The id is echoed in ``X-Request-ID`` and added to the logging context of
    everything logged while the request is handled, simulation runs included.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        with logging_context(request_id=request_id):
            response = await self._call(request, call_next, request_id)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    async def _call(self, request: Request, call_next: Callable, request_id: str) -> Response:
        started = time.perf_counter()
        route = f"{request.method} {request.url.path}"
        try:
            response = await call_next(request)
        except WorkflowEngineError as e:
            status_code = status_code_for_error(e)
            logger.warning(f"{route} failed with {e.error_code} ({status_code}): {e.message}",
                           extra={"extra_fields": e.to_dict()})
            return JSONResponse(status_code=status_code, content=create_error_response(e))
        except Exception as e:
            logger.error(f"{route} raised {type(e).__name__}: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {
                        "error_type": type(e).__name__,
                        "timestamp": datetime.now(timezone.utc).isoformat()
                    },
                    "request_id": request_id
                }
            )

        logger.info(f"{route} -> {response.status_code} in {time.perf_counter() - started:.3f}s")
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Debug-level dump of request and response metadata."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        logger.debug(
            f"Request details: {request.method} {request.url} - "
            f"Query params: {dict(request.query_params)} - "
            f"Content length: {request.headers.get('content-length', '0')}"
        )
        response = await call_next(request)
        logger.debug(f"Response details: Status {response.status_code} - "
                     f"Content type: {response.headers.get('content-type', '')}")
        return response


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Adds ``X-Response-Time`` and warns about slow simulations."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - started

        if duration > self.slow_request_threshold:
            logger.warning(
                f"Slow request: {request.method} {request.url.path} took {duration:.3f}s "
                f"(threshold {self.slow_request_threshold}s)"
            )

        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        return response
