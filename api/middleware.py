"""
Request context middleware and exception-to-HTTP mapping
"""

import time
import uuid
import logging
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from core.exceptions import (
    AnalysisException,
    InvalidJobTransitionError,
    JobActiveError,
    JobNotFoundError,
    MigrationError,
    PersistenceError,
    ReanalysisError,
    ValidationError,
)
from schemas.api import ErrorResponse

logger = logging.getLogger(__name__)

# Most specific class wins (looked up along the exception's MRO)
STATUS_CODES = {
    JobNotFoundError: 404,
    JobActiveError: 409,
    InvalidJobTransitionError: 409,
    ValidationError: 422,
    MigrationError: 422,
    ReanalysisError: 400,
    PersistenceError: 503,
}


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Injects:
    - request_id
    - api_latency_ms
    """

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        start_time = time.perf_counter()

        # Attach request_id to request state
        request.state.request_id = request_id

        response: Response = await call_next(request)

        latency_ms = int((time.perf_counter() - start_time) * 1000)

        # Attach headers (useful for debugging)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)

        logger.debug(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({latency_ms}ms)")
        return response


def status_code_for(exc: AnalysisException) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 500


async def analysis_exception_handler(request: Request, exc: AnalysisException) -> JSONResponse:
    status_code = status_code_for(exc)
    request_id = getattr(request.state, "request_id", None)
    if status_code >= 500:
        logger.error(f"[{request_id}] {exc}", extra={"error_context": exc.to_dict()})
    else:
        logger.info(f"[{request_id}] {type(exc).__name__}: {exc.message}")

    body = ErrorResponse(error=type(exc).__name__, detail=exc.message, context=exc.context)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(AnalysisException, analysis_exception_handler)
