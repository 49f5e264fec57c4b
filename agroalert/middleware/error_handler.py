"""
Error handler middleware for the alert API.

Anything a route raises becomes a JSON body with an error_id that also appears
in the server log. AgroAlert errors keep their error code; a failing alert
store answers 503 so callers can retry, everything else answers 500.
"""

import uuid

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from agroalert.config import settings
from agroalert.exceptions import AgroAlertError, ErrorCode, StoreError

logger = structlog.get_logger(__name__)

GENERIC_MESSAGE = "An internal error occurred. Please try again later."


def _status_for(exc: Exception) -> int:
    if isinstance(exc, StoreError):
        return 503
    return getattr(exc, "status_code", 500)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Body shape:
    {"error": "...", "error_code": "E1000", "error_id": "<uuid>", "status": 500}
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            error_id = uuid.uuid4().hex
            status_code = _status_for(exc)
            context = exc.to_dict() if isinstance(exc, AgroAlertError) else {"error": str(exc)}
            logger.exception(
                "request_failed",
                error_id=error_id,
                method=request.method,
                path=request.url.path,
                status=status_code,
                **context,
            )

            body = {
                "error": GENERIC_MESSAGE,
                "error_code": (
                    exc.error_code.value if isinstance(exc, AgroAlertError)
                    else ErrorCode.UNKNOWN_ERROR.value
                ),
                "error_id": error_id,
                "status": status_code,
            }
            if settings.debug:
                body["exception"] = type(exc).__name__
            return JSONResponse(status_code=status_code, content=body)
