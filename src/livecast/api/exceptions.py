"""Exception handlers for the control API.

Every error leaves the API as ``{"error": "<message>"}``. Requests that are
invalid in the current stream state, or malformed, map to 400; anything else
that went wrong while acting on the stream maps to 500.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..domain.exceptions import LivecastError, StreamerStateError

logger = logging.getLogger(__name__)

CLIENT_ERRORS = (StreamerStateError,)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def livecast_exception_handler(request: Request, exc: LivecastError) -> JSONResponse:
    """Handle stream service exceptions."""
    if isinstance(exc, CLIENT_ERRORS):
        status_code = status.HTTP_400_BAD_REQUEST
        logger.info(f"{request.method} {request.url.path} rejected: {exc}")
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return error_response(status_code, str(exc))


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle malformed request bodies."""
    messages = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        messages.append(f"{field}: {error['msg']}" if field else error["msg"])

    logger.info(f"{request.method} {request.url.path} invalid request: {messages}")
    return error_response(
        status.HTTP_400_BAD_REQUEST, "Invalid request: " + "; ".join(messages)
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the exception handlers on an application.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(LivecastError, livecast_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
