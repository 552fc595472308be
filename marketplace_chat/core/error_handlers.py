"""Error handlers mapping messaging exceptions to JSON responses."""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from marketplace_chat.core.errors import MessagingError

logger = logging.getLogger(__name__)


def error_body(exc: MessagingError) -> dict:
    return {
        "error": {
            "code": exc.error_code,
            "message": exc.detail,
            "status_code": exc.status_code,
        }
    }


async def messaging_exception_handler(request: Request, exc: MessagingError) -> JSONResponse:
    """Handle all messaging exceptions with a standardized error body."""
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Messaging error: %s - %s",
        exc.error_code,
        exc.detail,
        extra={"path": request.url.path, "method": request.method},
    )
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))
