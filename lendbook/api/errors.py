"""
Error responses

Maps the lending error taxonomy onto HTTP status codes.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ..exceptions import (
    LendingError, NotFoundError, InvalidInputError, InvalidStateError,
    InvalidOperationError, NotAllowedError, AlreadySettledError
)
from ..logging_config import get_logger


logger = get_logger(__name__)


STATUS_CODES = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidInputError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (InvalidOperationError, status.HTTP_409_CONFLICT),
    (AlreadySettledError, status.HTTP_409_CONFLICT),
    (NotAllowedError, status.HTTP_403_FORBIDDEN),
)


def status_code_for(error: LendingError) -> int:
    for error_type, code in STATUS_CODES:
        if isinstance(error, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


def error_body(error: LendingError) -> dict:
    return {"success": False, "error": error.error_code, "message": error.message}


async def lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
    code = status_code_for(exc)
    logger.info("Request rejected", extra={
        "action": "api.error", "resource": request.url.path,
        "extra": {"status_code": code, "error": exc.error_code}
    })
    return JSONResponse(status_code=code, content=error_body(exc))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LendingError, lending_error_handler)
