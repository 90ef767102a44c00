import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError, TimeoutError as SQLAlchemyTimeoutError

from src.domain.exceptions import (
    BookingValidationError,
    ConcurrencyConflictError,
    IdempotencyConflictError,
    InsufficientInventoryError,
    InvalidStateTransitionError,
    NothingToConfirmError,
    NotFoundError,
    SeatLedgerError,
    UpstreamPaymentError,
)

logger = logging.getLogger(__name__)

STATUS_CODES = {
    BookingValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InsufficientInventoryError: status.HTTP_409_CONFLICT,
    NothingToConfirmError: status.HTTP_409_CONFLICT,
    InvalidStateTransitionError: status.HTTP_409_CONFLICT,
    IdempotencyConflictError: status.HTTP_409_CONFLICT,
    UpstreamPaymentError: status.HTTP_502_BAD_GATEWAY,
    ConcurrencyConflictError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_code_for(exc: SeatLedgerError) -> int:
    for exc_type in type(exc).__mro__:
        if exc_type in STATUS_CODES:
            return STATUS_CODES[exc_type]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def seat_ledger_error_handler(request: Request, exc: SeatLedgerError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)

    content = {"detail": str(exc), "code": exc.code}
    if isinstance(exc, InsufficientInventoryError):
        content["remaining"] = max(exc.remaining, 0)
    return JSONResponse(status_code=status_code, content=content)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Validation error on %s: %s", request.url.path, exc.errors())
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": "Invalid request payload",
            "code": BookingValidationError.code,
            "errors": [
                {"loc": list(error.get("loc", ())), "msg": error.get("msg")}
                for error in exc.errors()
            ],
        },
    )


async def database_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Database unavailable while serving %s", request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "detail": "Database is currently degraded. Please retry.",
            "code": "DATABASE_UNAVAILABLE",
        },
    )


EXCEPTION_HANDLERS = {
    SeatLedgerError: seat_ledger_error_handler,
    RequestValidationError: validation_error_handler,
    OperationalError: database_unavailable_handler,
    SQLAlchemyTimeoutError: database_unavailable_handler,
}


def register_exception_handlers(app: FastAPI) -> None:
    for exception_class, handler in EXCEPTION_HANDLERS.items():
        app.add_exception_handler(exception_class, handler)
