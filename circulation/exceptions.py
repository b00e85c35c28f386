from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

from circulation.outcomes import ValidationFailed

# Set up logging
logging.basicConfig(level=logging.ERROR)
logger = logging.getLogger(__name__)


class LibraryException(Exception):
    """Base exception for library-related errors."""

    pass


class BusinessRuleViolation(LibraryException):
    """A borrowing rule refused the operation. Safe to retry with other input."""

    def __init__(self, failure: ValidationFailed):
        self.failure = failure
        super().__init__(failure.reason)

    @classmethod
    def from_failure(cls, failure: ValidationFailed) -> "BusinessRuleViolation":
        if failure.is_not_found:
            return NotFoundError(failure)
        return cls(failure)


class NotFoundError(BusinessRuleViolation):
    """The referenced request, detail or book does not exist."""


class InvalidInputError(LibraryException):
    def __init__(self, message: str):
        super().__init__(f"Invalid input: {message}")


class BookNotFoundError(LibraryException):
    def __init__(self, book_id: int):
        self.book_id = book_id
        super().__init__(f"Book with ID {book_id} not found")


class DatabaseError(LibraryException):
    def __init__(self, operation: str, details: str):
        self.operation = operation
        super().__init__(f"Database error during {operation}: {details}")


class SystemFailure(LibraryException):
    """The operation could not be processed; state was rolled back."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Could not process {operation} at the moment")


# Exception handlers
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error(f"HTTP error {exc.status_code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Request validation error: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": "Invalid request parameters. Please check your input."},
    )


async def response_validation_exception_handler(
    request: Request, exc: ResponseValidationError
):
    logger.error(f"Response validation error: {exc.errors()}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "The server encountered an unexpected error. Please contact support."
        },
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred. Please contact support."},
    )


async def business_rule_exception_handler(
    request: Request, exc: BusinessRuleViolation
):
    logger.error(f"Business rule violated ({exc.failure.rule.value}): {exc}")
    status_code = 404 if isinstance(exc, NotFoundError) else 400
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "rule": exc.failure.rule.value},
    )


async def not_found_exception_handler(request: Request, exc: LibraryException):
    logger.error(f"Not found: {exc}")
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def invalid_input_exception_handler(request: Request, exc: InvalidInputError):
    logger.error(f"Invalid input: {exc}")
    return JSONResponse(status_code=422, content={"detail": str(exc)})


async def system_failure_exception_handler(request: Request, exc: LibraryException):
    logger.error(f"System failure: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "The request could not be processed. Please try again later."},
    )


def add_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(
        ResponseValidationError, response_validation_exception_handler
    )
    app.add_exception_handler(Exception, general_exception_handler)
    app.add_exception_handler(BusinessRuleViolation, business_rule_exception_handler)
    app.add_exception_handler(BookNotFoundError, not_found_exception_handler)
    app.add_exception_handler(InvalidInputError, invalid_input_exception_handler)
    app.add_exception_handler(SystemFailure, system_failure_exception_handler)
    app.add_exception_handler(DatabaseError, system_failure_exception_handler)
