"""
Global error handling middleware.

WHAT: Map negotiation and purchase errors to HTTP responses
WHY: Clients branch on the error code, retryability and status (202 means verify first)
HOW: FastAPI exception handlers keyed on error category and code
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from datetime import datetime

from ..utils.exceptions import BusinessException, ErrorCategory, ErrorKind
from ..utils.logger import get_logger

logger = get_logger(__name__)

NOT_FOUND_CODES = {
    ErrorKind.THREAD_NOT_FOUND,
    ErrorKind.MESSAGE_NOT_FOUND,
    ErrorKind.PROPERTY_NOT_FOUND,
}
FORBIDDEN_CODES = {
    ErrorKind.NOT_BUYER,
    ErrorKind.NOT_SELLER,
    ErrorKind.SELF_DEAL,
}
BAD_REQUEST_CODES = {
    ErrorKind.VALIDATION_ERROR,
    ErrorKind.INVALID_PRICE,
}
UNAVAILABLE_CODES = {
    ErrorKind.STORE_UNAVAILABLE,
    ErrorKind.CHAIN_UNAVAILABLE,
}


def status_code_for(exc: BusinessException) -> int:
    """HTTP status for a business error."""
    if exc.code in NOT_FOUND_CODES:
        return status.HTTP_404_NOT_FOUND
    if exc.code in FORBIDDEN_CODES:
        return status.HTTP_403_FORBIDDEN
    if exc.category == ErrorCategory.AMBIGUOUS:
        return status.HTTP_202_ACCEPTED
    if exc.code in UNAVAILABLE_CODES:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if exc.category in (ErrorCategory.STALE, ErrorCategory.COLLABORATOR):
        # Listing changed, or the transaction was refused or reverted
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if exc.code in BAD_REQUEST_CODES:
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_409_CONFLICT


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """
    Handle FastAPI RequestValidationError.

    WHAT: Request validation failed
    WHY: Invalid request payload
    HOW: Return 400 with field errors
    """
    logger.warning(f"Validation error: {exc.errors()}")

    # Clean up error details to be JSON serializable
    cleaned_errors = []
    for error in exc.errors():
        cleaned_error = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": error.get("input")
        }
        if "ctx" in error:
            cleaned_error["ctx"] = {
                k: str(v) if isinstance(v, Exception) else v
                for k, v in error["ctx"].items()
            }
        cleaned_errors.append(cleaned_error)

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": ErrorKind.VALIDATION_ERROR.value,
            "message": "Request validation failed",
            "details": cleaned_errors,
            "timestamp": datetime.now().isoformat()
        }
    )


async def business_exception_handler(request: Request, exc: BusinessException):
    """
    Handle BusinessException.

    WHAT: Domain error from the store, state machine or orchestrator
    WHY: Clients branch on the error code and retryability
    HOW: Status code from category/code, JSON body with code, message and details
    """
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"Business exception: {exc.code.value} - {exc.message}")
    else:
        logger.warning(f"Business exception: {exc.code.value} - {exc.message}")

    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.code.value,
            "message": exc.message,
            "category": exc.category.value,
            "retryable": exc.retryable,
            "details": exc.details,
            "timestamp": datetime.now().isoformat()
        }
    )


def register_exception_handlers(app):
    """
    Register all exception handlers with FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(BusinessException, business_exception_handler)

    logger.info("Exception handlers registered")
