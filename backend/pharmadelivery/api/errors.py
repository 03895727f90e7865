"""
Translation of domain errors into HTTP responses.

Routers catch the domain errors they expect and raise the HTTPException
built here, so every endpoint answers the same failure with the same status.
"""

from fastapi import HTTPException, status

from pharmadelivery.core.logging import get_logger, get_request_id
from pharmadelivery.services.delivery_runs.repository import (
    DeliveryRunActiveError,
    DeliveryRunClosedError,
    DeliveryRunError,
    DeliveryRunNotFoundError,
    DeliverymanNotFoundError,
)
from pharmadelivery.services.orders.repository import OrderNotFoundError, OrderRepositoryError
from pharmadelivery.services.orders.review import ReviewError
from pharmadelivery.services.orders.service import (
    NetworkUnavailableError,
    OrderServiceError,
    OrderValidationError,
    TransitionConflictError,
)
from pharmadelivery.services.orders.state_machine import (
    InvalidTransitionError,
    TransitionNotPermittedError,
)

logger = get_logger(__name__)

NOT_FOUND_ERRORS = (OrderNotFoundError, DeliveryRunNotFoundError, DeliverymanNotFoundError)
CONFLICT_ERRORS = (TransitionConflictError, DeliveryRunClosedError, DeliveryRunActiveError)
BAD_REQUEST_ERRORS = (
    InvalidTransitionError,
    OrderValidationError,
    ReviewError,
    DeliveryRunError,
)
DOMAIN_ERRORS = (
    OrderRepositoryError,
    OrderServiceError,
    InvalidTransitionError,
    ReviewError,
    DeliveryRunError,
)


def to_http_exception(error: Exception) -> HTTPException:
    """
    Map a domain error to an HTTPException.

    Args:
        error: Error raised by a service

    Returns:
        HTTPException with the matching status and a client-safe detail
    """
    if isinstance(error, NOT_FOUND_ERRORS):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))

    if isinstance(error, TransitionNotPermittedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(error))

    if isinstance(error, CONFLICT_ERRORS):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))

    if isinstance(error, NetworkUnavailableError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(error),
            headers={"Retry-After": str(error.retry_after)},
        )

    if isinstance(error, BAD_REQUEST_ERRORS):
        detail = {"message": str(error)}
        allowed = getattr(error, "context", {}).get("allowed_transitions")
        if allowed is not None:
            detail["allowedTransitions"] = allowed
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

    request_id = get_request_id()
    logger.error(
        "Unexpected error",
        error=str(error),
        error_type=type(error).__name__,
        request_id=request_id,
    )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"message": "An unexpected error occurred", "requestId": request_id},
    )
