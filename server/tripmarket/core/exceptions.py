"""Exceptions rendered as RFC 9457 Problem Details.

Every domain error carries an application ``code`` and a ``retryable`` flag
so clients can tell "try again later" apart from "fix the request".
"""

import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .clock import utcnow

logger = logging.getLogger(__name__)

PROBLEM_JSON = "application/problem+json"


class ProblemDetailsException(HTTPException):
    """
    Base exception class following RFC 9457 Problem Details for HTTP APIs.

    https://tools.ietf.org/rfc/rfc9457.txt
    """

    def __init__(
        self,
        status_code: int,
        title: str,
        detail: Optional[str] = None,
        type_uri: Optional[str] = None,
        instance: Optional[str] = None,
        extensions: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        code: Optional[str] = None,
        retryable: Optional[bool] = None,
    ):
        """
        Args:
            status_code: HTTP status code
            title: Short, human-readable summary of the problem type
            detail: Human-readable explanation specific to this occurrence
            type_uri: URI reference that identifies the problem type
            instance: URI reference that identifies the specific occurrence
            extensions: Additional problem-specific members
            headers: HTTP headers to include in response
            code: Stable application error code, e.g. ``INSUFFICIENT_CAPACITY``
            retryable: Whether repeating the same request may succeed later
        """
        self.status_code = status_code
        self.title = title
        self.detail = detail
        self.type_uri = type_uri or f"about:blank#{status_code}"
        self.instance = instance
        self.extensions = dict(extensions or {})
        if code is not None:
            self.extensions.setdefault("code", code)
        if retryable is not None:
            self.extensions.setdefault("retryable", retryable)

        self.problem_details = {
            "type": self.type_uri,
            "title": self.title,
            "status": self.status_code,
        }
        if self.detail:
            self.problem_details["detail"] = self.detail
        if self.instance:
            self.problem_details["instance"] = self.instance
        self.problem_details.update(self.extensions)

        super().__init__(status_code=status_code, detail=self.problem_details, headers=headers)

    @property
    def code(self) -> Optional[str]:
        """Application-specific error code, when one was set."""
        return self.problem_details.get("code")

    @property
    def retryable(self) -> bool:
        return bool(self.problem_details.get("retryable", False))


class ValidationError(ProblemDetailsException):
    """Exception for request validation errors."""

    def __init__(
        self,
        detail: str = "The request data failed validation",
        errors: Optional[Dict[str, Any]] = None,
        instance: Optional[str] = None,
    ):
        extensions = {}
        if errors:
            extensions["errors"] = errors

        super().__init__(
            status_code=400,
            title="Validation Error",
            detail=detail,
            type_uri="https://tripmarket.example/problems/validation-error",
            instance=instance,
            extensions=extensions,
        )


class AuthenticationError(ProblemDetailsException):
    """Exception for authentication errors."""

    def __init__(
        self,
        detail: str = "Authentication credentials are required",
        instance: Optional[str] = None,
    ):
        super().__init__(
            status_code=401,
            title="Authentication Required",
            detail=detail,
            type_uri="https://tripmarket.example/problems/authentication-required",
            instance=instance,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(ProblemDetailsException):
    """Exception for authorization errors."""

    def __init__(
        self,
        detail: str = "Insufficient permissions to access this resource",
        required_roles: Optional[list] = None,
        instance: Optional[str] = None,
    ):
        extensions = {}
        if required_roles:
            extensions["required_roles"] = required_roles

        super().__init__(
            status_code=403,
            title="Access Forbidden",
            detail=detail,
            type_uri="https://tripmarket.example/problems/access-forbidden",
            instance=instance,
            extensions=extensions,
        )


class NotFoundError(ProblemDetailsException):
    """Exception for resource not found errors."""

    def __init__(
        self,
        resource_type: str = "resource",
        resource_id: Optional[str] = None,
        detail: Optional[str] = None,
        instance: Optional[str] = None,
        code: str = "RESOURCE_NOT_FOUND",
    ):
        if not detail:
            detail = f"The requested {resource_type}"
            if resource_id:
                detail += f" with ID '{resource_id}'"
            detail += " could not be found"

        extensions = {"resource_type": resource_type}
        if resource_id:
            extensions["resource_id"] = resource_id

        super().__init__(
            status_code=404,
            title="Resource Not Found",
            detail=detail,
            type_uri="https://tripmarket.example/problems/resource-not-found",
            instance=instance,
            extensions=extensions,
            code=code,
            retryable=False,
        )


class ConflictError(ProblemDetailsException):
    """The request is valid but clashes with the current state of a trip, booking or payment."""

    def __init__(
        self,
        detail: str = "The request conflicts with the current state of the resource",
        conflicting_resource: Optional[Dict[str, Any]] = None,
        instance: Optional[str] = None,
        code: str = "CONFLICT",
        extensions: Optional[Dict[str, Any]] = None,
    ):
        extensions = dict(extensions or {})
        if conflicting_resource:
            extensions["conflicting_resource"] = conflicting_resource

        super().__init__(
            status_code=409,
            title="Resource Conflict",
            detail=detail,
            type_uri=f"https://tripmarket.example/problems/{code.lower().replace('_', '-')}",
            instance=instance,
            extensions=extensions,
            code=code,
            retryable=False,
        )


# Business logic exceptions

class InvalidSeatCountError(ProblemDetailsException):
    """Requested seat count is below one or above what the trip has left."""

    def __init__(self, requested_seats: int, remaining_seats: Optional[int] = None):
        if requested_seats < 1:
            detail = f"At least one seat must be requested (got {requested_seats})"
        else:
            detail = f"Requested {requested_seats} seats but only {remaining_seats} remain"

        extensions: Dict[str, Any] = {"requested_seats": requested_seats}
        if remaining_seats is not None:
            extensions["remaining_seats"] = remaining_seats

        super().__init__(
            status_code=422,
            title="Invalid Seat Count",
            detail=detail,
            type_uri="https://tripmarket.example/problems/invalid-seat-count",
            extensions=extensions,
            code="INVALID_SEAT_COUNT",
            retryable=False,
        )


class InvalidPricingConfigError(ProblemDetailsException):
    """Trip pricing rules cannot produce a valid price."""

    def __init__(self, detail: str, field: Optional[str] = None):
        super().__init__(
            status_code=422,
            title="Invalid Pricing Configuration",
            detail=detail,
            type_uri="https://tripmarket.example/problems/invalid-pricing-config",
            extensions={"field": field} if field else None,
            code="INVALID_PRICING_CONFIG",
            retryable=False,
        )


class InsufficientCapacityError(ConflictError):
    """Not enough seats left to grant a hold."""

    def __init__(self, trip_id: str, requested_seats: int, remaining_seats: int):
        super().__init__(
            detail=f"Trip {trip_id} has insufficient capacity. "
                   f"Requested: {requested_seats}, Remaining: {remaining_seats}",
            conflicting_resource={"trip_id": trip_id, "requested_seats": requested_seats},
            code="INSUFFICIENT_CAPACITY",
            extensions={"remaining_seats": remaining_seats},
        )
        self.remaining_seats = remaining_seats


class TripInactiveError(ConflictError):
    """Trip has been deactivated and takes no new bookings."""

    def __init__(self, trip_id: str):
        super().__init__(
            detail=f"Trip {trip_id} is not accepting bookings",
            conflicting_resource={"trip_id": trip_id},
            code="TRIP_INACTIVE",
        )


class InvalidTransitionError(ConflictError):
    """A booking cannot move from its current state to the requested one."""

    def __init__(self, booking_id: str, current_status: str, target_status: str):
        super().__init__(
            detail=f"Booking {booking_id} cannot move from '{current_status}' to '{target_status}'",
            conflicting_resource={
                "booking_id": booking_id,
                "current_status": current_status,
                "target_status": target_status,
            },
            code="INVALID_TRANSITION",
        )


class AmountMismatchError(ConflictError):
    """
    A payment signal carried a different amount or currency than the booking total.

    By the time this is raised the payment and its review flag are already
    recorded; the booking stays pending.
    """

    def __init__(
        self,
        booking_id: str,
        expected_amount: int,
        received_amount: int,
        expected_currency: str,
        received_currency: str,
    ):
        super().__init__(
            detail=f"Payment for booking {booking_id} was {received_amount} {received_currency}, "
                   f"expected {expected_amount} {expected_currency}",
            conflicting_resource={"booking_id": booking_id},
            code="AMOUNT_MISMATCH",
            extensions={
                "expected_amount": expected_amount,
                "received_amount": received_amount,
                "expected_currency": expected_currency,
                "received_currency": received_currency,
            },
        )
        self.booking_id = booking_id


class UnknownBookingError(NotFoundError):
    """A payment signal referenced a booking that does not exist."""

    def __init__(self, booking_id: str):
        super().__init__(resource_type="booking", resource_id=booking_id, code="UNKNOWN_BOOKING")


class PaymentGatewayError(ProblemDetailsException):
    """The payment gateway could not be reached or refused the request."""

    def __init__(self, detail: str = "The payment gateway is unavailable, please retry"):
        super().__init__(
            status_code=502,
            title="Payment Gateway Error",
            detail=detail,
            type_uri="https://tripmarket.example/problems/payment-gateway-error",
            code="PAYMENT_GATEWAY_ERROR",
            retryable=True,
        )


class PaymentSignatureError(ProblemDetailsException):
    """A payment confirmation failed signature verification."""

    def __init__(self, order_id: str):
        super().__init__(
            status_code=400,
            title="Invalid Payment Signature",
            detail=f"Signature verification failed for order {order_id}",
            type_uri="https://tripmarket.example/problems/invalid-payment-signature",
            code="INVALID_PAYMENT_SIGNATURE",
            retryable=False,
        )


def _trace_id(request: Request) -> Optional[str]:
    trace_context = getattr(request.state, "trace_context", None) or {}
    return trace_context.get("trace_id")


async def problem_details_handler(request: Request, exc: ProblemDetailsException) -> JSONResponse:
    """Render a domain error, stamping the request path and trace id for correlation."""
    content = dict(exc.problem_details)
    content.setdefault("instance", request.url.path)
    trace_id = _trace_id(request)
    if trace_id:
        content["trace_id"] = trace_id

    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=exc.headers,
        media_type=PROBLEM_JSON,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render FastAPI body/query validation failures as Problem Details with violations."""
    violations = [
        {
            "path": ".".join(str(part) for part in error.get("loc", ())),
            "message": error.get("msg", "Invalid value"),
        }
        for error in exc.errors()
    ]

    return JSONResponse(
        status_code=422,
        content={
            "type": "https://tripmarket.example/problems/request-validation",
            "title": "Request Validation Failed",
            "status": 422,
            "detail": "One or more fields are invalid",
            "instance": request.url.path,
            "code": "REQUEST_VALIDATION",
            "retryable": False,
            "violations": violations,
        },
        media_type=PROBLEM_JSON,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Turn anything unexpected into a 500 whose error id also appears in the log."""
    error_id = str(uuid.uuid4())
    logger.error(
        "Unhandled exception",
        extra={"error_id": error_id, "path": request.url.path, "error": str(exc)},
        exc_info=exc,
    )

    return JSONResponse(
        status_code=500,
        content={
            "type": "https://tripmarket.example/problems/internal-server-error",
            "title": "Internal Server Error",
            "status": 500,
            "detail": "An unexpected error occurred while processing the request",
            "instance": request.url.path,
            "code": "INTERNAL_ERROR",
            "retryable": True,
            "error_id": error_id,
            "timestamp": utcnow().isoformat() + "Z",
        },
        media_type=PROBLEM_JSON,
    )
