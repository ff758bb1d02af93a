# backend/carshare/core/exceptions.py
"""
Domain-specific exceptions for the car rental platform.

These exceptions carry a short machine-readable code plus a human
message ("CONFLICT: Car already booked for selected dates.") so the
client can render localized copy without the backend knowing about it.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code: Optional[str] = None

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.default_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when user input fails validation (bad dates, amounts, URLs)."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "INVALID_INPUT"


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND
    default_code = "NOT_FOUND"


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT
    default_code = "CONFLICT"


class UnauthorizedException(DomainException):
    """Raised when user is not authenticated."""

    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = "UNAUTHORIZED"


class ForbiddenException(DomainException):
    """Raised when user lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN
    default_code = "FORBIDDEN"


class UnavailableException(DomainException):
    """Raised when a dependency (host payouts, a feature flag) is not ready."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "UNAVAILABLE"


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Specific business exceptions


class BookingConflictException(ConflictException):
    """Raised when a booking overlaps an existing active booking for the same car."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message or "CONFLICT: Car already booked for selected dates.",
            code="CONFLICT",
            details=details or {},
        )


class PaymentProcessorException(ServiceException):
    """
    Raised when a call to the payment processor fails.

    ``transient`` marks failures (network, rate limit, processor outage) that
    the scheduler should retry on its next firing rather than fail outright.
    """

    status_code = status.HTTP_502_BAD_GATEWAY
    default_code = "PROCESSOR_ERROR"

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.transient = transient


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """
