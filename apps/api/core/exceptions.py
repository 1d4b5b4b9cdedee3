"""
Custom exception classes and error handling.

Two families live here:
- APIException and subclasses: HTTP-facing, raised from routers.
- BillingError and subclasses: domain errors raised by services/billing and
  translated at the router (checkout, promo) or swallowed-and-logged at the
  webhook event router boundary.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class ConflictError(APIException):
    """Request conflicts with current state."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code="CONFLICT"
        )


class PromoCodeRejectedError(APIException):
    """User-facing promo code rejection (checkout and validation)."""

    def __init__(self, detail: str, error_code: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code=error_code
        )


class ServiceUnavailableError(APIException):
    """Upstream dependency missing or tripped."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code="SERVICE_UNAVAILABLE"
        )


# ---------------------------------------------------------------------------
# Billing domain errors
# ---------------------------------------------------------------------------


class BillingError(Exception):
    """Base class for billing pipeline failures."""


class SignatureInvalid(BillingError):
    """Webhook did not come from the payment processor (or was altered)."""


class InsufficientIdentity(BillingError):
    """No email, customer id or user id to resolve an account from."""


class UserNotResolvable(BillingError):
    """Only a customer id was given and no account carries it."""


class PromoRejected(BillingError):
    """A promo code cannot be applied. Message is safe to show to the user."""

    error_code = "PromoRejected"


class UnknownPromoCode(PromoRejected):
    error_code = "UnknownPromoCode"

    def __init__(self, message: str = "Invalid promo code"):
        super().__init__(message)


class PromoExpired(PromoRejected):
    error_code = "PromoExpired"


class PromoExhausted(PromoRejected):
    error_code = "PromoExhausted"


class PromoConfigurationError(BillingError):
    """A promo code definition mixes benefit mechanisms or lacks a magnitude."""


class WriteFailed(BillingError):
    """Persisting a subscription snapshot failed; the transaction was rolled back."""


class StaleEventRejected(BillingError):
    """Event is older than the last one applied to the user (stale guard enabled)."""


class UpstreamUnavailable(BillingError):
    """Circuit breaker is open for an upstream API."""


class StripeNotConfigured(RuntimeError):
    """Stripe credentials are missing from the environment."""
