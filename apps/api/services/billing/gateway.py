from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Dict, Mapping, Optional

import stripe

from core.circuit_breaker import BreakerState, CircuitBreaker, InMemoryBreakerState
from core.config import settings
from core.exceptions import StripeNotConfigured

logger = logging.getLogger(__name__)

# Only network and server-side failures count toward opening the breaker.
TRANSIENT_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


@dataclass(frozen=True)
class CheckoutSessionResult:
    url: str
    session_id: str


def _to_plain(obj: Any) -> Dict[str, Any]:
    """StripeObject (or a plain mapping from a fake) -> dict."""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, Mapping):
        return dict(obj)
    raise TypeError(f"Unexpected Stripe response type: {type(obj).__name__}")


class StripeGateway:
    """
    The only place that talks to the Stripe API.

    Every call goes through the circuit breaker and is bounded by
    STRIPE_API_TIMEOUT_S. Credentials are checked per call so the webhook
    endpoint works (signature checks only) when the API key is absent.
    """

    def __init__(self, *, breaker_state: Optional[BreakerState] = None) -> None:
        self.breaker = CircuitBreaker(
            "stripe",
            state=breaker_state or InMemoryBreakerState(),
            failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            reset_after_s=settings.CIRCUIT_BREAKER_RESET_S,
            trip_on=TRANSIENT_STRIPE_ERRORS,
        )

    def _configure(self) -> None:
        if not settings.STRIPE_SECRET_KEY:
            raise StripeNotConfigured("Stripe not configured (missing: STRIPE_SECRET_KEY)")
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
        if not isinstance(stripe.default_http_client, stripe.RequestsClient):
            stripe.default_http_client = stripe.RequestsClient(timeout=settings.STRIPE_API_TIMEOUT_S)

    def _call(self, fn, *args: Any, **kwargs: Any) -> Any:
        self._configure()
        return self.breaker.call(fn, *args, **kwargs)

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        sub = self._call(
            stripe.Subscription.retrieve,
            subscription_id,
            expand=["customer", "discounts"],
        )
        return _to_plain(sub)

    def find_promotion_code(self, code: str) -> Optional[str]:
        """Active Stripe promotion code id for `code`, if one exists."""
        resp = self._call(stripe.PromotionCode.list, code=code, active=True, limit=1)
        data = list(getattr(resp, "data", None) or [])
        if not data:
            return None
        return str(data[0]["id"])

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return _to_plain(self._call(stripe.checkout.Session.retrieve, session_id))

    def create_checkout_session(self, params: Dict[str, Any]) -> CheckoutSessionResult:
        session = self._call(stripe.checkout.Session.create, **params)
        return CheckoutSessionResult(url=str(session["url"]), session_id=str(session["id"]))

    def cancel_subscription(self, subscription_id: str, *, at_period_end: bool = True) -> Dict[str, Any]:
        if at_period_end:
            sub = self._call(stripe.Subscription.modify, subscription_id, cancel_at_period_end=True)
        else:
            sub = self._call(stripe.Subscription.cancel, subscription_id)
        return _to_plain(sub)
