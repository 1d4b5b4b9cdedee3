"""
Subscription classification.

Turns a Stripe subscription (plus optional checkout context) into the
normalized snapshot stored on the user row. Pure: no I/O, no clock.

Rules:
- is_trialing: status == "trialing"
- is_active:   status in {"active", "trialing"}
- is_promo:    a discount is attached (expanded or as a bare id) or stamped
               by checkout, OR a promo code came with a zero-amount checkout
               or a promo trial (policy toggle)
- dates:       trial_start/trial_end win over the billing period when present
               (policy toggle)
- plan:        "annual" for yearly prices, "monthly" otherwise
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.config import settings
from services.billing.events import StripeSubscription

ACTIVE_STATUSES = frozenset({"active", "trialing"})
DEFAULT_CURRENCY = "usd"


@dataclass(frozen=True)
class ClassifierPolicy:
    trial_dates_take_precedence: bool = True
    zero_amount_promo_is_promo: bool = True

    @classmethod
    def from_settings(cls) -> "ClassifierPolicy":
        return cls(
            trial_dates_take_precedence=settings.BILLING_TRIAL_DATES_TAKE_PRECEDENCE,
            zero_amount_promo_is_promo=settings.BILLING_ZERO_AMOUNT_PROMO_IS_PROMO,
        )


@dataclass(frozen=True)
class ClassifiedSubscription:
    subscription_id: str
    customer_id: Optional[str]
    status: str
    is_active: bool
    is_trialing: bool
    is_promo: bool
    subscription_type: str  # paid | promo
    source: str  # promo code | "discount" | "payment"
    promo_code: Optional[str]
    current_plan: str  # monthly | annual
    activation_date: Optional[datetime]
    start_date: Optional[datetime]
    end_date: Optional[datetime]
    next_billing_date: Optional[datetime]
    trial_end_date: Optional[datetime]
    price_id: Optional[str]
    amount_cents: int
    currency: str
    cancel_at_period_end: bool

    @property
    def subscription_status(self) -> str:
        return "premium" if self.is_active else "free"

    def audit_payload(self) -> Dict[str, Any]:
        """JSON-safe snapshot for the audit log."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        data["subscription_status"] = self.subscription_status
        return data


def from_unix(ts: Optional[int]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def _first_present(primary: Optional[int], fallback: Optional[int], *, prefer_primary: bool) -> Optional[int]:
    if prefer_primary:
        return primary if primary is not None else fallback
    return fallback if fallback is not None else primary


def classify_subscription(
    sub: StripeSubscription,
    *,
    promo_code: Optional[str] = None,
    checkout_amount_total: Optional[int] = None,
    policy: Optional[ClassifierPolicy] = None,
) -> ClassifiedSubscription:
    policy = policy or ClassifierPolicy()
    status = (sub.status or "").lower()
    is_trialing = status == "trialing"
    is_active = status in ACTIVE_STATUSES

    # Code from the checkout wins; otherwise whatever was stamped on the
    # subscription at checkout, then an expanded promotion code.
    code = promo_code or sub.metadata.get("promo_code") or None
    if not code and sub.discount is not None:
        code = sub.discount.promotion_code_text
    code = code.strip().upper() if code else None

    # Checkout stamps the promo mechanism on the subscription so later
    # updates classify the same way.
    mechanism = sub.metadata.get("promo_mechanism")
    has_discount = sub.has_discount or bool(code and mechanism == "discount")
    # A zero-amount checkout, or a trial granted by a promo code.
    free_period_from_promo = checkout_amount_total == 0 or mechanism == "trial"
    zero_amount_promo = bool(
        policy.zero_amount_promo_is_promo and code and free_period_from_promo
    )
    is_promo = has_discount or zero_amount_promo

    if code:
        source = code
    elif is_promo:
        source = "discount"
    else:
        source = "payment"

    prefer_trial = policy.trial_dates_take_precedence
    start_ts = _first_present(sub.trial_start, sub.period_start, prefer_primary=prefer_trial)
    end_ts = _first_present(sub.trial_end, sub.period_end, prefer_primary=prefer_trial)

    price = sub.price
    interval = price.interval if price else None

    return ClassifiedSubscription(
        subscription_id=sub.id,
        customer_id=sub.customer,
        status=status,
        is_active=is_active,
        is_trialing=is_trialing,
        is_promo=is_promo,
        subscription_type="promo" if is_promo else "paid",
        source=source,
        promo_code=code,
        current_plan="annual" if interval == "year" else "monthly",
        activation_date=from_unix(sub.created),
        start_date=from_unix(start_ts),
        end_date=from_unix(end_ts),
        # The next charge attempt happens when the trial (or period) ends.
        next_billing_date=from_unix(end_ts),
        trial_end_date=from_unix(sub.trial_end),
        price_id=price.id if price else None,
        amount_cents=int(price.unit_amount or 0) if price else 0,
        currency=(price.currency if price and price.currency else DEFAULT_CURRENCY).lower(),
        cancel_at_period_end=sub.scheduled_to_cancel,
    )
