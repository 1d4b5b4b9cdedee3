"""
Typed Stripe webhook envelopes.

Every handled event type is one variant of a tagged union discriminated on
`type`; anything else parses to `UnhandledEvent`. Stripe objects carry far
more fields than we read, so models ignore extras.

Stripe API compatibility notes:
- Newer API versions move `current_period_start/end` from the subscription
  onto `items.data[*]`; `StripeSubscription.period_start/period_end` fall back.
- Expandable references (`customer`, `subscription`, `promotion_code`,
  `discounts[*]`) arrive either as an id string or an expanded object; both
  are accepted.
"""
from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


def _ref_id(value: Any) -> Any:
    """Collapse an expanded Stripe object to its id."""
    if isinstance(value, dict):
        return value.get("id")
    return value


class _StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Recurring(_StripeModel):
    interval: Optional[str] = None
    interval_count: Optional[int] = None


class Price(_StripeModel):
    id: Optional[str] = None
    unit_amount: Optional[int] = None
    currency: Optional[str] = None
    recurring: Optional[Recurring] = None

    @property
    def interval(self) -> Optional[str]:
        return self.recurring.interval if self.recurring else None


class SubscriptionItem(_StripeModel):
    id: Optional[str] = None
    price: Optional[Price] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class ItemList(_StripeModel):
    data: List[SubscriptionItem] = Field(default_factory=list)


class Coupon(_StripeModel):
    id: Optional[str] = None
    percent_off: Optional[float] = None
    amount_off: Optional[int] = None
    duration: Optional[str] = None
    duration_in_months: Optional[int] = None


class Discount(_StripeModel):
    id: Optional[str] = None
    coupon: Optional[Coupon] = None
    promotion_code: Optional[str] = None
    # Present only when promotion_code was expanded.
    promotion_code_text: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if isinstance(data.get("promotion_code"), dict):
            data.setdefault("promotion_code_text", data["promotion_code"].get("code"))
        # Newer API versions nest the coupon under `source`.
        source = data.get("source")
        if data.get("coupon") is None and isinstance(source, dict):
            data["coupon"] = source.get("coupon")
        return data

    @field_validator("promotion_code", mode="before")
    @classmethod
    def _promotion_code_id(cls, v: Any) -> Any:
        return _ref_id(v)


class StripeSubscription(_StripeModel):
    id: str
    status: str
    customer: Optional[str] = None
    # Filled only when `customer` was expanded.
    customer_email: Optional[str] = None
    created: Optional[int] = None
    trial_start: Optional[int] = None
    trial_end: Optional[int] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    cancel_at: Optional[int] = None
    discount: Optional[Discount] = None
    # Ids of every attached discount, expanded or not.
    discount_ids: List[str] = Field(default_factory=list)
    items: ItemList = Field(default_factory=ItemList)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if isinstance(data.get("customer"), dict):
            data.setdefault("customer_email", data["customer"].get("email"))
        # Newer API versions replace `discount` with a `discounts` list whose
        # entries are ids unless expanded.
        discounts = [d for d in (data.get("discounts") or []) if d]
        data["discount_ids"] = [str(_ref_id(d)) for d in discounts if _ref_id(d)]
        if data.get("discount") is None:
            expanded = [d for d in discounts if isinstance(d, dict)]
            if expanded:
                data["discount"] = expanded[0]
        return data

    @field_validator("customer", mode="before")
    @classmethod
    def _customer_id(cls, v: Any) -> Any:
        return _ref_id(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_dict(cls, v: Any) -> Any:
        return v or {}

    @field_validator("cancel_at_period_end", mode="before")
    @classmethod
    def _cancel_flag(cls, v: Any) -> Any:
        return bool(v)

    @property
    def has_discount(self) -> bool:
        return self.discount is not None or bool(self.discount_ids)

    @property
    def price(self) -> Optional[Price]:
        for item in self.items.data:
            if item.price is not None:
                return item.price
        return None

    @property
    def period_start(self) -> Optional[int]:
        if self.current_period_start is not None:
            return self.current_period_start
        starts = [i.current_period_start for i in self.items.data if i.current_period_start is not None]
        return min(starts) if starts else None

    @property
    def period_end(self) -> Optional[int]:
        if self.current_period_end is not None:
            return self.current_period_end
        ends = [i.current_period_end for i in self.items.data if i.current_period_end is not None]
        return max(ends) if ends else None

    @property
    def scheduled_to_cancel(self) -> bool:
        """
        Legacy flag, or a `cancel_at` matching the period end (newer API
        versions schedule cancellations through `cancel_at`).
        """
        if self.cancel_at_period_end:
            return True
        if self.cancel_at is None:
            return False
        return self.period_end is None or int(self.cancel_at) == int(self.period_end)


class CustomerDetails(_StripeModel):
    email: Optional[str] = None


class CheckoutSession(_StripeModel):
    id: str
    mode: Optional[str] = None
    status: Optional[str] = None  # open | complete | expired
    customer: Optional[str] = None
    customer_email: Optional[str] = None
    customer_details: Optional[CustomerDetails] = None
    subscription: Optional[str] = None
    client_reference_id: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def _ref(cls, v: Any) -> Any:
        return _ref_id(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_dict(cls, v: Any) -> Any:
        return v or {}

    @property
    def email(self) -> Optional[str]:
        if self.customer_details and self.customer_details.email:
            return self.customer_details.email
        return self.customer_email

    @property
    def promo_code(self) -> Optional[str]:
        code = (self.metadata.get("promo_code") or "").strip()
        return code.upper() or None

    @property
    def user_id_hint(self) -> Optional[str]:
        return self.metadata.get("user_id") or self.client_reference_id or None


class Invoice(_StripeModel):
    id: str
    customer: Optional[str] = None
    customer_email: Optional[str] = None
    subscription: Optional[str] = None
    amount_paid: Optional[int] = None
    amount_due: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    created: Optional[int] = None

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def _ref(cls, v: Any) -> Any:
        return _ref_id(v)


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class _EventBase(_StripeModel):
    id: str
    created: Optional[int] = None
    livemode: bool = False


class _SubscriptionData(_StripeModel):
    object: StripeSubscription


class _CheckoutData(_StripeModel):
    object: CheckoutSession


class _InvoiceData(_StripeModel):
    object: Invoice


class CheckoutSessionCompleted(_EventBase):
    type: Literal["checkout.session.completed"]
    data: _CheckoutData


class SubscriptionCreated(_EventBase):
    type: Literal["customer.subscription.created"]
    data: _SubscriptionData


class SubscriptionUpdated(_EventBase):
    type: Literal["customer.subscription.updated"]
    data: _SubscriptionData


class SubscriptionDeleted(_EventBase):
    type: Literal["customer.subscription.deleted"]
    data: _SubscriptionData


class TrialWillEnd(_EventBase):
    type: Literal["customer.subscription.trial_will_end"]
    data: _SubscriptionData


class InvoicePaymentSucceeded(_EventBase):
    type: Literal["invoice.payment_succeeded"]
    data: _InvoiceData


class InvoicePaymentFailed(_EventBase):
    type: Literal["invoice.payment_failed"]
    data: _InvoiceData


class UnhandledEvent(_EventBase):
    """Any event type without a handler. Kept for logging only."""

    type: str


HandledEvent = Annotated[
    Union[
        CheckoutSessionCompleted,
        SubscriptionCreated,
        SubscriptionUpdated,
        SubscriptionDeleted,
        TrialWillEnd,
        InvoicePaymentSucceeded,
        InvoicePaymentFailed,
    ],
    Field(discriminator="type"),
]

StripeEvent = Union[
    CheckoutSessionCompleted,
    SubscriptionCreated,
    SubscriptionUpdated,
    SubscriptionDeleted,
    TrialWillEnd,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    UnhandledEvent,
]

HANDLED_EVENT_TYPES = frozenset({
    "checkout.session.completed",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "customer.subscription.trial_will_end",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
})

_handled_adapter: TypeAdapter = TypeAdapter(HandledEvent)


def parse_event(payload: Dict[str, Any]) -> StripeEvent:
    """
    Validate a decoded webhook body into its event variant.

    Raises pydantic.ValidationError when a handled type carries a malformed
    object; unknown types never fail validation beyond id/type.
    """
    if payload.get("type") in HANDLED_EVENT_TYPES:
        return _handled_adapter.validate_python(payload)
    return UnhandledEvent.model_validate(payload)
