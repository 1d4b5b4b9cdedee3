from sqlalchemy import Column, Integer, BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Text, Index, UniqueConstraint, JSON, Uuid, event
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid
from datetime import datetime, timezone

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class User(Base):
    """
    One row per account.

    The subscription columns are a read-optimized mirror of Stripe state,
    overwritten as a whole by the subscription writer on every relevant
    webhook. Rows are never hard-deleted.
    """

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    email = Column(Text, unique=True, nullable=True)  # lowercased; null until first checkout
    display_name = Column(Text, nullable=True)
    stripe_customer_id = Column(Text, nullable=True, unique=True, index=True)

    # --- SUBSCRIPTION SNAPSHOT ---
    subscription_status = Column(Text, default="free", nullable=False)  # free | premium
    subscription_type = Column(Text, default="free", nullable=False)  # free | paid | promo
    # Promo code, "discount" or "payment"
    subscription_source = Column(Text, nullable=True)
    current_plan = Column(Text, default="free", nullable=False)  # monthly | annual | free
    is_trial = Column(Boolean, default=False, nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)

    subscription_activation_date = Column(DateTime(timezone=True), nullable=True)
    subscription_start_date = Column(DateTime(timezone=True), nullable=True)
    subscription_end_date = Column(DateTime(timezone=True), nullable=True)
    subscription_next_billing_date = Column(DateTime(timezone=True), nullable=True)
    subscription_trial_end_date = Column(DateTime(timezone=True), nullable=True)

    stripe_subscription_id = Column(Text, nullable=True, index=True)
    stripe_price_id = Column(Text, nullable=True)
    subscription_amount_cents = Column(Integer, nullable=True)
    subscription_currency = Column(Text, nullable=True)

    # --- RECONCILIATION BOOKKEEPING ---
    # Stripe `created` (unix seconds) of the last event applied to the snapshot.
    last_event_id = Column(Text, nullable=True)
    last_event_created = Column(BigInteger, nullable=True)
    last_payment_at = Column(DateTime(timezone=True), nullable=True)
    last_payment_failed_at = Column(DateTime(timezone=True), nullable=True)

    events = relationship("SubscriptionEvent", back_populates="user", lazy="dynamic")

    @property
    def is_premium(self) -> bool:
        return self.subscription_status == "premium"

    __table_args__ = (
        CheckConstraint("subscription_status IN ('free', 'premium')", name="ck_users_subscription_status"),
        CheckConstraint("subscription_type IN ('free', 'paid', 'promo')", name="ck_users_subscription_type"),
        CheckConstraint("current_plan IN ('free', 'monthly', 'annual')", name="ck_users_current_plan"),
    )


class SubscriptionEvent(Base):
    """
    Append-only audit log of webhook effects on users.

    Non-negotiable invariants:
    - write-only from the application (no update/delete in code paths)
    - event_data carries ids, flags and amounts only (no PII)
    """

    __tablename__ = "subscription_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    # Stripe event name (customer.subscription.updated) or a custom tag (billing.cancel_requested)
    event_type = Column(Text, nullable=False, index=True)
    stripe_event_id = Column(Text, nullable=True, index=True)
    event_data = Column(JSONType, nullable=False, default=dict)

    user = relationship("User", back_populates="events")


class PromoCode(Base):
    """
    Promotional code definition.

    Each code grants exactly one benefit mechanism:
    - discount_percent / discount_amount: coupon on the recurring price
    - free_trial / free_subscription: trial period before first charge
    The definition is validated on every insert/update (see listener below).
    """

    __tablename__ = "promo_codes"

    TYPES = ("free_subscription", "discount_percent", "discount_amount", "free_trial")

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(Text, unique=True, nullable=False)  # uppercase
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)

    type = Column(Text, nullable=False)
    discount_percent = Column(Integer, nullable=True)  # 0-100
    discount_amount_cents = Column(Integer, nullable=True)
    free_months = Column(Integer, nullable=True)
    trial_days = Column(Integer, nullable=True)

    # Limits (null max_uses = unlimited)
    max_uses = Column(Integer, nullable=True)
    current_uses = Column(Integer, default=0, nullable=False)
    max_uses_per_user = Column(Integer, default=1, nullable=False)

    # Validity window (null = open-ended)
    starts_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    active = Column(Boolean, default=True, nullable=False)

    # Matching Stripe promotion code (promo_...) for discount codes.
    stripe_promotion_code_id = Column(Text, nullable=True)
    promo_metadata = Column("metadata", JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    uses = relationship("PromoCodeUse", back_populates="promo_code", lazy="dynamic")

    __table_args__ = (
        CheckConstraint(
            "type IN ('free_subscription', 'discount_percent', 'discount_amount', 'free_trial')",
            name="ck_promo_codes_type",
        ),
        CheckConstraint(
            "discount_percent IS NULL OR (discount_percent >= 0 AND discount_percent <= 100)",
            name="ck_promo_codes_discount_percent",
        ),
        CheckConstraint("current_uses >= 0", name="ck_promo_codes_current_uses"),
        Index("ix_promo_codes_active", "active"),
    )


class PromoCodeUse(Base):
    """One row per redemption, keyed by user or anonymous fingerprint."""

    __tablename__ = "promo_code_uses"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    promo_code_id = Column(Uuid, ForeignKey("promo_codes.id"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=True, index=True)
    fingerprint_hash = Column(Text, nullable=True, index=True)
    stripe_subscription_id = Column(Text, nullable=True)

    order_amount_cents = Column(Integer, nullable=True)
    discount_applied_cents = Column(Integer, nullable=True)
    ip_hash = Column(Text, nullable=True)
    applied_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    promo_code = relationship("PromoCode", back_populates="uses")

    __table_args__ = (
        UniqueConstraint("promo_code_id", "stripe_subscription_id", name="uq_promo_code_uses_code_subscription"),
    )


@event.listens_for(PromoCode, "before_insert")
@event.listens_for(PromoCode, "before_update")
def _validate_promo_code_definition(mapper, connection, target):
    """Uppercase the code and reject mixed or incomplete definitions."""
    from services.billing.promo_policy import normalize_code, validate_promo_definition

    target.code = normalize_code(target.code)
    validate_promo_definition(target)
