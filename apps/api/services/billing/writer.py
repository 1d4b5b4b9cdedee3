"""
Subscription writer.

Applies a classified subscription to a user row and appends one audit event,
committed together. The snapshot is overwritten as a whole (last write
wins), so replaying an event reproduces the same row.

Event ordering: every write records the Stripe `created` timestamp of the
event that produced it. With BILLING_REJECT_STALE_EVENTS enabled, events
strictly older than the recorded one are rejected instead of regressing the
snapshot. Disabled by default.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.cache import delete_cache, subscription_cache_key
from core.config import settings
from core.exceptions import StaleEventRejected, WriteFailed
from models import SubscriptionEvent, User
from services.billing.classifier import ClassifiedSubscription
from services.billing.resolver import backfill_customer_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventContext:
    """Where a write came from: the Stripe event, or a local action tag."""

    event_type: str
    event_id: Optional[str] = None
    event_created: Optional[int] = None


def _reject_if_stale(user: User, ctx: EventContext) -> None:
    if not settings.BILLING_REJECT_STALE_EVENTS:
        return
    if ctx.event_created is None or user.last_event_created is None:
        return
    if int(ctx.event_created) < int(user.last_event_created):
        raise StaleEventRejected(
            f"Event {ctx.event_id} ({ctx.event_created}) is older than "
            f"{user.last_event_id} ({user.last_event_created})"
        )


def _stamp_event(user: User, ctx: EventContext) -> None:
    if ctx.event_created is None:
        return
    user.last_event_id = ctx.event_id
    user.last_event_created = int(ctx.event_created)


def _append_audit(db: Session, *, user: User, ctx: EventContext, data: Dict[str, Any]) -> None:
    db.add(
        SubscriptionEvent(
            user_id=user.id,
            event_type=ctx.event_type,
            stripe_event_id=ctx.event_id,
            event_data=data,
        )
    )


def _commit(db: Session, *, user: User, ctx: EventContext) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise WriteFailed(f"Could not persist {ctx.event_type} for user {user.id}: {e}") from e
    delete_cache(subscription_cache_key(user.id))


def apply_subscription(
    db: Session,
    *,
    user: User,
    classified: ClassifiedSubscription,
    ctx: EventContext,
) -> User:
    """Overwrite the user's subscription snapshot and log the change."""
    _reject_if_stale(user, ctx)

    backfill_customer_id(db, user, classified.customer_id)
    user.stripe_subscription_id = classified.subscription_id
    user.subscription_status = classified.subscription_status
    user.subscription_type = classified.subscription_type
    user.subscription_source = classified.source
    user.current_plan = classified.current_plan
    user.is_trial = classified.is_trialing
    user.cancel_at_period_end = classified.cancel_at_period_end

    user.subscription_activation_date = classified.activation_date
    user.subscription_start_date = classified.start_date
    user.subscription_end_date = classified.end_date
    user.subscription_next_billing_date = classified.next_billing_date
    user.subscription_trial_end_date = classified.trial_end_date

    user.stripe_price_id = classified.price_id
    user.subscription_amount_cents = classified.amount_cents
    user.subscription_currency = classified.currency
    _stamp_event(user, ctx)

    data = classified.audit_payload()
    data["amount"] = classified.amount_cents / 100
    _append_audit(db, user=user, ctx=ctx, data=data)
    _commit(db, user=user, ctx=ctx)

    logger.info(
        "Applied subscription snapshot",
        extra={
            "extra_fields": {
                "user_id": str(user.id),
                "event_id": ctx.event_id,
                "event_type": ctx.event_type,
                "subscription_id": classified.subscription_id,
                "subscription_status": user.subscription_status,
                "subscription_type": user.subscription_type,
            }
        },
    )
    return user


def revert_to_free(
    db: Session,
    *,
    user: User,
    subscription_id: str,
    ctx: EventContext,
) -> User:
    """
    Unconditional downgrade after the Stripe subscription is gone.

    Clears everything describing the old subscription; the customer link and
    activation date are kept.
    """
    _reject_if_stale(user, ctx)

    user.subscription_status = "free"
    user.subscription_type = "free"
    user.current_plan = "free"
    user.subscription_source = None
    user.stripe_subscription_id = None
    user.is_trial = False
    user.cancel_at_period_end = False
    user.subscription_start_date = None
    user.subscription_end_date = None
    user.subscription_next_billing_date = None
    user.subscription_trial_end_date = None
    user.stripe_price_id = None
    user.subscription_amount_cents = None
    user.subscription_currency = None
    _stamp_event(user, ctx)

    _append_audit(
        db,
        user=user,
        ctx=ctx,
        data={"subscription_id": subscription_id, "subscription_status": "free", "reason": "subscription_deleted"},
    )
    _commit(db, user=user, ctx=ctx)
    logger.info(
        "Reverted user to free",
        extra={"extra_fields": {"user_id": str(user.id), "event_id": ctx.event_id, "subscription_id": subscription_id}},
    )
    return user


def record_payment(
    db: Session,
    *,
    user: User,
    succeeded: bool,
    at: datetime,
    invoice_id: str,
    amount_cents: Optional[int],
    ctx: EventContext,
) -> User:
    """Payment bookkeeping only; never touches the subscription snapshot."""
    if succeeded:
        user.last_payment_at = at
    else:
        user.last_payment_failed_at = at
    _append_audit(
        db,
        user=user,
        ctx=ctx,
        data={"invoice_id": invoice_id, "amount_cents": amount_cents, "succeeded": succeeded},
    )
    _commit(db, user=user, ctx=ctx)
    return user


def mark_cancel_requested(db: Session, *, user: User, at_period_end: bool) -> User:
    """Mirror a user-initiated cancellation until Stripe's webhook arrives."""
    user.cancel_at_period_end = bool(at_period_end)
    ctx = EventContext(event_type="billing.cancel_requested")
    _append_audit(
        db,
        user=user,
        ctx=ctx,
        data={"subscription_id": user.stripe_subscription_id, "at_period_end": bool(at_period_end)},
    )
    _commit(db, user=user, ctx=ctx)
    return user
