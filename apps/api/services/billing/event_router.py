"""
Stripe webhook event routing.

Failure policy: nothing raised by a handler escapes `dispatch`. Errors are
logged with the event id, type and a redacted payload and reported to Sentry;
the webhook still answers 200 so Stripe does not redeliver an event that
will keep failing.
Dropped events are recovered from the logs and the audit table.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import sentry_sdk
from sqlalchemy.orm import Session

from core.exceptions import StaleEventRejected
from core.logging import redact
from models import User
from services.billing.classifier import ClassifierPolicy, classify_subscription, from_unix
from services.billing.events import (
    CheckoutSessionCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    StripeEvent,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
    TrialWillEnd,
    UnhandledEvent,
    parse_event,
)
from services.billing.checkout import reconcile_checkout_session
from services.billing.gateway import StripeGateway
from services.billing.resolver import find_by_customer_id, resolve_user
from services.billing.writer import EventContext, apply_subscription, record_payment, revert_to_free

logger = logging.getLogger(__name__)


class BillingEventRouter:
    def __init__(self, db: Session, *, gateway: StripeGateway, policy: Optional[ClassifierPolicy] = None) -> None:
        self.db = db
        self.gateway = gateway
        self.policy = policy or ClassifierPolicy.from_settings()
        self._handlers: Dict[type, Callable[[Any], Dict[str, Any]]] = {
            CheckoutSessionCompleted: self._checkout_completed,
            SubscriptionCreated: self._subscription_changed,
            SubscriptionUpdated: self._subscription_changed,
            SubscriptionDeleted: self._subscription_deleted,
            TrialWillEnd: self._trial_will_end,
            InvoicePaymentSucceeded: self._payment_succeeded,
            InvoicePaymentFailed: self._payment_failed,
            UnhandledEvent: self._unhandled,
        }

    def dispatch(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        event_id = str(payload.get("id") or "")
        event_type = str(payload.get("type") or "")
        log_fields = {"event_id": event_id, "event_type": event_type}

        try:
            event = parse_event(payload)
            result = self._handlers[type(event)](event)
        except StaleEventRejected as e:
            self.db.rollback()
            logger.info(f"Skipped stale Stripe event: {e}", extra={"extra_fields": log_fields})
            return {"handled": False, "reason": "stale_event", **log_fields}
        except Exception as e:
            self.db.rollback()
            logger.error(
                f"Stripe webhook handler failed: {type(e).__name__}: {e}",
                exc_info=True,
                extra={"extra_fields": {**log_fields, "error_type": type(e).__name__, "payload": redact(payload)}},
            )
            sentry_sdk.capture_exception(e)
            return {"handled": False, "error": type(e).__name__, **log_fields}

        return {**result, **log_fields}

    @staticmethod
    def _ctx(event: StripeEvent) -> EventContext:
        return EventContext(event_type=event.type, event_id=event.id, event_created=event.created)

    def _checkout_completed(self, event: CheckoutSessionCompleted) -> Dict[str, Any]:
        user = reconcile_checkout_session(
            self.db,
            gateway=self.gateway,
            session=event.data.object,
            ctx=self._ctx(event),
            policy=self.policy,
        )
        if user is None:
            return {"handled": False, "reason": "not_a_subscription_checkout"}
        return {"handled": True, "user_id": str(user.id), "subscription_status": user.subscription_status}

    def _subscription_changed(self, event: SubscriptionCreated) -> Dict[str, Any]:
        sub = event.data.object
        classified = classify_subscription(sub, policy=self.policy)
        user = resolve_user(
            self.db,
            email=sub.customer_email,
            customer_id=sub.customer,
            user_id=sub.metadata.get("user_id"),
        )
        apply_subscription(self.db, user=user, classified=classified, ctx=self._ctx(event))
        return {"handled": True, "user_id": str(user.id), "subscription_status": user.subscription_status}

    def _subscription_deleted(self, event: SubscriptionDeleted) -> Dict[str, Any]:
        sub = event.data.object
        user = self.db.query(User).filter(User.stripe_subscription_id == sub.id).first()
        if user is None:
            logger.warning(
                "Subscription deleted for unknown subscription id",
                extra={"extra_fields": {"event_id": event.id, "subscription_id": sub.id}},
            )
            return {"handled": False, "reason": "no_matching_user"}
        revert_to_free(self.db, user=user, subscription_id=sub.id, ctx=self._ctx(event))
        return {"handled": True, "user_id": str(user.id), "subscription_status": "free"}

    def _trial_will_end(self, event: TrialWillEnd) -> Dict[str, Any]:
        sub = event.data.object
        logger.info(
            "Trial ending soon",
            extra={
                "extra_fields": {
                    "event_id": event.id,
                    "subscription_id": sub.id,
                    "trial_end": sub.trial_end,
                }
            },
        )
        return {"handled": True, "mutated": False}

    def _record_invoice(self, event, *, succeeded: bool) -> Dict[str, Any]:
        invoice = event.data.object
        user = find_by_customer_id(self.db, invoice.customer) if invoice.customer else None
        if user is None:
            logger.info(
                "Invoice event for unknown customer",
                extra={"extra_fields": {"event_id": event.id, "invoice_id": invoice.id}},
            )
            return {"handled": False, "reason": "no_matching_user"}
        at = from_unix(invoice.created or event.created) or datetime.now(timezone.utc)
        record_payment(
            self.db,
            user=user,
            succeeded=succeeded,
            at=at,
            invoice_id=invoice.id,
            amount_cents=invoice.amount_paid if succeeded else invoice.amount_due,
            ctx=self._ctx(event),
        )
        return {"handled": True, "user_id": str(user.id)}

    def _payment_succeeded(self, event: InvoicePaymentSucceeded) -> Dict[str, Any]:
        return self._record_invoice(event, succeeded=True)

    def _payment_failed(self, event: InvoicePaymentFailed) -> Dict[str, Any]:
        return self._record_invoice(event, succeeded=False)

    def _unhandled(self, event: UnhandledEvent) -> Dict[str, Any]:
        logger.info(f"Unhandled Stripe event type: {event.type}", extra={"extra_fields": {"event_id": event.id}})
        return {"handled": False, "reason": "unhandled_event_type"}
