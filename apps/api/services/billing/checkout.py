from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import StripeNotConfigured, UnknownPromoCode
from models import User
from services.billing.classifier import ClassifierPolicy, classify_subscription
from services.billing.events import CheckoutSession, StripeSubscription
from services.billing.gateway import CheckoutSessionResult, StripeGateway
from services.billing.promo_policy import (
    MECHANISM_DISCOUNT,
    PromoBenefit,
    normalize_code,
    record_redemption,
    resolve_promo,
)
from services.billing.resolver import find_existing_user, normalize_email, resolve_user
from services.billing.writer import EventContext, apply_subscription

logger = logging.getLogger(__name__)


def _price_for(billing_period: str, price_id: Optional[str]) -> str:
    if price_id:
        return price_id
    if billing_period == "annual" and settings.STRIPE_PRICE_ANNUAL_ID:
        return settings.STRIPE_PRICE_ANNUAL_ID
    if settings.STRIPE_PRICE_MONTHLY_ID:
        return settings.STRIPE_PRICE_MONTHLY_ID
    raise StripeNotConfigured("Stripe not configured (missing: STRIPE_PRICE_MONTHLY_ID)")


def _default_urls() -> Dict[str, str]:
    base = settings.WEB_APP_BASE_URL.rstrip("/")
    return {
        "success_url": f"{base}/account-settings?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{base}/pricing?checkout=cancel",
    }


class CheckoutService:
    def __init__(self, db: Session, *, gateway: StripeGateway) -> None:
        self.db = db
        self.gateway = gateway

    def _stripe_promotion_code(self, benefit: PromoBenefit) -> str:
        promotion_code_id = benefit.stripe_promotion_code_id or self.gateway.find_promotion_code(benefit.code)
        if not promotion_code_id:
            logger.warning(
                "Promo code has no active Stripe promotion code",
                extra={"extra_fields": {"promo_code": benefit.code}},
            )
            raise UnknownPromoCode("Promo code is not available for checkout")
        return promotion_code_id

    @staticmethod
    def _apply_promo(params: Dict[str, Any], benefit: PromoBenefit, promotion_code_id: Optional[str]) -> None:
        sub_meta = params["subscription_data"]["metadata"]
        sub_meta["promo_code"] = benefit.code
        sub_meta["promo_mechanism"] = benefit.mechanism

        if benefit.mechanism == MECHANISM_DISCOUNT:
            params["discounts"] = [{"promotion_code": promotion_code_id}]
        else:
            params["subscription_data"]["trial_period_days"] = int(benefit.trial_days)

    def create_session(
        self,
        *,
        billing_period: str = "monthly",
        price_id: Optional[str] = None,
        promo_code: Optional[str] = None,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        fingerprint_hash: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutSessionResult:
        """
        Create a hosted Stripe Checkout session for a subscription.

        The promo code is resolved before anything is written or sent to
        Stripe; a rejected code raises a PromoRejected subclass.
        """
        price = _price_for(billing_period, price_id)
        email = normalize_email(email)

        existing: Optional[User] = None
        if user_id or email:
            existing = find_existing_user(self.db, user_id=user_id, email=email)

        benefit: Optional[PromoBenefit] = None
        promotion_code_id: Optional[str] = None
        code = normalize_code(promo_code)
        if code:
            benefit = resolve_promo(
                self.db,
                code,
                user_id=existing.id if existing else None,
                fingerprint_hash=fingerprint_hash,
            )
            if benefit.mechanism == MECHANISM_DISCOUNT:
                promotion_code_id = self._stripe_promotion_code(benefit)

        # Anonymous checkout with an email gets an account now so the
        # webhook has a row to land on.
        user = existing
        if user is None and email:
            user = resolve_user(self.db, email=email)
            self.db.commit()

        urls = _default_urls()
        metadata = {
            "user_id": str(user.id) if user else "",
            "billing_period": billing_period,
            "promo_code": benefit.code if benefit else "",
            "fingerprint_hash": fingerprint_hash or "",
            "source": "web_app",
        }
        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price, "quantity": 1}],
            "success_url": success_url or urls["success_url"],
            "cancel_url": cancel_url or urls["cancel_url"],
            "metadata": metadata,
            "subscription_data": {
                "metadata": {"user_id": metadata["user_id"]},
            },
        }
        if user is not None:
            params["client_reference_id"] = str(user.id)
            if user.stripe_customer_id:
                params["customer"] = user.stripe_customer_id
            elif user.email:
                params["customer_email"] = user.email
        elif email:
            params["customer_email"] = email

        if benefit is not None:
            self._apply_promo(params, benefit, promotion_code_id)

        result = self.gateway.create_checkout_session(params)
        logger.info(
            "Created checkout session",
            extra={
                "extra_fields": {
                    "session_id": result.session_id,
                    "user_id": metadata["user_id"] or None,
                    "billing_period": billing_period,
                    "promo_code": metadata["promo_code"] or None,
                }
            },
        )
        return result


    def sync_session(self, session_id: str, *, policy: Optional[ClassifierPolicy] = None) -> Optional[User]:
        """
        Reconcile a completed checkout right after Stripe's success redirect,
        without waiting for the webhook. Returns None while the session is
        still open or was not a subscription checkout.
        """
        session = CheckoutSession.model_validate(self.gateway.retrieve_checkout_session(session_id))
        if session.status != "complete":
            logger.info(
                "Checkout session not complete yet",
                extra={"extra_fields": {"session_id": session.id, "status": session.status}},
            )
            return None
        return reconcile_checkout_session(
            self.db,
            gateway=self.gateway,
            session=session,
            ctx=EventContext(event_type="checkout.success_sync"),
            policy=policy,
        )


def reconcile_checkout_session(
    db: Session,
    *,
    gateway: StripeGateway,
    session: CheckoutSession,
    ctx: EventContext,
    policy: Optional[ClassifierPolicy] = None,
) -> Optional[User]:
    """
    Fetch the session's subscription, resolve (or create) its user, record
    any promo redemption and overwrite the snapshot. Shared by the
    checkout.session.completed webhook and the success-redirect sync, so
    whichever lands second rewrites the same row.
    """
    if session.mode != "subscription" or not session.subscription:
        logger.info(
            "Checkout completed without a subscription",
            extra={"extra_fields": {"event_id": ctx.event_id, "session_id": session.id, "mode": session.mode}},
        )
        return None

    sub = StripeSubscription.model_validate(gateway.retrieve_subscription(session.subscription))
    classified = classify_subscription(
        sub,
        promo_code=session.promo_code,
        checkout_amount_total=session.amount_total,
        policy=policy or ClassifierPolicy.from_settings(),
    )
    user = resolve_user(
        db,
        email=sub.customer_email or session.email,
        customer_id=sub.customer or session.customer,
        user_id=session.user_id_hint,
    )
    if session.promo_code:
        record_redemption(
            db,
            code=session.promo_code,
            user_id=user.id,
            subscription_id=sub.id,
            fingerprint_hash=session.metadata.get("fingerprint_hash") or None,
            order_amount_cents=classified.amount_cents,
        )
    return apply_subscription(db, user=user, classified=classified, ctx=ctx)
