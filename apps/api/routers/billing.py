from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Literal, Optional
from uuid import UUID

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from core.cache import get_cache, set_cache, subscription_cache_key
from core.config import settings
from core.database import get_db
from core.exceptions import (
    ConflictError,
    InsufficientIdentity,
    NotFoundError,
    PromoCodeRejectedError,
    PromoRejected,
    ServiceUnavailableError,
    SignatureInvalid,
    StripeNotConfigured,
    UpstreamUnavailable,
    UserNotResolvable,
    WriteFailed,
)
from models import User
from services.billing.checkout import CheckoutService
from services.billing.event_router import BillingEventRouter
from services.billing.gateway import StripeGateway
from services.billing.promo_policy import resolve_promo
from services.billing.signature import verify_event_signature
from services.billing.writer import mark_cancel_requested

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/billing", tags=["billing"])


def get_billing_gateway(request: Request) -> StripeGateway:
    """Stripe gateway sharing the app-wide circuit breaker state."""
    return StripeGateway(breaker_state=getattr(request.app.state, "breaker_state", None))


def _parse_uuid(value: Optional[str]) -> Optional[UUID]:
    try:
        return UUID(str(value)) if value else None
    except ValueError:
        return None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CheckoutRequest(BaseModel):
    price_id: Optional[str] = None
    billing_period: Literal["monthly", "annual"] = "monthly"
    promo_code: Optional[str] = Field(default=None, max_length=64)
    user_id: Optional[str] = None
    email: Optional[str] = Field(default=None, max_length=320)
    fingerprint_hash: Optional[str] = Field(default=None, max_length=128)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PromoValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    user_id: Optional[str] = None
    fingerprint_hash: Optional[str] = Field(default=None, max_length=128)
    order_amount_cents: Optional[int] = Field(default=None, ge=0)


class CancelRequest(BaseModel):
    at_period_end: bool = True


@router.post("/checkout")
def create_checkout(
    request: CheckoutRequest,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_billing_gateway),
):
    """
    Create a Stripe Checkout Session (subscription).
    Returns the hosted URL and session id.
    """
    try:
        result = CheckoutService(db, gateway=gateway).create_session(
            billing_period=request.billing_period,
            price_id=request.price_id,
            promo_code=request.promo_code,
            user_id=request.user_id,
            email=request.email,
            fingerprint_hash=request.fingerprint_hash,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
        )
    except PromoRejected as e:
        raise PromoCodeRejectedError(str(e), e.error_code)
    except (StripeNotConfigured, UpstreamUnavailable) as e:
        raise ServiceUnavailableError(str(e))
    except stripe.StripeError as e:
        logger.error(f"Stripe checkout creation failed: {e}", exc_info=True)
        raise HTTPException(status_code=502, detail="Payment provider error")
    return {"checkout_url": result.url, "session_id": result.session_id}


@router.post("/checkout/sessions/{session_id}/sync")
def sync_checkout_session(
    session_id: str,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_billing_gateway),
):
    """
    Success-redirect reconciliation: pull the finished checkout from Stripe
    and update the user now. The webhook later rewrites the same snapshot.
    """
    try:
        user = CheckoutService(db, gateway=gateway).sync_session(session_id)
    except (StripeNotConfigured, UpstreamUnavailable, WriteFailed) as e:
        raise ServiceUnavailableError(str(e))
    except stripe.InvalidRequestError:
        raise NotFoundError("Checkout session", session_id)
    except stripe.StripeError as e:
        logger.error(f"Stripe checkout sync failed: {e}", exc_info=True)
        raise HTTPException(status_code=502, detail="Payment provider error")
    except (InsufficientIdentity, UserNotResolvable) as e:
        raise ConflictError(str(e))

    if user is None:
        return {"synced": False, "session_id": session_id}
    return {"synced": True, "session_id": session_id, **_subscription_view(user)}


@router.post("/promo/validate")
def validate_promo(request: PromoValidateRequest, db: Session = Depends(get_db)):
    """Check a promo code without creating anything."""
    try:
        benefit = resolve_promo(
            db,
            request.code,
            user_id=_parse_uuid(request.user_id),
            fingerprint_hash=request.fingerprint_hash,
        )
    except PromoRejected as e:
        return {"valid": False, "error": str(e), "error_code": e.error_code}

    body = {"valid": True, "promo_code": benefit.as_dict()}
    if request.order_amount_cents is not None:
        body["discount_preview"] = benefit.discount_preview(request.order_amount_cents)
    return body


def _subscription_view(user: User) -> dict:
    now = datetime.now(timezone.utc)
    end = _as_utc(user.subscription_end_date)
    days_remaining = None
    if end is not None:
        days_remaining = max(0, (end - now).days)
    return {
        "user_id": str(user.id),
        "subscription_status": user.subscription_status,
        "subscription_type": user.subscription_type,
        "subscription_source": user.subscription_source,
        "current_plan": user.current_plan,
        "is_trial": user.is_trial,
        "cancel_at_period_end": user.cancel_at_period_end,
        "activation_date": user.subscription_activation_date,
        "start_date": user.subscription_start_date,
        "end_date": user.subscription_end_date,
        "next_billing_date": user.subscription_next_billing_date,
        "trial_end_date": user.subscription_trial_end_date,
        "amount_cents": user.subscription_amount_cents,
        "currency": user.subscription_currency,
        "is_currently_premium": user.is_premium and (end is None or end > now),
        "days_remaining": days_remaining,
    }


@router.get("/users/{user_id}/subscription")
def get_subscription(user_id: UUID, db: Session = Depends(get_db)):
    """Current subscription snapshot (cached briefly; writes invalidate)."""
    key = subscription_cache_key(user_id)
    cached = get_cache(key)
    if cached is not None:
        return cached

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise NotFoundError("User", str(user_id))
    view = _subscription_view(user)
    set_cache(key, view, ttl=settings.CACHE_TTL_SUBSCRIPTION)
    return view


@router.post("/users/{user_id}/cancel")
def cancel_subscription(
    user_id: UUID,
    request: CancelRequest,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_billing_gateway),
):
    """
    Cancel through Stripe. Local state follows via webhooks; only the
    cancel-at-period-end flag is mirrored right away.
    """
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise NotFoundError("User", str(user_id))
    if not user.stripe_subscription_id:
        raise ConflictError("No active subscription to cancel")

    try:
        gateway.cancel_subscription(user.stripe_subscription_id, at_period_end=request.at_period_end)
    except (StripeNotConfigured, UpstreamUnavailable) as e:
        raise ServiceUnavailableError(str(e))
    except stripe.StripeError as e:
        logger.error(f"Stripe cancellation failed: {e}", exc_info=True)
        raise HTTPException(status_code=502, detail="Payment provider error")

    mark_cancel_requested(db, user=user, at_period_end=request.at_period_end)
    return {
        "success": True,
        "at_period_end": request.at_period_end,
        "cancel_at_period_end": user.cancel_at_period_end,
    }


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_billing_gateway),
):
    """
    Stripe webhook endpoint.

    400 only for a missing/invalid signature, 500 only when the webhook
    secret is not configured. Every verified event gets 200, including
    events whose handler failed (see BillingEventRouter).
    """
    secret = settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Webhook configuration error")

    sig = request.headers.get("stripe-signature")
    if not sig:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")

    payload = await request.body()
    try:
        verify_event_signature(
            payload=payload,
            sig_header=sig,
            secret=secret,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_S,
        )
    except SignatureInvalid:
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    try:
        envelope = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid webhook payload")
    if not isinstance(envelope, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    # Handlers call the Stripe API and the database synchronously.
    await run_in_threadpool(BillingEventRouter(db, gateway=gateway).dispatch, envelope)
    return {"received": True}
