"""
Promo code policy.

A promo code grants exactly one of two checkout mechanisms:

- discount: percent or fixed amount off the recurring price, applied through
  a Stripe promotion code on the checkout session
- trial:    free days before the first charge, applied through
  `subscription_data.trial_period_days`

`free_trial` codes grant `trial_days`; `free_subscription` codes grant
`free_months` worth of trial days. Definitions that carry magnitudes for the
other mechanism are rejected when saved (see models.PromoCode listener) and
when loaded.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import (
    PromoConfigurationError,
    PromoExhausted,
    PromoExpired,
    UnknownPromoCode,
)
from models import PromoCode, PromoCodeUse

logger = logging.getLogger(__name__)

MECHANISM_DISCOUNT = "discount"
MECHANISM_TRIAL = "trial"

_DISCOUNT_FIELDS = ("discount_percent", "discount_amount_cents")
_TRIAL_FIELDS = ("free_months", "trial_days")

# type -> (mechanism, field that must be > 0)
_TYPE_RULES = {
    "discount_percent": (MECHANISM_DISCOUNT, "discount_percent"),
    "discount_amount": (MECHANISM_DISCOUNT, "discount_amount_cents"),
    "free_trial": (MECHANISM_TRIAL, "trial_days"),
    "free_subscription": (MECHANISM_TRIAL, "free_months"),
}


@dataclass(frozen=True)
class PromoBenefit:
    promo_code_id: UUID
    code: str
    name: str
    type: str
    mechanism: str  # discount | trial
    discount_percent: Optional[int] = None
    discount_amount_cents: Optional[int] = None
    trial_days: Optional[int] = None
    stripe_promotion_code_id: Optional[str] = None

    def discount_preview(self, order_amount_cents: int) -> Dict[str, int]:
        """What the first invoice would look like with this code applied."""
        amount = max(0, int(order_amount_cents))
        if self.type == "discount_percent":
            discount = round(amount * (self.discount_percent or 0) / 100)
        elif self.type == "discount_amount":
            discount = min(self.discount_amount_cents or 0, amount)
        else:
            # Trials make the first invoice free.
            discount = amount
        return {
            "original_amount_cents": amount,
            "discount_amount_cents": discount,
            "final_amount_cents": amount - discount,
        }

    def as_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "type": self.type,
            "mechanism": self.mechanism,
            "discount_percent": self.discount_percent,
            "discount_amount_cents": self.discount_amount_cents,
            "trial_days": self.trial_days,
        }


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def validate_promo_definition(promo: Any) -> str:
    """
    Check a promo definition grants exactly one mechanism with a magnitude.

    Accepts a PromoCode row or anything with the same attributes. Returns the
    mechanism; raises PromoConfigurationError otherwise.
    """
    promo_type = getattr(promo, "type", None)
    code = getattr(promo, "code", None)
    rule = _TYPE_RULES.get(promo_type)
    if rule is None:
        raise PromoConfigurationError(f"Promo {code}: unknown type {promo_type!r}")
    mechanism, magnitude_field = rule

    magnitude = getattr(promo, magnitude_field, None)
    if magnitude is None or magnitude <= 0:
        raise PromoConfigurationError(f"Promo {code}: {promo_type} requires {magnitude_field} > 0")

    if promo_type == "discount_percent" and magnitude > 100:
        raise PromoConfigurationError(f"Promo {code}: discount_percent must be <= 100")

    # The other mechanism's fields must be empty, as must sibling magnitudes.
    for field in _DISCOUNT_FIELDS + _TRIAL_FIELDS:
        if field == magnitude_field:
            continue
        if getattr(promo, field, None):
            raise PromoConfigurationError(
                f"Promo {code}: {promo_type} cannot also set {field}"
            )
    return mechanism


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def benefit_for(promo: PromoCode) -> PromoBenefit:
    mechanism = validate_promo_definition(promo)
    trial_days = None
    if promo.type == "free_trial":
        trial_days = int(promo.trial_days)
    elif promo.type == "free_subscription":
        trial_days = int(promo.free_months) * settings.PROMO_DAYS_PER_FREE_MONTH
    return PromoBenefit(
        promo_code_id=promo.id,
        code=promo.code,
        name=promo.name,
        type=promo.type,
        mechanism=mechanism,
        discount_percent=promo.discount_percent if promo.type == "discount_percent" else None,
        discount_amount_cents=promo.discount_amount_cents if promo.type == "discount_amount" else None,
        trial_days=trial_days,
        stripe_promotion_code_id=promo.stripe_promotion_code_id,
    )


def _uses_by(db: Session, promo: PromoCode, *, user_id: Optional[UUID], fingerprint_hash: Optional[str]) -> int:
    q = db.query(func.count(PromoCodeUse.id)).filter(PromoCodeUse.promo_code_id == promo.id)
    if user_id is not None:
        q = q.filter(PromoCodeUse.user_id == user_id)
    elif fingerprint_hash:
        q = q.filter(PromoCodeUse.fingerprint_hash == fingerprint_hash)
    else:
        return 0
    return int(q.scalar() or 0)


def resolve_promo(
    db: Session,
    code: Optional[str],
    *,
    user_id: Optional[UUID] = None,
    fingerprint_hash: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PromoBenefit:
    """
    Look up a code and check it can still be redeemed by this user/device.

    Raises UnknownPromoCode, PromoExpired (ended or not yet started) or
    PromoExhausted (global or per-user/per-device limit reached).
    """
    normalized = normalize_code(code)
    if not normalized:
        raise UnknownPromoCode()
    now = now or datetime.now(timezone.utc)

    promo = (
        db.query(PromoCode)
        .filter(PromoCode.code == normalized, PromoCode.active.is_(True))
        .first()
    )
    if promo is None:
        raise UnknownPromoCode()

    expires_at = _as_utc(promo.expires_at)
    if expires_at is not None and expires_at < now:
        raise PromoExpired("Promo code has expired")
    starts_at = _as_utc(promo.starts_at)
    if starts_at is not None and starts_at > now:
        raise PromoExpired("Promo code is not yet active")

    if promo.max_uses is not None and promo.current_uses >= promo.max_uses:
        raise PromoExhausted("Promo code usage limit reached")

    per_user = promo.max_uses_per_user or 1
    if user_id is not None and _uses_by(db, promo, user_id=user_id, fingerprint_hash=None) >= per_user:
        raise PromoExhausted("You have already used this promo code")
    if fingerprint_hash and _uses_by(db, promo, user_id=None, fingerprint_hash=fingerprint_hash) >= per_user:
        raise PromoExhausted("This promo code has already been used on this device")

    return benefit_for(promo)


def record_redemption(
    db: Session,
    *,
    code: str,
    user_id: Optional[UUID],
    subscription_id: Optional[str],
    fingerprint_hash: Optional[str] = None,
    order_amount_cents: Optional[int] = None,
) -> bool:
    """
    Record one use of `code` for a subscription and bump its counter.

    Idempotent per (code, subscription): webhook redeliveries do not count
    twice. Returns True when a new use was recorded. Flushes only.
    """
    promo = db.query(PromoCode).filter(PromoCode.code == normalize_code(code)).first()
    if promo is None:
        logger.warning("Redemption for unknown promo code", extra={"extra_fields": {"promo_code": normalize_code(code)}})
        return False

    if subscription_id:
        existing = (
            db.query(PromoCodeUse)
            .filter(PromoCodeUse.promo_code_id == promo.id, PromoCodeUse.stripe_subscription_id == subscription_id)
            .first()
        )
        if existing is not None:
            return False

    discount_applied = None
    if order_amount_cents is not None:
        discount_applied = benefit_for(promo).discount_preview(order_amount_cents)["discount_amount_cents"]

    savepoint = db.begin_nested()
    db.add(
        PromoCodeUse(
            promo_code_id=promo.id,
            user_id=user_id,
            fingerprint_hash=fingerprint_hash,
            stripe_subscription_id=subscription_id,
            order_amount_cents=order_amount_cents,
            discount_applied_cents=discount_applied,
        )
    )
    try:
        db.flush()
    except IntegrityError:
        savepoint.rollback()
        return False
    savepoint.commit()

    promo.current_uses = PromoCode.current_uses + 1
    db.flush()
    return True


def load_promo_codes(db: Session) -> Dict[str, PromoBenefit]:
    """
    Load every active code, failing loudly on a bad definition.

    Used at startup so a misconfigured code is caught before any checkout.
    """
    benefits: Dict[str, PromoBenefit] = {}
    for promo in db.query(PromoCode).filter(PromoCode.active.is_(True)).all():
        benefits[promo.code] = benefit_for(promo)
    return benefits
