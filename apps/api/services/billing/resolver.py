from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.exceptions import InsufficientIdentity, UserNotResolvable
from models import User

logger = logging.getLogger(__name__)


def normalize_email(email: Optional[str]) -> Optional[str]:
    e = (email or "").strip().lower()
    return e or None


def display_name_from_email(email: str) -> str:
    return email.split("@", 1)[0]


def _find_by_id(db: Session, user_id: Optional[str]) -> Optional[User]:
    if not user_id:
        return None
    try:
        uid = UUID(str(user_id))
    except ValueError:
        return None
    return db.query(User).filter(User.id == uid).first()


def _find_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(func.lower(User.email) == email).first()


def find_by_customer_id(db: Session, customer_id: str) -> Optional[User]:
    return db.query(User).filter(User.stripe_customer_id == customer_id).first()


def find_existing_user(db: Session, *, user_id: Optional[str] = None, email: Optional[str] = None) -> Optional[User]:
    """Read-only lookup by id, then email. Never creates."""
    user = _find_by_id(db, user_id)
    email = normalize_email(email)
    if user is None and email:
        user = _find_by_email(db, email)
    return user


def backfill_customer_id(db: Session, user: User, customer_id: Optional[str]) -> None:
    """Attach `customer_id` unless the user has one or another user owns it."""
    if not customer_id or user.stripe_customer_id:
        return
    owner = find_by_customer_id(db, customer_id)
    if owner is not None and owner.id != user.id:
        logger.warning(
            "Stripe customer already linked to another user, not backfilling",
            extra={"extra_fields": {"user_id": str(user.id), "owner_id": str(owner.id), "customer_id": customer_id}},
        )
        return
    user.stripe_customer_id = customer_id


def _create_user(db: Session, *, email: str, customer_id: Optional[str]) -> User:
    """
    Insert a user for `email`; if a concurrent request won the race, the
    unique email constraint fires and we return that request's row instead.
    """
    savepoint = db.begin_nested()
    user = User(
        email=email,
        display_name=display_name_from_email(email),
        stripe_customer_id=customer_id,
    )
    db.add(user)
    try:
        db.flush()
    except IntegrityError:
        savepoint.rollback()
        existing = db.query(User).filter(func.lower(User.email) == email).first()
        if existing is None:
            raise
        logger.info(
            "User creation raced, using existing row",
            extra={"extra_fields": {"user_id": str(existing.id)}},
        )
        backfill_customer_id(db, existing, customer_id)
        return existing
    savepoint.commit()
    logger.info("Created user from billing identity", extra={"extra_fields": {"user_id": str(user.id)}})
    return user


def resolve_user(
    db: Session,
    *,
    email: Optional[str] = None,
    customer_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> User:
    """
    Map a Stripe-side identity to an internal user, creating one if needed.

    Order: explicit user id (checkout metadata), email (backfilling the
    customer id), customer id, then create from email. A bare customer id
    that matches nobody raises UserNotResolvable; no placeholder accounts.

    Changes are flushed, not committed; the caller owns the transaction.
    """
    email = normalize_email(email)
    customer_id = (customer_id or "").strip() or None
    if not (email or customer_id or user_id):
        raise InsufficientIdentity("No email, customer id or user id supplied")

    user = _find_by_id(db, user_id)
    if user is not None:
        backfill_customer_id(db, user, customer_id)
        if email and not user.email and _find_by_email(db, email) is None:
            user.email = email
        return user

    if email:
        user = _find_by_email(db, email)
        if user is not None:
            backfill_customer_id(db, user, customer_id)
            return user

    if customer_id:
        user = find_by_customer_id(db, customer_id)
        if user is not None:
            return user

    if email:
        return _create_user(db, email=email, customer_id=customer_id)

    raise UserNotResolvable(f"No user for customer {customer_id} and no email to create one")
