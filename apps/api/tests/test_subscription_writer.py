"""
Tests for the subscription writer: snapshot overwrite, audit rows,
deletion revert, payment bookkeeping and the optional stale-event guard.
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from core.config import settings
from core.exceptions import StaleEventRejected, WriteFailed
from models import SubscriptionEvent, User
from services.billing.classifier import classify_subscription
from services.billing.events import StripeSubscription
from services.billing.writer import (
    EventContext,
    apply_subscription,
    mark_cancel_requested,
    record_payment,
    revert_to_free,
)
from fixtures.stripe_fixtures import PERIOD_START, make_discount, make_subscription

SNAPSHOT_COLUMNS = [
    "stripe_customer_id",
    "stripe_subscription_id",
    "subscription_status",
    "subscription_type",
    "subscription_source",
    "current_plan",
    "is_trial",
    "cancel_at_period_end",
    "subscription_activation_date",
    "subscription_start_date",
    "subscription_end_date",
    "subscription_next_billing_date",
    "subscription_trial_end_date",
    "stripe_price_id",
    "subscription_amount_cents",
    "subscription_currency",
    "last_event_id",
    "last_event_created",
]


def _snapshot(user):
    return {col: getattr(user, col) for col in SNAPSHOT_COLUMNS}


def _classified(**kwargs):
    promo_code = kwargs.pop("promo_code", None)
    return classify_subscription(StripeSubscription.model_validate(make_subscription(**kwargs)), promo_code=promo_code)


def _ctx(event_id="evt_1", created=PERIOD_START, event_type="customer.subscription.updated"):
    return EventContext(event_type=event_type, event_id=event_id, event_created=created)


@pytest.fixture
def user(db):
    u = User(email="educator@example.com", display_name="educator")
    db.add(u)
    db.commit()
    return u


def _audit_rows(db, user):
    return db.query(SubscriptionEvent).filter(SubscriptionEvent.user_id == user.id).all()


class TestApplySubscription:
    def test_overwrites_snapshot_and_appends_audit(self, db, user):
        classified = _classified(status="trialing", trial_days=30)

        apply_subscription(db, user=user, classified=classified, ctx=_ctx())

        db.expire_all()
        row = db.query(User).filter(User.id == user.id).one()
        assert row.subscription_status == "premium"
        assert row.subscription_type == "paid"
        assert row.is_trial is True
        assert row.stripe_subscription_id == "sub_test_1"
        assert row.stripe_customer_id == "cus_test_1"
        assert row.subscription_amount_cents == 1200
        assert row.last_event_id == "evt_1"
        assert row.last_event_created == PERIOD_START

        rows = _audit_rows(db, user)
        assert len(rows) == 1
        assert rows[0].event_type == "customer.subscription.updated"
        assert rows[0].stripe_event_id == "evt_1"
        assert rows[0].event_data["subscription_status"] == "premium"
        assert rows[0].event_data["amount"] == 12.0

    def test_customer_owned_by_another_user_is_not_copied(self, db, user):
        other = User(email="other@example.com", stripe_customer_id="cus_test_1")
        db.add(other)
        db.commit()

        apply_subscription(db, user=user, classified=_classified(), ctx=_ctx())

        db.expire_all()
        assert db.query(User).filter(User.id == user.id).one().stripe_customer_id is None
        assert db.query(User).filter(User.stripe_customer_id == "cus_test_1").count() == 1

    def test_replay_is_idempotent_on_the_user_row(self, db, user):
        classified = _classified(discount=make_discount(), promo_code="SAVE50")

        apply_subscription(db, user=user, classified=classified, ctx=_ctx())
        db.expire_all()
        first = _snapshot(db.query(User).filter(User.id == user.id).one())

        apply_subscription(db, user=user, classified=classified, ctx=_ctx())
        db.expire_all()
        second = _snapshot(db.query(User).filter(User.id == user.id).one())

        assert first == second
        assert len(_audit_rows(db, user)) == 2

    def test_full_overwrite_clears_previous_promo(self, db, user):
        apply_subscription(db, user=user, classified=_classified(discount=make_discount(), promo_code="SAVE50"), ctx=_ctx("evt_1"))
        apply_subscription(db, user=user, classified=_classified(), ctx=_ctx("evt_2", PERIOD_START + 10))

        assert user.subscription_type == "paid"
        assert user.subscription_source == "payment"

    def test_inactive_status_downgrades(self, db, user):
        apply_subscription(db, user=user, classified=_classified(), ctx=_ctx("evt_1"))
        apply_subscription(db, user=user, classified=_classified(status="past_due"), ctx=_ctx("evt_2", PERIOD_START + 10))
        assert user.subscription_status == "free"
        assert user.stripe_subscription_id == "sub_test_1"

    def test_storage_error_rolls_back_and_raises(self, db, user, monkeypatch):
        def broken_commit():
            raise OperationalError("UPDATE users", {}, Exception("disk I/O error"))

        rolled_back = []
        real_rollback = db.rollback
        monkeypatch.setattr(db, "commit", broken_commit)
        monkeypatch.setattr(db, "rollback", lambda: (rolled_back.append(True), real_rollback()))

        with pytest.raises(WriteFailed):
            apply_subscription(db, user=user, classified=_classified(), ctx=_ctx())
        assert rolled_back == [True]


class TestStaleEventGuard:
    def test_older_event_applies_when_guard_disabled(self, db, user):
        apply_subscription(db, user=user, classified=_classified(), ctx=_ctx("evt_new", PERIOD_START + 100))
        apply_subscription(db, user=user, classified=_classified(status="canceled"), ctx=_ctx("evt_old", PERIOD_START))

        assert user.subscription_status == "free"
        assert user.last_event_id == "evt_old"

    def test_older_event_rejected_when_guard_enabled(self, db, user, monkeypatch):
        monkeypatch.setattr(settings, "BILLING_REJECT_STALE_EVENTS", True)
        apply_subscription(db, user=user, classified=_classified(), ctx=_ctx("evt_new", PERIOD_START + 100))

        with pytest.raises(StaleEventRejected):
            apply_subscription(db, user=user, classified=_classified(status="canceled"), ctx=_ctx("evt_old", PERIOD_START))

        db.rollback()
        db.expire_all()
        row = db.query(User).filter(User.id == user.id).one()
        assert row.subscription_status == "premium"
        assert row.last_event_id == "evt_new"
        assert len(_audit_rows(db, user)) == 1

    def test_same_timestamp_is_not_stale(self, db, user, monkeypatch):
        monkeypatch.setattr(settings, "BILLING_REJECT_STALE_EVENTS", True)
        apply_subscription(db, user=user, classified=_classified(), ctx=_ctx("evt_a", PERIOD_START))
        apply_subscription(db, user=user, classified=_classified(status="past_due"), ctx=_ctx("evt_b", PERIOD_START))
        assert user.subscription_status == "free"

    def test_revert_is_guarded_too(self, db, user, monkeypatch):
        monkeypatch.setattr(settings, "BILLING_REJECT_STALE_EVENTS", True)
        apply_subscription(db, user=user, classified=_classified(), ctx=_ctx("evt_new", PERIOD_START + 100))
        with pytest.raises(StaleEventRejected):
            revert_to_free(db, user=user, subscription_id="sub_test_1", ctx=_ctx("evt_old", PERIOD_START, "customer.subscription.deleted"))


class TestRevertToFree:
    def test_reverts_and_clears_subscription(self, db, user):
        apply_subscription(
            db,
            user=user,
            classified=_classified(cancel_at_period_end=True, discount=make_discount("SAVE50")),
            ctx=_ctx("evt_1"),
        )

        revert_to_free(db, user=user, subscription_id="sub_test_1", ctx=_ctx("evt_2", PERIOD_START + 10, "customer.subscription.deleted"))

        db.expire_all()
        row = db.query(User).filter(User.id == user.id).one()
        assert row.subscription_status == "free"
        assert row.subscription_type == "free"
        assert row.current_plan == "free"
        assert row.stripe_subscription_id is None
        assert row.cancel_at_period_end is False
        assert row.is_trial is False
        assert row.subscription_source is None
        assert row.stripe_price_id is None
        assert row.subscription_amount_cents is None
        assert row.subscription_end_date is None
        assert row.subscription_next_billing_date is None
        # Customer link survives so a resubscription finds the same user.
        assert row.stripe_customer_id == "cus_test_1"
        assert [r.event_type for r in _audit_rows(db, user)].count("customer.subscription.deleted") == 1


class TestBookkeeping:
    def test_payment_success_and_failure(self, db, user):
        paid_at = datetime(2026, 2, 1, tzinfo=timezone.utc)
        failed_at = datetime(2026, 3, 1, tzinfo=timezone.utc)

        record_payment(db, user=user, succeeded=True, at=paid_at, invoice_id="in_1", amount_cents=1200, ctx=_ctx(event_type="invoice.payment_succeeded"))
        record_payment(db, user=user, succeeded=False, at=failed_at, invoice_id="in_2", amount_cents=1200, ctx=_ctx(event_type="invoice.payment_failed"))

        assert user.last_payment_at == paid_at
        assert user.last_payment_failed_at == failed_at
        assert user.subscription_status == "free"
        assert len(_audit_rows(db, user)) == 2

    def test_cancel_request_mirrors_flag(self, db, user):
        apply_subscription(db, user=user, classified=_classified(), ctx=_ctx())
        mark_cancel_requested(db, user=user, at_period_end=True)

        assert user.cancel_at_period_end is True
        assert user.subscription_status == "premium"
        tags = [r.event_type for r in _audit_rows(db, user)]
        assert "billing.cancel_requested" in tags
