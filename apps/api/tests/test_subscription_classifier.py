"""
Tests for the subscription classifier.

Pure mapping from a Stripe subscription (+ checkout context) to the
snapshot stored on the user row: status, promo detection, plan and dates.
"""
import pytest

from services.billing.classifier import ClassifierPolicy, classify_subscription, from_unix
from services.billing.events import StripeSubscription
from fixtures.stripe_fixtures import DAY, PERIOD_START, make_discount, make_price, make_subscription


def _classify(sub_payload, **kwargs):
    return classify_subscription(StripeSubscription.model_validate(sub_payload), **kwargs)


class TestActiveStatus:
    @pytest.mark.parametrize(
        "status,active",
        [
            ("active", True),
            ("trialing", True),
            ("past_due", False),
            ("canceled", False),
            ("unpaid", False),
            ("incomplete", False),
            ("incomplete_expired", False),
            ("paused", False),
        ],
    )
    def test_active_iff_active_or_trialing(self, status, active):
        plain = _classify(make_subscription(status=status))
        discounted = _classify(make_subscription(status=status, discount=make_discount()))

        assert plain.is_active is active
        assert discounted.is_active is active
        assert plain.subscription_status == ("premium" if active else "free")

    def test_trialing_flag(self):
        assert _classify(make_subscription(status="trialing", trial_days=14)).is_trialing is True
        assert _classify(make_subscription(status="active")).is_trialing is False


class TestPromoDetection:
    def test_plain_payment_is_paid(self):
        c = _classify(make_subscription())
        assert c.is_promo is False
        assert c.subscription_type == "paid"
        assert c.source == "payment"
        assert c.promo_code is None

    def test_discount_with_checkout_code_is_promo(self):
        c = _classify(make_subscription(discount=make_discount("SAVE50")), promo_code="SAVE50")
        assert c.is_promo is True
        assert c.subscription_type == "promo"
        assert c.source == "SAVE50"

    def test_expanded_promotion_code_names_the_source(self):
        c = _classify(make_subscription(discount=make_discount("spring25", percent_off=25)))
        assert c.source == "SPRING25"

    def test_bare_coupon_source_is_discount(self):
        c = _classify(make_subscription(discount=make_discount(code=None)))
        assert c.is_promo is True
        assert c.source == "discount"

    def test_unexpanded_discount_id_is_promo(self):
        sub = make_subscription(metadata={"promo_code": "SAVE50", "promo_mechanism": "discount"})
        sub["discount"] = None
        sub["discounts"] = ["di_123"]

        c = _classify(sub)

        assert c.is_promo is True
        assert c.subscription_type == "promo"
        assert c.source == "SAVE50"

    def test_discount_mechanism_stamped_by_checkout_is_promo(self):
        c = _classify(make_subscription(metadata={"promo_code": "save50", "promo_mechanism": "discount"}))
        assert c.subscription_type == "promo"
        assert c.source == "SAVE50"

    def test_discount_mechanism_without_code_is_paid(self):
        c = _classify(make_subscription(metadata={"promo_mechanism": "discount"}))
        assert c.subscription_type == "paid"

    def test_zero_amount_checkout_with_code_is_promo(self):
        c = _classify(make_subscription(status="trialing", trial_days=30), promo_code="FREEMONTH", checkout_amount_total=0)
        assert c.is_promo is True
        assert c.source == "FREEMONTH"

    def test_paid_trial_without_code_is_not_promo(self):
        c = _classify(make_subscription(status="trialing", trial_days=30), checkout_amount_total=0)
        assert c.is_promo is False
        assert c.subscription_type == "paid"

    def test_code_with_charged_checkout_and_no_discount_is_paid(self):
        c = _classify(make_subscription(), promo_code="SAVE50", checkout_amount_total=1200)
        assert c.is_promo is False
        assert c.source == "SAVE50"

    def test_zero_amount_rule_is_a_policy(self):
        policy = ClassifierPolicy(zero_amount_promo_is_promo=False)
        c = _classify(
            make_subscription(status="trialing", trial_days=30),
            promo_code="FREEMONTH",
            checkout_amount_total=0,
            policy=policy,
        )
        assert c.is_promo is False

    def test_trial_code_stamped_on_subscription_stays_promo_on_updates(self):
        sub = make_subscription(
            status="trialing",
            trial_days=30,
            metadata={"promo_code": "freemonth", "promo_mechanism": "trial"},
        )
        c = _classify(sub)
        assert c.is_promo is True
        assert c.source == "FREEMONTH"


class TestDates:
    def test_trial_end_wins_over_period_end(self):
        sub = make_subscription(status="trialing", trial_days=30)
        sub["current_period_end"] = PERIOD_START + 31 * DAY

        c = _classify(sub)

        assert c.end_date == from_unix(sub["trial_end"])
        assert c.next_billing_date == from_unix(sub["trial_end"])
        assert c.trial_end_date == from_unix(sub["trial_end"])
        assert c.start_date == from_unix(sub["trial_start"])

    def test_period_dates_without_trial(self):
        sub = make_subscription(period_days=30)
        c = _classify(sub)
        assert c.start_date == from_unix(PERIOD_START)
        assert c.end_date == from_unix(PERIOD_START + 30 * DAY)
        assert c.trial_end_date is None
        assert c.activation_date == from_unix(sub["created"])

    def test_period_dates_win_when_policy_disabled(self):
        sub = make_subscription(status="trialing", trial_days=14)
        sub["current_period_end"] = PERIOD_START + 30 * DAY

        c = _classify(sub, policy=ClassifierPolicy(trial_dates_take_precedence=False))

        assert c.end_date == from_unix(PERIOD_START + 30 * DAY)
        assert c.trial_end_date == from_unix(sub["trial_end"])

    def test_period_fields_read_from_items(self):
        sub = make_subscription(period_days=365, periods_on_items=True)
        assert "current_period_end" not in sub

        c = _classify(sub)

        assert c.start_date == from_unix(PERIOD_START)
        assert c.end_date == from_unix(PERIOD_START + 365 * DAY)


class TestPlanAndPrice:
    def test_annual_interval(self):
        c = _classify(make_subscription(price=make_price("year", unit_amount=9900)))
        assert c.current_plan == "annual"
        assert c.amount_cents == 9900
        assert c.price_id == "price_annual_test"

    def test_monthly_interval(self):
        assert _classify(make_subscription()).current_plan == "monthly"

    def test_currency_defaults_to_usd(self):
        c = _classify(make_subscription(price=make_price(currency=None)))
        assert c.currency == "usd"

    def test_cancel_flag(self):
        assert _classify(make_subscription(cancel_at_period_end=True)).cancel_at_period_end is True

    def test_cancel_at_matching_period_end_counts_as_cancelling(self):
        sub = make_subscription()
        sub["cancel_at"] = sub["current_period_end"]
        assert _classify(sub).cancel_at_period_end is True

    def test_audit_payload_is_json_safe(self):
        payload = _classify(make_subscription(status="trialing", trial_days=7)).audit_payload()
        assert payload["subscription_status"] == "premium"
        assert isinstance(payload["end_date"], str)
        assert "email" not in payload
