"""
Tests for webhook envelope parsing.
"""
import pytest
from pydantic import ValidationError

from services.billing.events import (
    CheckoutSessionCompleted,
    InvoicePaymentFailed,
    StripeSubscription,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
    parse_event,
)
from fixtures.stripe_fixtures import (
    make_checkout_session,
    make_discount,
    make_event,
    make_invoice,
    make_subscription,
)


class TestParseEvent:
    def test_dispatches_on_type(self):
        assert isinstance(
            parse_event(make_event("checkout.session.completed", make_checkout_session())),
            CheckoutSessionCompleted,
        )
        assert isinstance(
            parse_event(make_event("customer.subscription.updated", make_subscription())),
            SubscriptionUpdated,
        )
        assert isinstance(
            parse_event(make_event("customer.subscription.deleted", make_subscription())),
            SubscriptionDeleted,
        )
        assert isinstance(
            parse_event(make_event("invoice.payment_failed", make_invoice())),
            InvoicePaymentFailed,
        )

    def test_unknown_type_is_unhandled(self):
        event = parse_event(make_event("customer.created", {"id": "cus_1", "object": "customer"}))
        assert isinstance(event, UnhandledEvent)
        assert event.type == "customer.created"

    def test_malformed_handled_event_raises(self):
        payload = make_event("customer.subscription.updated", {"object": "subscription"})
        with pytest.raises(ValidationError):
            parse_event(payload)


class TestStripeSubscriptionModel:
    def test_expanded_customer_collapses_to_id_and_keeps_email(self):
        sub = StripeSubscription.model_validate(make_subscription(customer_email="a@example.com"))
        assert sub.customer == "cus_test_1"
        assert sub.customer_email == "a@example.com"

    def test_discounts_list_fills_discount(self):
        payload = make_subscription()
        payload["discounts"] = [make_discount("SAVE50")]
        sub = StripeSubscription.model_validate(payload)
        assert sub.discount is not None
        assert sub.discount.promotion_code == "promo_test_1"
        assert sub.discount.promotion_code_text == "SAVE50"

    def test_unexpanded_discount_ids_still_count(self):
        payload = make_subscription()
        payload["discounts"] = ["di_123"]
        sub = StripeSubscription.model_validate(payload)
        assert sub.discount is None
        assert sub.discount_ids == ["di_123"]
        assert sub.has_discount is True

    def test_no_discounts(self):
        sub = StripeSubscription.model_validate(make_subscription())
        assert sub.discount_ids == []
        assert sub.has_discount is False

    def test_coupon_under_source(self):
        discount = make_discount()
        discount["source"] = {"type": "coupon", "coupon": discount.pop("coupon")}
        sub = StripeSubscription.model_validate(make_subscription(discount=discount))
        assert sub.discount.coupon.percent_off == 50

    def test_null_metadata(self):
        payload = make_subscription()
        payload["metadata"] = None
        assert StripeSubscription.model_validate(payload).metadata == {}


class TestCheckoutSessionModel:
    def test_email_prefers_customer_details(self):
        session = CheckoutSessionCompleted.model_validate(
            make_event("checkout.session.completed", make_checkout_session(email="Details@Example.com"))
        ).data.object
        assert session.email == "Details@Example.com"

    def test_promo_code_and_user_hint_from_metadata(self):
        session = CheckoutSessionCompleted.model_validate(
            make_event(
                "checkout.session.completed",
                make_checkout_session(metadata={"promo_code": " save50 ", "user_id": "u-1"}, client_reference_id="u-2"),
            )
        ).data.object
        assert session.promo_code == "SAVE50"
        assert session.user_id_hint == "u-1"

    def test_client_reference_id_is_fallback_hint(self):
        session = CheckoutSessionCompleted.model_validate(
            make_event("checkout.session.completed", make_checkout_session(client_reference_id="u-2"))
        ).data.object
        assert session.user_id_hint == "u-2"
        assert session.promo_code is None
