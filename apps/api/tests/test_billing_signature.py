"""
Tests for Stripe webhook signature verification.

The signature covers the exact bytes Stripe sent, so anything that
re-serializes the body must fail.
"""
import json
import time

import pytest

from core.exceptions import SignatureInvalid
from services.billing.signature import verify_event_signature
from fixtures.stripe_fixtures import encode_event, make_event, make_subscription, sign_payload

SECRET = "whsec_signature_tests"


@pytest.fixture
def payload():
    return encode_event(make_event("customer.subscription.updated", make_subscription()))


def test_valid_signature_passes(payload):
    verify_event_signature(payload=payload, sig_header=sign_payload(payload, SECRET), secret=SECRET)


def test_reserialized_body_fails(payload):
    header = sign_payload(payload, SECRET)
    decoded = json.loads(payload)
    reserialized = json.dumps(decoded, indent=2, sort_keys=True).encode("utf-8")
    assert json.loads(reserialized) == decoded

    with pytest.raises(SignatureInvalid):
        verify_event_signature(payload=reserialized, sig_header=header, secret=SECRET)


def test_altered_body_fails(payload):
    header = sign_payload(payload, SECRET)
    tampered = payload.replace(b'"active"', b'"trialing"')
    with pytest.raises(SignatureInvalid):
        verify_event_signature(payload=tampered, sig_header=header, secret=SECRET)


def test_wrong_secret_fails(payload):
    with pytest.raises(SignatureInvalid):
        verify_event_signature(payload=payload, sig_header=sign_payload(payload, "whsec_other"), secret=SECRET)


def test_old_timestamp_fails(payload):
    header = sign_payload(payload, SECRET, timestamp=int(time.time()) - 3600)
    with pytest.raises(SignatureInvalid):
        verify_event_signature(payload=payload, sig_header=header, secret=SECRET, tolerance=300)


@pytest.mark.parametrize("header", [None, "", "garbage", "t=123"])
def test_missing_or_malformed_header_fails(payload, header):
    with pytest.raises(SignatureInvalid):
        verify_event_signature(payload=payload, sig_header=header, secret=SECRET)


def test_non_utf8_body_fails():
    with pytest.raises(SignatureInvalid):
        verify_event_signature(payload=b"\xff\xfe", sig_header="t=1,v1=abc", secret=SECRET)
