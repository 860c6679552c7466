# tests/test_payments.py
"""
Payment adapters: signature checks, paid-checkout detection and turning a
provider event into a Checkout, without network calls.
"""
import hashlib
import hmac
import json
import time

import pytest
import stripe
from unittest.mock import AsyncMock, MagicMock, patch

from doorpass.model.errors import InvalidRequest, InvalidSignature
from doorpass.payments import (
    CHECKOUT_ASYNC_SUCCEEDED,
    CHECKOUT_COMPLETED,
    MockPay,
    StripePay,
    mock_checkout_event,
    mock_signature,
    new_adapter,
)

WEBHOOK_SECRET = "whsec_test_secret"


def stripe_header(payload: bytes, secret: str = WEBHOOK_SECRET,
                  timestamp: int = None) -> str:
    t = int(time.time()) if timestamp is None else timestamp
    signed = f"{t}.{payload.decode()}".encode()
    sig = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={t},v1={sig}"


def stripe_session_event(**obj) -> dict:
    base = {
        "id": "cs_test_123",
        "object": "checkout.session",
        "payment_status": "paid",
        "customer_details": {"email": "ada@example.com", "name": "Ada"},
        "customer_email": None,
        "currency": "eur",
        "amount_total": 7000,
        "payment_intent": "pi_123",
        "customer": {"id": "cus_123"},
    }
    base.update(obj)
    return {"id": "evt_123", "type": CHECKOUT_COMPLETED,
            "data": {"object": base}}


@pytest.fixture
def stripe_pay():
    return StripePay(api_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET)


class TestStripeVerify:
    def test_valid_signature(self, stripe_pay):
        payload = json.dumps(stripe_session_event()).encode()
        event = stripe_pay.verify_webhook(
            payload, {"stripe-signature": stripe_header(payload)}
        )
        assert event["id"] == "evt_123"

    def test_wrong_secret(self, stripe_pay):
        payload = json.dumps(stripe_session_event()).encode()
        with pytest.raises(InvalidSignature):
            stripe_pay.verify_webhook(
                payload,
                {"stripe-signature": stripe_header(payload, "whsec_other")},
            )

    def test_stale_timestamp(self, stripe_pay):
        payload = json.dumps(stripe_session_event()).encode()
        old = int(time.time()) - 3600
        with pytest.raises(InvalidSignature):
            stripe_pay.verify_webhook(
                payload, {"stripe-signature": stripe_header(payload,
                                                            timestamp=old)}
            )

    def test_missing_header(self, stripe_pay):
        with pytest.raises(InvalidSignature):
            stripe_pay.verify_webhook(b"{}", {})

    def test_missing_secret_is_a_config_error(self):
        pay = StripePay(api_key="sk_test_dummy", webhook_secret="")
        with pytest.raises(RuntimeError):
            pay.verify_webhook(b"{}", {"stripe-signature": "t=1,v1=x"})

    def test_signed_garbage_is_invalid_request(self, stripe_pay):
        payload = b"not json"
        with pytest.raises(InvalidRequest):
            stripe_pay.verify_webhook(
                payload, {"stripe-signature": stripe_header(payload)}
            )

    def test_non_utf8_body_is_invalid_signature(self, stripe_pay):
        with pytest.raises(InvalidSignature):
            stripe_pay.verify_webhook(
                b"\xff\xfe", {"stripe-signature": "t=1,v1=abc"}
            )

    def test_signed_non_object_is_invalid_request(self, stripe_pay):
        payload = b"[1, 2]"
        with pytest.raises(InvalidRequest):
            stripe_pay.verify_webhook(
                payload, {"stripe-signature": stripe_header(payload)}
            )


class TestStripeCheckout:
    @pytest.mark.anyio
    async def test_checkout_from_event(self, stripe_pay):
        listing = MagicMock()
        listing.data = [
            {"id": "li_1", "description": "GA", "quantity": 2,
             "amount_subtotal": 7000, "amount_total": 7000,
             "currency": "eur", "price": {"id": "price_1"}},
        ]
        with patch.object(stripe.checkout.Session, "list_line_items_async",
                          new=AsyncMock(return_value=listing)) as lister:
            checkout = await stripe_pay.checkout_from_event(
                stripe_session_event()
            )

        lister.assert_awaited_once_with(
            "cs_test_123", limit=100, api_key="sk_test_dummy"
        )
        assert checkout.external_id == "cs_test_123"
        assert checkout.customer_email == "ada@example.com"
        assert checkout.customer_name == "Ada"
        assert checkout.payment_intent_id == "pi_123"
        assert checkout.customer_id == "cus_123"
        assert checkout.quantity == 2
        assert checkout.line_items[0]["price_id"] == "price_1"

    @pytest.mark.anyio
    async def test_email_falls_back_to_session_field(self, stripe_pay):
        listing = MagicMock()
        listing.data = []
        event = stripe_session_event(
            customer_details=None, customer_email="bob@example.com"
        )
        with patch.object(stripe.checkout.Session, "list_line_items_async",
                          new=AsyncMock(return_value=listing)):
            checkout = await stripe_pay.checkout_from_event(event)

        assert checkout.customer_email == "bob@example.com"
        assert checkout.quantity == 1


class TestPaidDetection:
    def test_completed_and_paid(self, stripe_pay):
        assert stripe_pay.is_paid_checkout(stripe_session_event())

    def test_completed_but_unpaid(self, stripe_pay):
        event = stripe_session_event(payment_status="unpaid")
        assert not stripe_pay.is_paid_checkout(event)

    def test_async_payment_succeeded(self, stripe_pay):
        event = stripe_session_event(payment_status="unpaid")
        event["type"] = CHECKOUT_ASYNC_SUCCEEDED
        assert stripe_pay.is_paid_checkout(event)

    def test_other_events(self, stripe_pay):
        event = stripe_session_event()
        event["type"] = "payment_intent.created"
        assert not stripe_pay.is_paid_checkout(event)


class TestMockPay:
    def test_roundtrip(self):
        pay = MockPay(secret="s3cret")
        payload = json.dumps(mock_checkout_event(quantity=3)).encode()
        headers = {"x-mockpay-signature": mock_signature(payload, "s3cret")}

        event = pay.verify_webhook(payload, headers)

        assert pay.is_paid_checkout(event)

    def test_bad_signature(self):
        pay = MockPay(secret="s3cret")
        payload = json.dumps(mock_checkout_event()).encode()
        with pytest.raises(InvalidSignature):
            pay.verify_webhook(
                payload, {"x-mockpay-signature": mock_signature(payload, "x")}
            )

    @pytest.mark.parametrize("payload", [b"\xff\xfe", b"not json", b'"str"'])
    def test_signed_garbage_is_invalid_request(self, payload):
        pay = MockPay(secret="s3cret")
        with pytest.raises(InvalidRequest):
            pay.verify_webhook(
                payload,
                {"x-mockpay-signature": mock_signature(payload, "s3cret")},
            )

    @pytest.mark.anyio
    async def test_line_items_travel_in_event(self):
        pay = MockPay(secret="s3cret")
        checkout = await pay.checkout_from_event(
            mock_checkout_event(quantity=3, email="m@example.com")
        )
        assert checkout.quantity == 3
        assert checkout.customer_email == "m@example.com"


class TestNewAdapter:
    def test_mock(self):
        assert isinstance(new_adapter("mock"), MockPay)

    def test_stripe(self):
        assert isinstance(new_adapter("Stripe"), StripePay)

    def test_unknown(self):
        with pytest.raises(ValueError):
            new_adapter("paypal")
