from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import base64
import hashlib
import hmac
import json
import os
import uuid

import stripe

from .model.db import PAID
from .model.errors import InvalidRequest, InvalidSignature
from .model.purchases import Checkout

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"


def _as_id(value: Any) -> Optional[str]:
    # provider references come either as a bare id or an expanded object
    if not value:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def _require_object(event: Any) -> dict:
    if not isinstance(event, dict):
        raise InvalidRequest("webhook payload must be a JSON object")
    return event


def _checkout_object(event: dict) -> dict:
    return (event.get("data") or {}).get("object") or {}


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    name: str = ""

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # [{"quantity": n, ...}, ...] for the checkout object
    @abstractmethod
    async def line_items(self, checkout: dict) -> List[Dict[str, Any]]: ...

    def event_id(self, event: dict) -> Optional[str]:
        return event.get("id")

    def event_type(self, event: dict) -> str:
        return event.get("type", "")

    def is_paid_checkout(self, event: dict) -> bool:
        kind = self.event_type(event)
        if kind == CHECKOUT_COMPLETED:
            return _checkout_object(event).get("payment_status") == "paid"
        return kind == CHECKOUT_ASYNC_SUCCEEDED

    async def checkout_from_event(self, event: dict) -> Checkout:
        obj = _checkout_object(event)
        details = obj.get("customer_details") or {}
        return Checkout(
            external_id=obj["id"],
            status=PAID,
            customer_email=details.get("email") or obj.get("customer_email"),
            customer_name=details.get("name"),
            currency=obj.get("currency"),
            amount_total=obj.get("amount_total"),
            payment_intent_id=_as_id(obj.get("payment_intent")),
            customer_id=_as_id(obj.get("customer")),
            line_items=await self.line_items(obj),
            raw=obj,
        )


# ----------------------------
# Stripe implementation
# ----------------------------
class StripePay(PaymentAdapter):
    name = "stripe"

    def __init__(self, api_key: str = STRIPE_SECRET_KEY,
                 webhook_secret: str = STRIPE_WEBHOOK_SECRET) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        # async calls go through httpx
        stripe.default_http_client = stripe.HTTPXClient()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        if not self.webhook_secret:
            raise RuntimeError("STRIPE_WEBHOOK_SECRET not configured")
        sig = headers.get("stripe-signature")
        if not sig:
            raise InvalidSignature("missing Stripe signature")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidSignature("payload is not valid UTF-8") from e
        try:
            stripe.WebhookSignature.verify_header(
                body, sig, self.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(str(e)) from e
        try:
            event = json.loads(body)
        except json.JSONDecodeError as e:
            raise InvalidRequest("invalid JSON payload") from e
        return _require_object(event)

    async def line_items(self, checkout: dict) -> List[Dict[str, Any]]:
        result = await stripe.checkout.Session.list_line_items_async(
            checkout["id"], limit=100, api_key=self.api_key
        )
        return [{
            "id": item.get("id"),
            "description": item.get("description"),
            "quantity": item.get("quantity"),
            "amount_subtotal": item.get("amount_subtotal"),
            "amount_total": item.get("amount_total"),
            "currency": item.get("currency"),
            "price_id": _as_id(item.get("price")),
        } for item in result.data]


# ----------------------------
# MockPay implementation
# ----------------------------
def mock_signature(payload: bytes, secret: str = MOCK_SECRET) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


def mock_checkout_event(
    *,
    quantity: int = 1,
    email: Optional[str] = None,
    name: Optional[str] = None,
    amount_total: int = 3500,
    currency: str = "eur",
    payment_status: str = "paid",
    kind: str = CHECKOUT_COMPLETED,
    session_id: Optional[str] = None,
    event_id: Optional[str] = None,
) -> dict:
    """A provider-shaped checkout event for local runs and tests."""
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex}",
        "type": kind,
        "data": {"object": {
            "id": session_id or f"cs_mock_{uuid.uuid4().hex}",
            "payment_status": payment_status,
            "customer_details": {"email": email, "name": name},
            "currency": currency,
            "amount_total": amount_total,
            "line_items": [{"quantity": quantity}],
        }},
    }


class MockPay(PaymentAdapter):
    """Events signed with a shared secret; line items travel in the event."""
    name = "mock"

    def __init__(self, secret: str = MOCK_SECRET) -> None:
        self.secret = secret

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = mock_signature(payload, self.secret)
        if not sig or not hmac.compare_digest(expected, sig):
            raise InvalidSignature("Invalid signature")
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidRequest("Invalid JSON") from e
        return _require_object(event)

    async def line_items(self, checkout: dict) -> List[Dict[str, Any]]:
        return list(checkout.get("line_items") or [])


def new_adapter(provider: Optional[str] = None) -> PaymentAdapter:
    provider = (provider or os.getenv("PAYMENT_PROVIDER", "stripe")).lower()
    if provider == "mock":
        return MockPay()
    if provider == "stripe":
        return StripePay()
    raise ValueError(f"unknown PAYMENT_PROVIDER: {provider}")
