"""Tests for the payment gateway adapters and factory."""

import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe

from grove import config
from grove.errors import PaymentGatewayError, SignatureVerificationError
from grove.gateway import get_gateway, reset_gateway, set_gateway
from grove.gateway.fake_adapter import TEST_SIGNATURE, FakeGateway
from grove.gateway.stripe_adapter import StripeGateway

WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def event_payload(event_id="evt_1", intent_id="pi_123") -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": intent_id, "object": "payment_intent", "metadata": {"order_id": "o-1"}}},
    }).encode()


class TestFactory:
    def test_defaults_to_fake(self, monkeypatch):
        monkeypatch.setattr(config, "PAYMENT_GATEWAY", "fake")
        reset_gateway()
        try:
            assert isinstance(get_gateway(), FakeGateway)
        finally:
            reset_gateway()

    def test_stripe_when_configured(self, monkeypatch):
        monkeypatch.setattr(config, "PAYMENT_GATEWAY", "stripe")
        monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_123")
        reset_gateway()
        try:
            gateway = get_gateway()
            assert isinstance(gateway, StripeGateway)
            assert gateway.api_key == "sk_test_123"
        finally:
            reset_gateway()

    def test_override(self):
        fake = FakeGateway()
        set_gateway(fake)
        try:
            assert get_gateway() is fake
        finally:
            reset_gateway()


class TestFakeGateway:
    async def test_idempotency_key_returns_same_intent(self):
        gateway = FakeGateway()
        first = await gateway.create_payment_intent(1000, "usd", {}, "key-1")
        second = await gateway.create_payment_intent(1000, "usd", {}, "key-1")

        assert first == second
        assert first.currency == "USD"
        assert len(gateway.intents) == 1

    async def test_cannot_cancel_succeeded_intent(self):
        gateway = FakeGateway()
        intent = await gateway.create_payment_intent(1000, "USD", {}, "key-1")
        gateway.complete(intent.id)

        with pytest.raises(PaymentGatewayError):
            await gateway.cancel_payment_intent(intent.id)

    async def test_refund_requires_succeeded_intent(self):
        gateway = FakeGateway()
        intent = await gateway.create_payment_intent(1000, "USD", {}, "key-1")

        assert (await gateway.create_refund(intent.id, None, "")).success is False
        gateway.complete(intent.id)
        assert (await gateway.create_refund(intent.id, None, "")).success is True

    async def test_unknown_intent(self):
        with pytest.raises(PaymentGatewayError) as excinfo:
            await FakeGateway().retrieve_payment_intent("pi_missing")
        assert excinfo.value.gateway_code == "resource_missing"

    def test_webhook_signature(self):
        gateway = FakeGateway()
        event = gateway.construct_webhook_event(event_payload(), TEST_SIGNATURE)

        assert event.id == "evt_1"
        assert event.intent_id == "pi_123"
        with pytest.raises(SignatureVerificationError):
            gateway.construct_webhook_event(event_payload(), "nope")


class TestStripeGateway:
    def test_valid_signature(self):
        gateway = StripeGateway("sk_test_123", WEBHOOK_SECRET)
        payload = event_payload()

        event = gateway.construct_webhook_event(payload, sign(payload))

        assert event.type == "payment_intent.succeeded"
        assert event.intent_id == "pi_123"
        assert event.payload["data"]["object"]["metadata"] == {"order_id": "o-1"}

    def test_wrong_secret_rejected(self):
        gateway = StripeGateway("sk_test_123", WEBHOOK_SECRET)
        payload = event_payload()

        with pytest.raises(SignatureVerificationError):
            gateway.construct_webhook_event(payload, sign(payload, secret="whsec_other"))

    def test_tampered_payload_rejected(self):
        gateway = StripeGateway("sk_test_123", WEBHOOK_SECRET)
        signature = sign(event_payload())

        with pytest.raises(SignatureVerificationError):
            gateway.construct_webhook_event(event_payload(intent_id="pi_evil"), signature)

    def test_stale_timestamp_rejected(self):
        gateway = StripeGateway("sk_test_123", WEBHOOK_SECRET)
        payload = event_payload()

        with pytest.raises(SignatureVerificationError):
            gateway.construct_webhook_event(payload, sign(payload, timestamp=int(time.time()) - 3600))

    async def test_create_intent_sends_lower_case_currency(self, monkeypatch):
        captured = {}

        def fake_create(**kwargs):
            captured.update(kwargs)
            return SimpleNamespace(
                id="pi_123", amount=kwargs["amount"], currency=kwargs["currency"],
                status="requires_payment_method", client_secret="pi_123_secret",
                metadata=kwargs["metadata"],
            )

        monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
        gateway = StripeGateway("sk_test_123", WEBHOOK_SECRET)

        intent = await gateway.create_payment_intent(2700, "USD", {"order_id": "o-1"}, "order-o-1-v1")

        assert captured["currency"] == "usd"
        assert captured["api_key"] == "sk_test_123"
        assert captured["idempotency_key"] == "order-o-1-v1"
        assert intent.currency == "USD"
        assert intent.metadata == {"order_id": "o-1"}

    async def test_stripe_errors_are_translated(self, monkeypatch):
        def declined(*args, **kwargs):
            raise stripe.CardError("Your card was declined.", None, "card_declined")

        monkeypatch.setattr(stripe.PaymentIntent, "retrieve", declined)
        gateway = StripeGateway("sk_test_123", WEBHOOK_SECRET)

        with pytest.raises(PaymentGatewayError) as excinfo:
            await gateway.retrieve_payment_intent("pi_123")

        assert excinfo.value.message == "Your card was declined."
        assert excinfo.value.gateway_code == "card_declined"
        assert excinfo.value.gateway_type == "CardError"
