"""Configurable fake payment gateway for development and testing.

Simulates the payment-intent lifecycle in memory without external calls:
- intents honour idempotency keys like the real gateway
- `complete()` / `fail()` stand in for the customer finishing payment
- `delay` makes every call slow, for timeout handling
- webhook signatures are valid when equal to "test-signature"
"""

import asyncio
import json
from dataclasses import replace
from uuid import uuid4

from ..errors import PaymentGatewayError, SignatureVerificationError
from .port import PaymentGateway, PaymentIntent, RefundResult, WebhookEvent

TEST_SIGNATURE = "test-signature"


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "Card declined"
        self.fail_cancel: bool = False
        self.delay: float = 0.0
        self.intents: dict[str, PaymentIntent] = {}
        self.idempotency_keys: dict[str, str] = {}
        self.calls: list[dict] = []

    def configure(
        self,
        should_succeed: bool = True,
        failure_reason: str = "Card declined",
        fail_cancel: bool = False,
        delay: float = 0.0,
    ) -> None:
        """Configure gateway behavior at runtime."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.fail_cancel = fail_cancel
        self.delay = delay

    async def _call(self, method: str, **kwargs) -> None:
        self.calls.append({"method": method, **kwargs})
        if self.delay:
            await asyncio.sleep(self.delay)

    def _get(self, intent_id: str) -> PaymentIntent:
        intent = self.intents.get(intent_id)
        if intent is None:
            raise PaymentGatewayError(
                f"No such payment_intent: {intent_id}",
                gateway_code="resource_missing",
                gateway_type="invalid_request_error",
            )
        return intent

    def set_status(self, intent_id: str, status: str) -> PaymentIntent:
        intent = replace(self._get(intent_id), status=status)
        self.intents[intent_id] = intent
        return intent

    def complete(self, intent_id: str) -> PaymentIntent:
        """The customer paid successfully."""
        return self.set_status(intent_id, "succeeded")

    def fail(self, intent_id: str) -> PaymentIntent:
        """The customer's payment method was declined."""
        return self.set_status(intent_id, "requires_payment_method")

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: dict,
        idempotency_key: str,
    ) -> PaymentIntent:
        await self._call(
            "create_payment_intent",
            amount=amount,
            currency=currency,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        if not self.should_succeed:
            raise PaymentGatewayError(
                self.failure_reason, gateway_code="card_declined", gateway_type="card_error"
            )
        existing = self.idempotency_keys.get(idempotency_key)
        if existing is not None:
            return self.intents[existing]

        intent_id = f"pi_fake_{uuid4().hex[:16]}"
        intent = PaymentIntent(
            id=intent_id,
            amount=amount,
            currency=currency.upper(),
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret_{uuid4().hex[:8]}",
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        self.idempotency_keys[idempotency_key] = intent_id
        return intent

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        await self._call("retrieve_payment_intent", intent_id=intent_id)
        return self._get(intent_id)

    async def cancel_payment_intent(self, intent_id: str) -> PaymentIntent:
        await self._call("cancel_payment_intent", intent_id=intent_id)
        intent = self._get(intent_id)
        if self.fail_cancel or intent.status == "succeeded":
            raise PaymentGatewayError(
                f"PaymentIntent {intent_id} cannot be canceled in status {intent.status}",
                gateway_code="payment_intent_unexpected_state",
                gateway_type="invalid_request_error",
            )
        return self.set_status(intent_id, "canceled")

    async def create_refund(
        self,
        intent_id: str,
        amount: int | None,
        reason: str,
    ) -> RefundResult:
        await self._call("create_refund", intent_id=intent_id, amount=amount, reason=reason)
        intent = self.intents.get(intent_id)
        if not self.should_succeed or intent is None or intent.status != "succeeded":
            return RefundResult(success=False, failure_reason=self.failure_reason)
        return RefundResult(
            success=True,
            gateway_refund_id=f"re_fake_{uuid4().hex[:12]}",
            gateway_status="succeeded",
        )

    def construct_webhook_event(self, payload: bytes, signature: str) -> WebhookEvent:
        if signature != TEST_SIGNATURE:
            raise SignatureVerificationError()
        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise SignatureVerificationError("Invalid webhook payload") from exc
        obj = event.get("data", {}).get("object", {})
        return WebhookEvent(
            id=event["id"],
            type=event["type"],
            intent_id=obj.get("id"),
            payload=event,
        )
