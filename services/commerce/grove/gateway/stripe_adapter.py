"""Stripe payment gateway adapter.

Wraps the stripe-python SDK. The SDK is synchronous, so each request runs
in a worker thread; the event loop is never blocked on the network.
Amounts are in the smallest currency unit (cents), currencies are sent
lower-case as Stripe expects and reported upper-case.
"""

import asyncio
import json
import logging

import stripe

from ..errors import PaymentGatewayError, SignatureVerificationError
from .port import PaymentGateway, PaymentIntent, RefundResult, WebhookEvent

logger = logging.getLogger(__name__)


def _plain(obj) -> dict:
    if obj is None:
        return {}
    return obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)


def _to_intent(obj) -> PaymentIntent:
    return PaymentIntent(
        id=obj.id,
        amount=int(obj.amount),
        currency=str(obj.currency).upper(),
        status=obj.status,
        client_secret=getattr(obj, "client_secret", None),
        metadata=_plain(getattr(obj, "metadata", None)),
    )


def _gateway_error(exc: stripe.StripeError) -> PaymentGatewayError:
    error = getattr(exc, "error", None)
    return PaymentGatewayError(
        getattr(exc, "user_message", None) or str(exc) or "Stripe request failed",
        gateway_code=getattr(exc, "code", None),
        gateway_type=getattr(error, "type", None) or type(exc).__name__,
    )


class StripeGateway(PaymentGateway):
    """Production Stripe gateway adapter."""

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    async def _request(self, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as exc:
            logger.warning("Stripe request failed: %s (%s)", exc, type(exc).__name__)
            raise _gateway_error(exc) from exc

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: dict,
        idempotency_key: str,
    ) -> PaymentIntent:
        obj = await self._request(
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency.lower(),
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        return _to_intent(obj)

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        return _to_intent(await self._request(stripe.PaymentIntent.retrieve, intent_id))

    async def cancel_payment_intent(self, intent_id: str) -> PaymentIntent:
        return _to_intent(await self._request(stripe.PaymentIntent.cancel, intent_id))

    async def create_refund(
        self,
        intent_id: str,
        amount: int | None,
        reason: str,
    ) -> RefundResult:
        params = {"payment_intent": intent_id, "reason": "requested_by_customer"}
        if amount is not None:
            params["amount"] = amount
        if reason:
            params["metadata"] = {"reason": reason}
        try:
            refund = await self._request(stripe.Refund.create, **params)
        except PaymentGatewayError as exc:
            return RefundResult(success=False, failure_reason=exc.message)
        return RefundResult(
            success=refund.status in ("succeeded", "pending"),
            gateway_refund_id=refund.id,
            gateway_status=refund.status,
            failure_reason=getattr(refund, "failure_reason", None),
        )

    def construct_webhook_event(self, payload: bytes, signature: str) -> WebhookEvent:
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise SignatureVerificationError() from exc
        except ValueError as exc:
            raise SignatureVerificationError("Invalid webhook payload") from exc
        # 署名検証済みの生ボディをそのまま使う
        event = json.loads(payload)
        return WebhookEvent(
            id=event["id"],
            type=event["type"],
            intent_id=event.get("data", {}).get("object", {}).get("id"),
            payload=event,
        )
