"""Tests for payment intent reconciliation, webhooks and refunds."""

import json
from decimal import Decimal

import pytest

from grove import commands, config, event_store, notifications, payments, tokens
from grove.aggregate import CANCELLED, CONFIRMED, PENDING, REFUNDED
from grove.catalog import AdoptionItem, ProductItem
from grove.errors import (
    BelowMinimumPayableError,
    ConflictError,
    ForbiddenError,
    PaymentGatewayError,
    SignatureVerificationError,
    ValidationError,
)
from grove.gateway.fake_adapter import TEST_SIGNATURE

CUSTOMER = {"name": "Alice", "email": "alice@example.com"}


async def card_order(session, redis, items=None, user_id="alice"):
    return await commands.create_order(
        session, redis,
        user_id=user_id,
        items=items or [ProductItem(product_id="soap")],
        customer=CUSTOMER,
    )


def webhook(event_id, event_type, intent_id, **obj):
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "data": {"object": {"id": intent_id, **obj}},
    }).encode()


async def event_types(session, order_id):
    return [e["event_type"] for e in await event_store.load_events(session, order_id)]


class TestCreateIntent:
    async def test_creates_intent_in_minor_units(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)

        view = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")

        assert view["amount"] == 27.0
        assert view["currency"] == "USD"
        assert view["reused"] is False
        intent = gateway.intents[view["intent_id"]]
        assert intent.amount == 2700
        assert intent.metadata["order_id"] == str(agg.id)

    async def test_reuses_open_intent(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)

        first = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")
        second = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")

        assert second["intent_id"] == first["intent_id"]
        assert second["reused"] is True
        assert len(gateway.intents) == 1

    async def test_currency_change_replaces_stale_intent(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        first = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")

        second = await payments.ensure_payment_intent(
            session, redis, agg.id, requester_id="alice", currency="eur"
        )

        assert second["intent_id"] != first["intent_id"]
        assert second["currency"] == "EUR"
        assert gateway.intents[first["intent_id"]].status == "canceled"

    async def test_cancel_webhook_during_replacement_keeps_order(
        self, session, session_factory, redis, catalog, gateway, monkeypatch
    ):
        agg = await card_order(session, redis)
        first = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")
        cancel = gateway.cancel_payment_intent

        # ゲートウェイが取消と同時に canceled の Webhook を送ってくる
        async def cancel_and_notify(intent_id):
            intent = await cancel(intent_id)
            payload = webhook(
                "evt_stale_cancel", payments.CANCELED, intent_id, metadata={"order_id": str(agg.id)}
            )
            async with session_factory() as other:
                await payments.handle_webhook(other, redis, payload, TEST_SIGNATURE)
            return intent

        monkeypatch.setattr(gateway, "cancel_payment_intent", cancel_and_notify)

        second = await payments.ensure_payment_intent(
            session, redis, agg.id, requester_id="alice", currency="EUR"
        )

        order = await commands.load_order(session, agg.id)
        assert order.status == PENDING
        assert order.intent_id == second["intent_id"]
        assert gateway.intents[first["intent_id"]].status == "canceled"
        assert "OrderCancelled" not in await event_types(session, agg.id)

    async def test_stale_intent_cancel_failure_is_ignored(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        first = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")
        gateway.configure(fail_cancel=True)

        second = await payments.ensure_payment_intent(
            session, redis, agg.id, requester_id="alice", currency="EUR"
        )

        assert second["intent_id"] != first["intent_id"]

    async def test_already_paid_intent_confirms_order(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        first = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")
        gateway.complete(first["intent_id"])

        view = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")

        assert view["status"] == "succeeded"
        assert (await commands.load_order(session, agg.id)).status == CONFIRMED

    async def test_gateway_timeout_leaves_order_pending(self, session, redis, catalog, gateway, monkeypatch):
        monkeypatch.setattr(config, "GATEWAY_TIMEOUT_SECONDS", 0.05)
        gateway.configure(delay=1.0)
        agg = await card_order(session, redis)

        with pytest.raises(PaymentGatewayError) as excinfo:
            await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")

        assert excinfo.value.gateway_code == "timeout"
        order = await commands.load_order(session, agg.id)
        assert order.status == PENDING
        assert order.intent_id is None

    async def test_gateway_error_is_passed_through(self, session, redis, catalog, gateway):
        gateway.configure(should_succeed=False)
        agg = await card_order(session, redis)

        with pytest.raises(PaymentGatewayError) as excinfo:
            await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")

        assert excinfo.value.gateway_code == "card_declined"
        assert excinfo.value.gateway_type == "card_error"

    async def test_other_users_order_is_forbidden(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        with pytest.raises(ForbiddenError):
            await payments.ensure_payment_intent(session, redis, agg.id, requester_id="mallory")

    async def test_guest_order_requires_access_token(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis, user_id=None)
        assert agg.access_token

        with pytest.raises(ForbiddenError):
            await payments.ensure_payment_intent(session, redis, agg.id)
        with pytest.raises(ForbiddenError):
            await payments.ensure_payment_intent(session, redis, agg.id, order_token="wrong")

        view = await payments.ensure_payment_intent(session, redis, agg.id, order_token=agg.access_token)
        assert view["amount"] == 27.0
        stored = await commands.load_order(session, agg.id)
        assert stored.access_token is None
        assert stored.access_token_hash != agg.access_token

    async def test_token_order_has_no_intent(self, session, redis, catalog, gateway):
        await tokens.credit(session, "alice", 500, "Welcome")
        await session.commit()
        agg = await commands.create_order(
            session, redis, user_id="alice", items=[ProductItem(product_id="soap")],
            customer=CUSTOMER, payment_method="tokens",
        )
        with pytest.raises(ValidationError):
            await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")

    async def test_below_gateway_minimum(self, session, redis, catalog, gateway, monkeypatch):
        monkeypatch.setattr(config, "MINIMUM_CHARGE_CENTS", 5000)
        agg = await card_order(session, redis)

        with pytest.raises(BelowMinimumPayableError):
            await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")
        assert gateway.intents == {}


class TestConfirmPayment:
    async def test_confirm_after_success(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        view = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")
        gateway.complete(view["intent_id"])

        result = await payments.confirm_payment(session, redis, view["intent_id"], requester_id="alice")

        assert result["status"] == CONFIRMED
        assert result["payment_status"] == "succeeded"

    async def test_confirm_before_payment_keeps_pending(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        view = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")

        result = await payments.confirm_payment(session, redis, view["intent_id"], requester_id="alice")

        assert result["status"] == PENDING

    async def test_intent_status(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        view = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")

        status = await payments.get_intent_status(session, view["intent_id"], requester_id="alice")

        assert status == {
            "order_id": str(agg.id),
            "status": "requires_payment_method",
            "amount": 27.0,
            "currency": "USD",
        }


class TestWebhook:
    async def test_replayed_success_confirms_once(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis, items=[AdoptionItem(target="plot", target_id="plot-1")])
        view = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")
        gateway.complete(view["intent_id"])
        payload = webhook("evt_1", payments.SUCCEEDED, view["intent_id"])

        first = await payments.handle_webhook(session, redis, payload, TEST_SIGNATURE)
        second = await payments.handle_webhook(session, redis, payload, TEST_SIGNATURE)

        assert first == {"received": True}
        assert second == {"received": True, "duplicate": True}
        assert (await event_types(session, agg.id)).count("OrderConfirmed") == 1
        sent = await notifications.list_for_order(session, str(agg.id))
        assert [n["kind"] for n in sent].count(notifications.ADOPTION_CERTIFICATE) == 1

    async def test_client_confirm_and_webhook_agree(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        view = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")
        gateway.complete(view["intent_id"])

        await payments.confirm_payment(session, redis, view["intent_id"], requester_id="alice")
        await payments.handle_webhook(
            session, redis, webhook("evt_2", payments.SUCCEEDED, view["intent_id"]), TEST_SIGNATURE
        )

        assert (await event_types(session, agg.id)).count("OrderConfirmed") == 1

    async def test_payment_failed_keeps_order_retryable(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        view = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")
        payload = webhook(
            "evt_3", payments.FAILED, view["intent_id"],
            last_payment_error={"message": "Your card was declined."},
        )

        await payments.handle_webhook(session, redis, payload, TEST_SIGNATURE)

        order = await commands.load_order(session, agg.id)
        assert order.status == PENDING
        assert order.payment_status == "failed"
        assert order.notes[-1]["note"] == "Your card was declined."

    async def test_canceled_intent_cancels_pending_order(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        view = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")

        await payments.handle_webhook(
            session, redis, webhook("evt_4", payments.CANCELED, view["intent_id"]), TEST_SIGNATURE
        )

        assert (await commands.load_order(session, agg.id)).status == CANCELLED

    async def test_canceled_superseded_intent_is_ignored(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        first = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")
        await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice", currency="EUR")

        await payments.handle_webhook(
            session, redis,
            webhook("evt_5", payments.CANCELED, first["intent_id"], metadata={"order_id": str(agg.id)}),
            TEST_SIGNATURE,
        )

        assert (await commands.load_order(session, agg.id)).status == PENDING

    async def test_bad_signature_is_rejected(self, session, redis, catalog, gateway):
        with pytest.raises(SignatureVerificationError):
            await payments.handle_webhook(
                session, redis, webhook("evt_6", payments.SUCCEEDED, "pi_x"), "forged"
            )

    async def test_unknown_payment_is_acknowledged(self, session, redis, catalog, gateway):
        result = await payments.handle_webhook(
            session, redis, webhook("evt_7", payments.SUCCEEDED, "pi_unknown"), TEST_SIGNATURE
        )
        assert result == {"received": True}

    async def test_unhandled_event_type_is_acknowledged(self, session, redis, catalog, gateway):
        result = await payments.handle_webhook(
            session, redis, webhook("evt_8", "charge.refunded", "ch_1"), TEST_SIGNATURE
        )
        assert result == {"received": True}


class TestCancelAndRefund:
    async def test_cancel_unpaid_order(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        view = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")

        result = await payments.cancel_payment(session, redis, agg.id, requester_id="alice")

        assert result["status"] == CANCELLED
        assert gateway.intents[view["intent_id"]].status == "canceled"

    async def test_cannot_cancel_paid_order(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        view = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")
        gateway.complete(view["intent_id"])
        await payments.confirm_payment(session, redis, view["intent_id"], requester_id="alice")

        with pytest.raises(ConflictError):
            await payments.cancel_payment(session, redis, agg.id, requester_id="alice")

    async def test_card_refund(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        view = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")
        gateway.complete(view["intent_id"])
        await payments.confirm_payment(session, redis, view["intent_id"], requester_id="alice")

        result = await payments.refund_payment(session, redis, agg.id, actor="admin", reason="Damaged")

        assert result["status"] == REFUNDED
        assert result["refund_id"].startswith("re_fake_")
        order = await commands.load_order(session, agg.id)
        assert order.payment_status == "refunded"

    async def test_refund_amount_cannot_exceed_payment(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        view = await payments.ensure_payment_intent(session, redis, agg.id, requester_id="alice")
        gateway.complete(view["intent_id"])
        await payments.confirm_payment(session, redis, view["intent_id"], requester_id="alice")

        with pytest.raises(ValidationError):
            await payments.refund_payment(session, redis, agg.id, actor="admin", amount=Decimal("30.00"))

    async def test_token_refund_credits_balance(self, session, redis, catalog, gateway):
        await tokens.credit(session, "alice", 500, "Welcome")
        await session.commit()
        agg = await commands.create_order(
            session, redis, user_id="alice", items=[ProductItem(product_id="soap")],
            customer=CUSTOMER, payment_method="tokens",
        )
        assert await tokens.get_balance(session, "alice") == Decimal("300.00")

        await payments.refund_payment(session, redis, agg.id, actor="admin")

        assert await tokens.get_balance(session, "alice") == Decimal("500.00")

    async def test_pending_order_cannot_be_refunded(self, session, redis, catalog, gateway):
        agg = await card_order(session, redis)
        with pytest.raises(ConflictError):
            await payments.refund_payment(session, redis, agg.id, actor="admin")
