"""
Commerce Service — 決済の照合 (Payment Reconciliation)

外部ゲートウェイの payment intent と注文の状態を突き合わせる。

  create-intent : 注文ごとに冪等。使える既存インテントがあれば再利用し、
                  金額・通貨が変わっていれば古いものを取り消して作り直す。
  confirm       : クライアントからの確認。インテントの状態を取得して遷移。
  webhook       : 署名検証 → イベント ID で重複排除 → 状態に応じて遷移。

確定・取消はすべて commands.transition_order を通るので、
confirm と webhook のどちらが先に届いても結果は同じになる。
ゲートウェイ呼び出しはすべて GATEWAY_TIMEOUT_SECONDS で打ち切る。
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import commands, config, queries, tokens
from .aggregate import (
    CANCELLED,
    CONFIRMED,
    PAYMENT_COMPLETED,
    PAYMENT_REFUNDED,
    PENDING,
    REFUNDED,
    OrderAggregate,
)
from .errors import (
    BelowMinimumPayableError,
    ConflictError,
    NotFoundError,
    PaymentGatewayError,
    ValidationError,
)
from .gateway import get_gateway
from .gateway.port import PaymentIntent, WebhookEvent

logger = logging.getLogger(__name__)

SUCCEEDED = "payment_intent.succeeded"
FAILED = "payment_intent.payment_failed"
CANCELED = "payment_intent.canceled"


def to_minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


async def _bounded(awaitable, action: str):
    """ゲートウェイ呼び出しをタイムアウト付きで待つ。"""
    try:
        return await asyncio.wait_for(awaitable, timeout=config.GATEWAY_TIMEOUT_SECONDS)
    except asyncio.TimeoutError as exc:
        logger.error("Payment gateway timed out during %s", action)
        raise PaymentGatewayError(
            f"Payment gateway timed out during {action}",
            gateway_code="timeout",
            gateway_type="timeout",
        ) from exc


def _intent_view(agg: OrderAggregate, intent: PaymentIntent, reused: bool = False) -> dict:
    return {
        "order_id": str(agg.id),
        "intent_id": intent.id,
        "client_secret": intent.client_secret,
        "amount": intent.amount / 100,
        "currency": intent.currency,
        "status": intent.status,
        "reused": reused,
    }


async def _cancel_quietly(intent_id: str) -> None:
    """古いインテントの取消。失敗しても処理は続ける。"""
    try:
        await _bounded(get_gateway().cancel_payment_intent(intent_id), "cancel stale intent")
        logger.info("Canceled stale payment intent %s", intent_id)
    except PaymentGatewayError as exc:
        logger.warning("Could not cancel stale payment intent %s: %s", intent_id, exc.message)


# ── インテント作成・再利用 ───────────────────────────

async def ensure_payment_intent(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    *,
    requester_id: str | None = None,
    is_admin: bool = False,
    order_token: str | None = None,
    currency: str | None = None,
) -> dict:
    """
    注文の支払い用インテントを返す。

    - 使える (終端でない) インテントが同じ金額・通貨であれば再利用
    - 金額・通貨が変わっていれば新規作成し、紐付けた後で古いインテントを取り消す (失敗は無視)
    - ゲートウェイがタイムアウトした場合、注文は pending のままインテントなし
    """
    agg = await commands.load_order(session, order_id)
    queries.check_access(agg.user_id, requester_id, is_admin, agg.access_token_hash, order_token)
    if agg.payment_method != "card":
        raise ValidationError("This order is not paid through the payment gateway")
    if agg.status != PENDING:
        raise ConflictError(f"Order is already {agg.status}")

    currency = (currency or agg.currency).upper()
    amount = to_minor_units(agg.payment_amount)
    if amount < config.MINIMUM_CHARGE_CENTS:
        raise BelowMinimumPayableError(
            f"Amount must be at least {config.MINIMUM_CHARGE_CENTS / 100:.2f} {currency}"
        )

    gateway = get_gateway()
    stale_intent_id = None
    if agg.intent_id:
        try:
            existing = await _bounded(gateway.retrieve_payment_intent(agg.intent_id), "retrieve intent")
        except PaymentGatewayError as exc:
            logger.warning("Could not retrieve intent %s: %s", agg.intent_id, exc.message)
            existing = None

        if existing is not None:
            if existing.status == "succeeded":
                # 支払い済みなのに確定が届いていない
                agg = await commands.transition_order(
                    session, redis, agg.id, CONFIRMED,
                    actor="gateway", payment_completed=True, intent_id=existing.id,
                )
                return _intent_view(agg, existing, reused=True)
            if not existing.is_terminal:
                if existing.amount == amount and existing.currency == currency:
                    return _intent_view(agg, existing, reused=True)
                stale_intent_id = existing.id

    idempotency_key = f"order-{agg.id}-v{agg.version}-{amount}-{currency}"
    intent = await _bounded(
        gateway.create_payment_intent(
            amount,
            currency,
            {"order_id": str(agg.id), "order_number": agg.order_number},
            idempotency_key,
        ),
        "create intent",
    )

    try:
        agg = await commands.attach_payment_intent(session, redis, agg, intent)
    except ConflictError:
        current = await commands.load_order(session, order_id)
        if current.intent_id == intent.id:
            return _intent_view(current, intent)
        await _cancel_quietly(intent.id)
        raise ConflictError("Another payment attempt for this order is in progress")

    # 新しいインテントを紐付けてから取り消す。取消の webhook は差し替え済みとして無視される
    if stale_intent_id:
        await _cancel_quietly(stale_intent_id)
    logger.info("Created payment intent %s for order %s", intent.id, agg.order_number)
    return _intent_view(agg, intent)


# ── 照合 ────────────────────────────────────────

async def _order_for_intent(session: AsyncSession, intent_id: str, metadata: dict | None = None) -> UUID | None:
    order_id = await queries.find_order_id_by_intent(session, intent_id)
    if order_id is None and metadata and metadata.get("order_id"):
        # 差し替え前の古いインテントでも注文までは辿れる
        order_id = UUID(metadata["order_id"])
    return order_id


async def reconcile_intent(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    agg: OrderAggregate,
    intent_id: str,
    intent_status: str,
    *,
    source: str,
    failure_reason: str = "",
) -> OrderAggregate:
    """インテントの状態を注文に反映する。confirm と webhook の共通処理。"""
    if intent_status == "succeeded":
        if agg.payment_status in (PAYMENT_COMPLETED, PAYMENT_REFUNDED):
            return agg
        # 古いインテントでもお金は受け取っているので確定する
        return await commands.transition_order(
            session, redis, agg.id, CONFIRMED,
            actor=source, payment_completed=True, intent_id=intent_id,
        )

    if intent_id != agg.intent_id:
        logger.info(
            "Ignoring %s for superseded intent %s on order %s",
            intent_status, intent_id, agg.order_number,
        )
        return agg

    if intent_status == "canceled" and agg.status == PENDING:
        return await commands.transition_order(
            session, redis, agg.id, CANCELLED,
            actor=source, reason="Payment was canceled",
        )
    if intent_status == "payment_failed":
        return await commands.record_payment_failure(session, redis, agg.id, intent_id, failure_reason)
    return agg


async def confirm_payment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    intent_id: str,
    *,
    requester_id: str | None = None,
    is_admin: bool = False,
    order_token: str | None = None,
) -> dict:
    """クライアントからの支払い確認。ゲートウェイの状態を取得して遷移させる。"""
    order_id = await queries.find_order_id_by_intent(session, intent_id)
    if order_id is None:
        raise NotFoundError("No order found for this payment")
    agg = await commands.load_order(session, order_id)
    queries.check_access(agg.user_id, requester_id, is_admin, agg.access_token_hash, order_token)

    intent = await _bounded(get_gateway().retrieve_payment_intent(intent_id), "retrieve intent")
    agg = await reconcile_intent(session, redis, agg, intent.id, intent.status, source="client")
    return {
        "order_id": str(agg.id),
        "order_number": agg.order_number,
        "status": agg.status,
        "payment_status": intent.status,
    }


async def get_intent_status(
    session: AsyncSession,
    intent_id: str,
    *,
    requester_id: str | None = None,
    is_admin: bool = False,
    order_token: str | None = None,
) -> dict:
    order_id = await queries.find_order_id_by_intent(session, intent_id)
    if order_id is None:
        raise NotFoundError("No order found for this payment")
    agg = await commands.load_order(session, order_id)
    queries.check_access(agg.user_id, requester_id, is_admin, agg.access_token_hash, order_token)
    intent = await _bounded(get_gateway().retrieve_payment_intent(intent_id), "retrieve intent")
    return {
        "order_id": str(agg.id),
        "status": intent.status,
        "amount": intent.amount / 100,
        "currency": intent.currency,
    }


# ── Webhook ─────────────────────────────────────

async def _already_processed(session: AsyncSession, event_id: str) -> bool:
    result = await session.execute(
        text("SELECT 1 FROM webhook_events WHERE event_id = :event_id"),
        {"event_id": event_id},
    )
    return result.first() is not None


async def _mark_processed(session: AsyncSession, event: WebhookEvent) -> None:
    await session.execute(
        text("""
            INSERT INTO webhook_events (event_id, event_type, received_at)
            VALUES (:event_id, :event_type, :now)
            ON CONFLICT (event_id) DO NOTHING
        """),
        {"event_id": event.id, "event_type": event.type, "now": datetime.now(timezone.utc).isoformat()},
    )
    await session.commit()


async def handle_webhook(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    payload: bytes,
    signature: str,
) -> dict:
    """
    ゲートウェイからの Webhook を処理する。

    署名検証の失敗だけは SignatureVerificationError として拒否する。
    それ以外の失敗はログに残して受領を返す (再送の嵐を防ぐ)。
    同じイベント ID の再送は何もしない。
    """
    event = get_gateway().construct_webhook_event(payload, signature)

    if await _already_processed(session, event.id):
        logger.info("Webhook event %s already processed", event.id)
        return {"received": True, "duplicate": True}

    try:
        await _dispatch(session, redis, event)
        await _mark_processed(session, event)
    except Exception:
        logger.exception("Webhook %s (%s) failed; acknowledging", event.id, event.type)
        await session.rollback()
    return {"received": True}


async def _dispatch(session: AsyncSession, redis: aioredis.Redis | None, event: WebhookEvent) -> None:
    if event.type not in (SUCCEEDED, FAILED, CANCELED) or not event.intent_id:
        logger.info("Ignoring webhook event type %s", event.type)
        return

    obj = event.payload.get("data", {}).get("object", {})
    order_id = await _order_for_intent(session, event.intent_id, obj.get("metadata"))
    agg = None
    if order_id is not None:
        try:
            agg = await commands.load_order(session, order_id)
        except NotFoundError:
            agg = None
    if agg is None:
        logger.warning("Webhook %s references unknown payment %s", event.type, event.intent_id)
        return

    if event.type == SUCCEEDED:
        await reconcile_intent(session, redis, agg, event.intent_id, "succeeded", source="webhook")
    elif event.type == FAILED:
        reason = (obj.get("last_payment_error") or {}).get("message") or "Payment failed"
        await reconcile_intent(
            session, redis, agg, event.intent_id, "payment_failed",
            source="webhook", failure_reason=reason,
        )
    else:
        await reconcile_intent(session, redis, agg, event.intent_id, "canceled", source="webhook")


# ── 取消・返金 ──────────────────────────────────

async def cancel_payment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    *,
    requester_id: str | None = None,
    is_admin: bool = False,
    order_token: str | None = None,
) -> dict:
    """未払い注文のインテントを取り消し、注文を cancelled にする。"""
    agg = await commands.load_order(session, order_id)
    queries.check_access(agg.user_id, requester_id, is_admin, agg.access_token_hash, order_token)
    agg.assert_can_transition(CANCELLED)
    if agg.status != PENDING:
        raise ConflictError("Only unpaid orders can be canceled here; request a refund instead")

    if agg.intent_id:
        await _bounded(get_gateway().cancel_payment_intent(agg.intent_id), "cancel intent")
    agg = await commands.transition_order(
        session, redis, agg.id, CANCELLED,
        actor=requester_id or "guest", reason="Payment canceled by customer",
    )
    return {"order_id": str(agg.id), "status": agg.status}


async def refund_payment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    *,
    actor: str,
    amount=None,
    reason: str = "",
) -> dict:
    """
    確定済み注文を返金する (管理者)。
    カード払いはゲートウェイで返金、トークン払いは残高に戻す。
    里親枠と割引コードは自動では戻さない。
    """
    agg = await commands.load_order(session, order_id)
    agg.assert_can_transition(REFUNDED)

    refund_id = None
    if agg.payment_method == "tokens":
        if amount is not None:
            raise ValidationError("Token payments are refunded in full")
        await tokens.credit(
            session, agg.user_id, agg.token_total,
            f"Refund for order {agg.order_number}",
            order_id=str(agg.id), tx_type="transfer",
        )
    else:
        if not agg.intent_id:
            raise ValidationError("Order has no captured payment to refund")
        cents = to_minor_units(amount) if amount is not None else None
        if cents is not None and not 0 < cents <= to_minor_units(agg.payment_amount):
            raise ValidationError("Refund amount must be positive and at most the amount paid")
        result = await _bounded(
            get_gateway().create_refund(agg.intent_id, cents, reason), "refund"
        )
        if not result.success:
            raise PaymentGatewayError(result.failure_reason or "Refund failed", gateway_type="refund_failed")
        refund_id = result.gateway_refund_id

    agg = await commands.transition_order(
        session, redis, agg.id, REFUNDED,
        actor=actor, reason=reason, refund_id=refund_id, note=reason or None,
    )
    return {"order_id": str(agg.id), "status": agg.status, "refund_id": refund_id}
