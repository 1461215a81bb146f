"""
Commerce Service — コマンドハンドラ (CQRS の Write 側)

注文の作成と状態遷移はすべてここを通る。
状態遷移の入口は transition_order ひとつだけで、
決済確定・Webhook・管理者操作のどれから呼ばれても同じガードと副作用を通る。

  1. イベントから集約を再構築
  2. 遷移ガードを確認
  3. イベントを追記 (expected_version による楽観的ロック)
  4. リードモデルを更新
  5. 副作用: 割引コード消費 / 里親枠の確保 / 通知をアウトボックスへ
  6. commit
  7. Redis Pub/Sub でイベントを発行
"""

import json
import logging
import secrets
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import adoption, catalog, config, discounts, event_store, events, notifications, pricing, queries, tokens
from .aggregate import (
    CANCELLED,
    CONFIRMED,
    DELIVERED,
    PAYMENT_COMPLETED,
    REFUNDED,
    SHIPPED,
    TRANSITION_EVENTS,
    OrderAggregate,
)
from .errors import ConflictError, GroveError, NotFoundError, ValidationError
from .gateway.port import PaymentIntent

logger = logging.getLogger(__name__)

AGGREGATE_TYPE = "Order"
PAYMENT_METHODS = ("card", "tokens")

_EVENT_MODELS = {
    "OrderConfirmed": events.OrderConfirmed,
    "OrderShipped": events.OrderShipped,
    "OrderDelivered": events.OrderDelivered,
    "OrderCancelled": events.OrderCancelled,
    "OrderRefunded": events.OrderRefunded,
}


def generate_order_number(now: datetime) -> str:
    return f"GRV-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


async def publish(redis: aioredis.Redis | None, event_type: str, data: dict) -> None:
    """commit 後にイベントを発行する。失敗しても注文の状態は変えない。"""
    if redis is None:
        return
    try:
        await redis.publish(config.ORDER_EVENTS_CHANNEL, json.dumps({
            "event_type": event_type,
            "data": data,
        }, default=str))
    except RedisError:
        logger.exception("Failed to publish %s", event_type)


async def load_order(session: AsyncSession, order_id: UUID) -> OrderAggregate:
    agg = OrderAggregate.from_events(await event_store.load_events(session, order_id))
    if not agg.exists:
        raise NotFoundError(f"Order {order_id} not found")
    return agg


# ── 注文作成 ────────────────────────────────────

async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    *,
    user_id: str | None,
    items: list,
    customer: dict,
    shipping_address: dict | None = None,
    payment_method: str = "card",
    discount_code: str | None = None,
    currency: str | None = None,
    policy: pricing.PricingPolicy | None = None,
) -> OrderAggregate:
    """
    注文作成コマンド

    1. 明細をカタログで解決し、価格を計算 (割引コードは検証のみ、消費しない)
    2. OrderCreated イベントを追記し、リードモデルを作成
    3. トークン払いなら同じトランザクションで残高を引き落とし、即時確定
    4. commit 後に Redis Pub/Sub でイベントを発行
    """
    policy = policy or pricing.PricingPolicy.from_config()
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"Unsupported payment method: {payment_method}")
    paid_in_tokens = payment_method == "tokens"
    if paid_in_tokens:
        if not user_id:
            raise ValidationError("Token payment requires a signed-in account")
        if not await tokens.has_wallet(session, user_id):
            raise ValidationError("Link a wallet to your account before paying with tokens")
    if discount_code and paid_in_tokens:
        raise ValidationError("Discount codes cannot be combined with token payment")

    lines = await catalog.resolve_items(session, items)
    priced = [line.priced() for line in lines]

    terms = None
    if discount_code:
        subtotal, _ = pricing.calculate_subtotals(priced)
        shipping = pricing.calculate_shipping(subtotal, policy, paid_in_tokens)
        terms, _ = await discounts.validate(session, discount_code, subtotal + shipping, user_id)

    totals = pricing.price_order(priced, policy, paid_in_tokens=paid_in_tokens, discount=terms)

    now = datetime.now(timezone.utc)
    order_id = uuid4()
    order_number = generate_order_number(now)
    # ゲスト注文はアクセストークンで閲覧・決済する
    access_token = secrets.token_urlsafe(16) if user_id is None else None
    access_token_hash = queries.hash_token(access_token) if access_token else None
    if paid_in_tokens:
        payment_amount, payment_currency = totals.token_total, config.TOKEN_CURRENCY
    else:
        payment_amount, payment_currency = totals.total, (currency or config.DEFAULT_CURRENCY).upper()

    event_data = events.OrderCreated(
        order_id=order_id,
        timestamp=now,
        actor=user_id,
        order_number=order_number,
        user_id=user_id,
        items=[line.model_dump() for line in lines],
        customer=customer,
        shipping_address=shipping_address,
        payment_method=payment_method,
        payment_amount=float(payment_amount),
        currency=payment_currency,
        discount_code=totals.discount_code,
        access_token_hash=access_token_hash,
        **totals.as_dict(),
    ).model_dump(mode="json")

    # 1. イベントストアに追記
    version = await event_store.append_event(
        session, order_id, AGGREGATE_TYPE, "OrderCreated", event_data, 0
    )

    # 2. リードモデルを作成
    await session.execute(
        text("""
            INSERT INTO orders_read_model
                (id, order_number, user_id, status, payment_method, payment_status,
                 payment_amount, payment_currency, subtotal, shipping, tax, discount,
                 total, token_total, discount_code, access_token_hash, items, customer,
                 shipping_address, created_at, updated_at)
            VALUES
                (:id, :order_number, :user_id, 'pending', :payment_method, 'pending',
                 :payment_amount, :payment_currency, :subtotal, :shipping, :tax, :discount,
                 :total, :token_total, :discount_code, :access_token_hash, :items, :customer,
                 :shipping_address, :now, :now)
        """),
        {
            "id": str(order_id),
            "order_number": order_number,
            "user_id": user_id,
            "payment_method": payment_method,
            "payment_amount": float(payment_amount),
            "payment_currency": payment_currency,
            "discount_code": totals.discount_code,
            "access_token_hash": access_token_hash,
            "items": json.dumps(event_data["items"]),
            "customer": json.dumps(customer),
            "shipping_address": json.dumps(shipping_address) if shipping_address else None,
            "now": now.isoformat(),
            **totals.as_dict(),
        },
    )

    agg = OrderAggregate()
    agg.apply_order_created(event_data)
    agg.version = version
    agg.access_token = access_token
    published = [("OrderCreated", event_data)]

    # 3. トークン払い: 引き落としと確定を同じ作業単位で行う
    if paid_in_tokens:
        await tokens.debit(
            session, user_id, totals.token_total,
            f"Payment for order {order_number}",
            order_id=str(order_id), tx_type="purchase",
        )
    if paid_in_tokens or totals.total == Decimal("0"):
        published += await _apply_transition(
            session, agg, CONFIRMED,
            actor="system",
            note="Paid with tokens" if paid_in_tokens else "Nothing to pay",
        )

    await session.commit()

    # 4. Redis Pub/Sub でイベントを発行
    for event_type, data in published:
        await publish(redis, event_type, data)

    logger.info(
        "Order %s created (%s, total %s %s)",
        order_number, agg.status, payment_amount, payment_currency,
    )
    return agg


# ── 状態遷移 ────────────────────────────────────

async def transition_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    target: str,
    *,
    actor: str | None = None,
    note: str | None = None,
    payment_completed: bool = False,
    intent_id: str | None = None,
    tracking_number: str | None = None,
    reason: str = "",
    refund_id: str | None = None,
) -> OrderAggregate:
    """
    注文の状態を target に進める唯一の入口。

    既に target にある注文への同じ遷移は何もしない (Webhook の再送に対して冪等)。
    confirmed への遷移は支払い完了が条件。
    楽観的ロックに負けた場合は読み直し、相手が同じ遷移を済ませていれば成功扱い。
    """
    agg = await load_order(session, order_id)
    if agg.status == target:
        return agg
    agg.assert_can_transition(target)
    if target == CONFIRMED and not payment_completed and agg.payment_status != PAYMENT_COMPLETED:
        raise ValidationError("Order cannot be confirmed before payment is completed")

    try:
        published = await _apply_transition(
            session, agg, target,
            actor=actor, note=note, intent_id=intent_id,
            tracking_number=tracking_number, reason=reason, refund_id=refund_id,
        )
        await session.commit()
    except ConflictError:
        await session.rollback()
        current = await load_order(session, order_id)
        if current.status == target:
            logger.info("Order %s already %s by a concurrent request", current.order_number, target)
            return current
        raise

    for event_type, data in published:
        await publish(redis, event_type, data)
    logger.info("Order %s → %s", agg.order_number, target)
    return agg


async def _apply_transition(
    session: AsyncSession,
    agg: OrderAggregate,
    target: str,
    *,
    actor: str | None = None,
    note: str | None = None,
    intent_id: str | None = None,
    tracking_number: str | None = None,
    reason: str = "",
    refund_id: str | None = None,
) -> list[tuple[str, dict]]:
    """イベント追記・リードモデル更新・副作用。commit はしない。"""
    now = datetime.now(timezone.utc)
    event_type = TRANSITION_EVENTS[target]
    fields = {"order_id": agg.id, "timestamp": now, "actor": actor, "note": note}
    if target == CONFIRMED:
        fields["intent_id"] = intent_id
    elif target == SHIPPED:
        fields["tracking_number"] = tracking_number
    elif target in (CANCELLED, REFUNDED):
        fields["reason"] = reason
        if target == REFUNDED:
            fields["refund_id"] = refund_id
    event_data = _EVENT_MODELS[event_type](**fields).model_dump(mode="json")

    # 先にイベントを追記する: 同じ注文への同時遷移はここで 1 つに絞られる
    agg.version = await event_store.append_event(
        session, agg.id, AGGREGATE_TYPE, event_type, event_data, agg.version
    )
    agg.apply_event(event_type, event_data)

    await session.execute(
        text("""
            UPDATE orders_read_model
            SET status = :status,
                payment_status = :payment_status,
                payment_intent_id = :intent_id,
                tracking_number = :tracking_number,
                updated_at = :now
            WHERE id = :id
        """),
        {
            "id": str(agg.id),
            "status": agg.status,
            "payment_status": agg.payment_status,
            "intent_id": agg.intent_id,
            "tracking_number": agg.tracking_number,
            "now": now.isoformat(),
        },
    )

    if target == CONFIRMED:
        await _run_confirmation_effects(session, agg, now)
    elif target in (SHIPPED, DELIVERED, CANCELLED, REFUNDED):
        await notifications.enqueue(
            session,
            notifications.ORDER_STATUS,
            agg.customer.get("email"),
            _order_summary(agg),
            dedupe_key=f"status:{agg.id}:{target}",
            order_id=str(agg.id),
        )
    # cancelled / refunded でも里親枠と割引コードは自動では戻さない
    return [(event_type, event_data)]


def _order_summary(agg: OrderAggregate) -> dict:
    return {
        "order_id": str(agg.id),
        "order_number": agg.order_number,
        "status": agg.status,
        "customer_name": agg.customer.get("name"),
        "items": [
            {"name": item["name"], "quantity": item["quantity"], "unit_price": item["unit_price"]}
            for item in agg.items
        ],
        "subtotal": agg.subtotal,
        "shipping": agg.shipping,
        "discount": agg.discount,
        "tax": agg.tax,
        "total": agg.total,
        "token_total": agg.token_total,
        "payment_method": agg.payment_method,
        "currency": agg.currency,
        "tracking_number": agg.tracking_number,
    }


async def _run_confirmation_effects(session: AsyncSession, agg: OrderAggregate, now: datetime) -> None:
    """
    confirmed への遷移時の副作用。どれが失敗しても確定は取り消さない。

    1. 割引コードを消費
    2. 里親明細ごとに枠を確保
    3. 確認メール・証明書・マイルストーン通知をアウトボックスへ
    """
    order_id = str(agg.id)

    if agg.discount_code:
        try:
            await discounts.consume(session, agg.discount_code, agg.user_id, order_id)
        except GroveError as exc:
            logger.error(
                "Discount %s could not be consumed for order %s: %s",
                agg.discount_code, agg.order_number, exc.message,
            )

    allocated: list[tuple[int, dict]] = []
    adoptions_before = 0
    if agg.adoption_items:
        if agg.user_id is None:
            logger.warning("Guest order %s contains adoptions; no slots allocated", agg.order_number)
        else:
            adoptions_before = await adoption.count_user_adoptions(session, agg.user_id)
            for index, item in enumerate(agg.items):
                if item.get("type") != "adoption":
                    continue
                try:
                    result = await adoption.allocate(
                        session, item["target"], item["ref_id"], agg.user_id, order_id, now
                    )
                except GroveError as exc:
                    logger.error(
                        "Adoption of %s %s failed for order %s: %s",
                        item["target"], item["ref_id"], agg.order_number, exc.message,
                    )
                    continue
                allocated.append((index, {**item, **result.as_dict()}))

    customer_email = agg.customer.get("email")
    customer_name = agg.customer.get("name") or "Customer"

    await notifications.enqueue(
        session, notifications.ORDER_CONFIRMATION, customer_email, _order_summary(agg),
        dedupe_key=f"confirmation:{order_id}", order_id=order_id,
    )

    for index, item in allocated:
        is_gift = item.get("adoption_for") == "gift" and bool((item.get("recipient_email") or "").strip())
        item_info = {
            "name": item["name"],
            "target": item["target"],
            "location": item.get("location"),
            "species": item.get("species"),
            "slot_number": item.get("slot_number"),
            "adopted_at": item.get("adopted_at"),
            "expires_at": item.get("expires_at"),
            "order_number": agg.order_number,
        }
        if is_gift:
            item_info["gift_from"] = customer_name
            item_info["gift_message"] = item.get("gift_message")
        await notifications.enqueue(
            session,
            notifications.ADOPTION_CERTIFICATE,
            item["recipient_email"].strip() if is_gift else customer_email,
            {
                "adopter_name": (item.get("recipient_name") or "Friend") if is_gift else customer_name,
                "item": item_info,
                "is_gift": is_gift,
            },
            dedupe_key=f"certificate:{order_id}:{index}",
            order_id=order_id,
        )

    if allocated:
        adoptions_after = await adoption.count_user_adoptions(session, agg.user_id)
        for threshold, milestone in _crossed_milestones(adoptions_before, adoptions_after):
            await notifications.enqueue(
                session,
                notifications.MILESTONE,
                customer_email,
                {"user_name": customer_name, "milestone": milestone, "adoption_count": threshold},
                dedupe_key=f"milestone:{agg.user_id}:{threshold}",
                order_id=order_id,
            )


def _crossed_milestones(before: int, after: int) -> list[tuple[int, str]]:
    """before → after の間に越えた閾値。最初の 1 本は first_adoption。"""
    crossed = []
    if before < 1 <= after:
        crossed.append((1, "first_adoption"))
    for threshold in config.ADOPTION_MILESTONES:
        if before < threshold <= after:
            crossed.append((threshold, f"{threshold}_adoptions"))
    return crossed


# ── 決済インテントの記録 ─────────────────────────

async def attach_payment_intent(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    agg: OrderAggregate,
    intent: PaymentIntent,
) -> OrderAggregate:
    """
    作成したインテントを注文に紐付ける。

    agg.version を expected_version にするので、同じ注文へ同時に別の
    インテントを紐付けようとした場合は片方が ConflictError になる。
    """
    now = datetime.now(timezone.utc)
    event_data = events.PaymentIntentAttached(
        order_id=agg.id,
        timestamp=now,
        intent_id=intent.id,
        amount=intent.amount / 100,
        currency=intent.currency,
    ).model_dump(mode="json")

    try:
        agg.version = await event_store.append_event(
            session, agg.id, AGGREGATE_TYPE, "PaymentIntentAttached", event_data, agg.version
        )
        await session.execute(
            text("""
                UPDATE orders_read_model
                SET payment_intent_id = :intent_id, payment_currency = :currency,
                    payment_status = 'pending', updated_at = :now
                WHERE id = :id
            """),
            {"id": str(agg.id), "intent_id": intent.id, "currency": intent.currency, "now": now.isoformat()},
        )
        await session.commit()
    except ConflictError:
        await session.rollback()
        raise

    agg.apply_event("PaymentIntentAttached", event_data)
    await publish(redis, "PaymentIntentAttached", event_data)
    return agg


async def record_payment_failure(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    intent_id: str | None,
    reason: str,
) -> OrderAggregate:
    """決済失敗を記録する。注文は pending のままなので顧客は再試行できる。"""
    agg = await load_order(session, order_id)
    if agg.status != "pending":
        logger.info("Ignoring payment failure for %s order %s", agg.status, agg.order_number)
        return agg

    now = datetime.now(timezone.utc)
    event_data = events.PaymentFailed(
        order_id=agg.id, timestamp=now, intent_id=intent_id, reason=reason, note=reason or None,
    ).model_dump(mode="json")
    try:
        agg.version = await event_store.append_event(
            session, agg.id, AGGREGATE_TYPE, "PaymentFailed", event_data, agg.version
        )
        await session.execute(
            text("""
                UPDATE orders_read_model
                SET payment_status = 'failed', updated_at = :now
                WHERE id = :id
            """),
            {"id": str(agg.id), "now": now.isoformat()},
        )
        await session.commit()
    except ConflictError:
        await session.rollback()
        return await load_order(session, order_id)

    agg.apply_event("PaymentFailed", event_data)
    await publish(redis, "PaymentFailed", event_data)
    logger.warning("Payment failed for order %s: %s", agg.order_number, reason)
    return agg
