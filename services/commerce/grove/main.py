"""
Commerce Service — FastAPI エントリーポイント

注文・決済・割引コード・トークン・里親枠をまとめて扱うサービス。
CQRS パターンに従い、状態を変える操作は commands / payments、
読み取りは queries (リードモデル) から行う。

認証は外部の認証ゲートウェイが担当し、検証済みの利用者を
X-User-Id / X-User-Role ヘッダーで渡してくる。
ゲスト注文は作成時に返すアクセストークンを X-Order-Token ヘッダーで提示する。

┌────────┐  HTTP   ┌──────────────────┐  intent / webhook  ┌──────────────┐
│ Client │ ──────▶ │ Commerce Service │ ◀────────────────▶ │ Payment GW   │
└────────┘         └───────┬──────────┘                    └──────────────┘
                           │ outbox
                   ┌───────▼──────────┐   HTTP   ┌───────────────┐
                   │ Dispatcher (BG)  │ ───────▶ │ Email Service │
                   └──────────────────┘          └───────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Literal
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import adoption, catalog, commands, config, discounts, event_store, payments, queries, tokens
from .aggregate import CONFIRMED
from .errors import ForbiddenError, GroveError, PaymentGatewayError
from .notifications import EmailClient, run_dispatcher
from .pricing import to_money
from .schema import create_schema

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(config.DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にスキーマを用意し、通知ディスパッチャをバックグラウンドで開始する。"""
    global redis_pool
    await create_schema(engine)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    shutdown_event = asyncio.Event()
    dispatcher_task = asyncio.create_task(
        run_dispatcher(async_session, EmailClient(), shutdown_event)
    )
    yield
    shutdown_event.set()
    dispatcher_task.cancel()
    try:
        await dispatcher_task
    except asyncio.CancelledError:
        pass
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Commerce Service", lifespan=lifespan)


@app.exception_handler(GroveError)
async def handle_domain_error(request: Request, exc: GroveError) -> JSONResponse:
    body = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, PaymentGatewayError):
        body["gateway_code"] = exc.gateway_code
        body["gateway_type"] = exc.gateway_type
    if exc.status_code >= 500:
        logger.error(
            "%s %s failed: %s (code=%s, gateway_code=%s, gateway_type=%s)",
            request.method, request.url.path, exc.message, exc.code,
            body.get("gateway_code"), body.get("gateway_type"),
        )
    return JSONResponse(status_code=exc.status_code, content=body)


# ── 利用者 ──────────────────────────────────────

@dataclass(frozen=True)
class Identity:
    user_id: str | None
    role: str
    order_token: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def current_identity(
    x_user_id: str | None = Header(default=None),
    x_user_role: str = Header(default="user"),
    x_order_token: str | None = Header(default=None),
) -> Identity:
    return Identity(user_id=x_user_id or None, role=x_user_role, order_token=x_order_token or None)


def _require_user(identity: Identity) -> str:
    if not identity.user_id:
        raise ForbiddenError("Sign in to continue")
    return identity.user_id


def _require_admin(identity: Identity) -> None:
    if not identity.is_admin:
        raise ForbiddenError("Administrator access required")


# ── Request / Response Models ────────────────────

class CustomerInfo(BaseModel):
    name: str
    email: EmailStr
    phone: str | None = None


class ShippingAddress(BaseModel):
    line1: str
    line2: str | None = None
    city: str
    state: str | None = None
    postal_code: str
    country: str


class CreateOrderRequest(BaseModel):
    items: list[catalog.RequestedItem] = Field(min_length=1)
    customer: CustomerInfo
    shipping_address: ShippingAddress | None = None
    payment_method: Literal["card", "tokens"] = "card"
    discount_code: str | None = None
    currency: str | None = None


class UpdateStatusRequest(BaseModel):
    status: Literal["confirmed", "shipped", "delivered", "cancelled", "refunded"]
    note: str | None = None
    tracking_number: str | None = None
    reason: str = ""


class CreateIntentRequest(BaseModel):
    order_id: UUID
    currency: str | None = None


class ConfirmPaymentRequest(BaseModel):
    intent_id: str


class CancelPaymentRequest(BaseModel):
    order_id: UUID


class RefundRequest(BaseModel):
    order_id: UUID
    amount: float | None = None
    reason: str = ""


class CreditTokensRequest(BaseModel):
    amount: float = Field(gt=0)
    description: str = "Reward"
    order_id: str | None = None


class CreateDiscountRequest(BaseModel):
    percentage: float = Field(gt=0, le=100)
    code: str | None = None
    user_id: str | None = None
    max_usage: int = Field(default=1, ge=1)
    min_order_amount: float = Field(default=0, ge=0)
    max_discount_amount: float | None = Field(default=None, gt=0)
    expires_at: datetime | None = None
    valid_days: int | None = Field(default=None, ge=1)
    description: str | None = None


class UpdateDiscountRequest(BaseModel):
    percentage: float | None = Field(default=None, gt=0, le=100)
    max_usage: int | None = Field(default=None, ge=1)
    min_order_amount: float | None = Field(default=None, ge=0)
    max_discount_amount: float | None = Field(default=None, gt=0)
    expires_at: datetime | None = None
    description: str | None = None
    status: Literal["active", "cancelled"] | None = None


class ValidateDiscountRequest(BaseModel):
    code: str
    order_amount: float = Field(ge=0)


class RedeemTokensRequest(BaseModel):
    token_amount: int = Field(gt=0)


# ── 注文 ────────────────────────────────────────

@app.post("/orders", status_code=201)
async def create_order(req: CreateOrderRequest, identity: Identity = Depends(current_identity)):
    """注文作成。価格はサーバー側で計算し、割引コードは検証のみ行う。"""
    async with async_session() as session:
        agg = await commands.create_order(
            session, redis_pool,
            user_id=identity.user_id,
            items=req.items,
            customer=req.customer.model_dump(mode="json"),
            shipping_address=req.shipping_address.model_dump() if req.shipping_address else None,
            payment_method=req.payment_method,
            discount_code=req.discount_code,
            currency=req.currency,
        )
        order = await queries.get_order(session, agg.id)
        if agg.access_token:
            order["access_token"] = agg.access_token
        return order


@app.get("/orders")
async def list_orders(
    status: str | None = None,
    user_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
    identity: Identity = Depends(current_identity),
):
    """管理者は全注文 (user_id で絞り込み可)、利用者は自分の注文のみ。"""
    if not identity.is_admin:
        user_id = _require_user(identity)
    async with async_session() as session:
        return await queries.list_orders(session, user_id=user_id, status=status, limit=limit, offset=offset)


async def _visible_order(session: AsyncSession, order_id: UUID, identity: Identity) -> dict:
    await queries.authorize(session, order_id, identity.user_id, identity.is_admin, identity.order_token)
    return await queries.get_order(session, order_id)


@app.get("/orders/{order_id}")
async def get_order(order_id: UUID, identity: Identity = Depends(current_identity)):
    async with async_session() as session:
        return await _visible_order(session, order_id, identity)


@app.get("/orders/{order_id}/history")
async def get_order_history(order_id: UUID, identity: Identity = Depends(current_identity)):
    """注文のイベント列 (監査用)"""
    async with async_session() as session:
        await _visible_order(session, order_id, identity)
        return await event_store.load_events(session, order_id)


@app.put("/orders/{order_id}/status")
async def update_order_status(
    order_id: UUID,
    req: UpdateStatusRequest,
    identity: Identity = Depends(current_identity),
):
    """
    管理者による状態変更。confirmed にした場合は支払い完了扱いとなり、
    決済経由の確定と同じ副作用 (割引消費・枠確保・通知) が走る。
    """
    _require_admin(identity)
    async with async_session() as session:
        await commands.transition_order(
            session, redis_pool, order_id, req.status,
            actor=identity.user_id or "admin",
            note=req.note,
            payment_completed=req.status == CONFIRMED,
            tracking_number=req.tracking_number,
            reason=req.reason,
        )
        return await queries.get_order(session, order_id)


# ── 決済 ────────────────────────────────────────

@app.post("/payments/create-intent")
async def create_payment_intent(req: CreateIntentRequest, identity: Identity = Depends(current_identity)):
    async with async_session() as session:
        return await payments.ensure_payment_intent(
            session, redis_pool, req.order_id,
            requester_id=identity.user_id, is_admin=identity.is_admin, order_token=identity.order_token,
            currency=req.currency,
        )


@app.post("/payments/confirm")
async def confirm_payment(req: ConfirmPaymentRequest, identity: Identity = Depends(current_identity)):
    async with async_session() as session:
        return await payments.confirm_payment(
            session, redis_pool, req.intent_id,
            requester_id=identity.user_id, is_admin=identity.is_admin, order_token=identity.order_token,
        )


@app.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: str = Header(default="", alias="Stripe-Signature"),
):
    """署名検証のため、JSON として解釈する前の生のボディを使う。"""
    payload = await request.body()
    async with async_session() as session:
        return await payments.handle_webhook(session, redis_pool, payload, stripe_signature)


@app.post("/payments/cancel")
async def cancel_payment(req: CancelPaymentRequest, identity: Identity = Depends(current_identity)):
    async with async_session() as session:
        return await payments.cancel_payment(
            session, redis_pool, req.order_id,
            requester_id=identity.user_id, is_admin=identity.is_admin, order_token=identity.order_token,
        )


@app.post("/payments/refund")
async def refund_payment(req: RefundRequest, identity: Identity = Depends(current_identity)):
    _require_admin(identity)
    async with async_session() as session:
        return await payments.refund_payment(
            session, redis_pool, req.order_id,
            actor=identity.user_id or "admin", amount=req.amount, reason=req.reason,
        )


@app.get("/payments/status/{intent_id}")
async def payment_status(intent_id: str, identity: Identity = Depends(current_identity)):
    async with async_session() as session:
        return await payments.get_intent_status(
            session, intent_id,
            requester_id=identity.user_id, is_admin=identity.is_admin, order_token=identity.order_token,
        )


# ── トークン ────────────────────────────────────

@app.get("/tokens/balance")
async def token_balance(identity: Identity = Depends(current_identity)):
    user_id = _require_user(identity)
    async with async_session() as session:
        balance = await tokens.get_balance(session, user_id)
        await session.commit()
        return {"user_id": user_id, "balance": float(balance)}


@app.get("/tokens/transactions")
async def token_transactions(limit: int = 50, identity: Identity = Depends(current_identity)):
    user_id = _require_user(identity)
    async with async_session() as session:
        return await tokens.list_transactions(session, user_id, limit=limit)


@app.post("/tokens/{user_id}/credit")
async def credit_tokens(user_id: str, req: CreditTokensRequest, identity: Identity = Depends(current_identity)):
    _require_admin(identity)
    async with async_session() as session:
        balance = await tokens.credit(
            session, user_id, req.amount, req.description, order_id=req.order_id, tx_type="reward",
        )
        await session.commit()
        return {"user_id": user_id, "balance": float(balance)}


# ── 割引コード ──────────────────────────────────

@app.post("/discounts", status_code=201)
async def create_discount(req: CreateDiscountRequest, identity: Identity = Depends(current_identity)):
    _require_admin(identity)
    async with async_session() as session:
        discount = await discounts.create_discount(
            session,
            percentage=req.percentage,
            code=req.code,
            user_id=req.user_id,
            max_usage=req.max_usage,
            min_order_amount=req.min_order_amount,
            max_discount_amount=req.max_discount_amount,
            expires_at=req.expires_at,
            valid_days=req.valid_days,
            description=req.description,
            created_by=identity.user_id,
        )
        await session.commit()
        return discount


@app.post("/discounts/validate")
async def validate_discount(req: ValidateDiscountRequest, identity: Identity = Depends(current_identity)):
    """割引額の試算 (コードは消費しない)"""
    async with async_session() as session:
        terms, amount = await discounts.validate(session, req.code, req.order_amount, identity.user_id)
        return {
            "code": terms.code,
            "percentage": float(terms.percentage),
            "discount_amount": float(amount),
            "final_amount": float(to_money(req.order_amount) - amount),
        }


@app.post("/discounts/redeem", status_code=201)
async def redeem_tokens(req: RedeemTokensRequest, identity: Identity = Depends(current_identity)):
    user_id = _require_user(identity)
    async with async_session() as session:
        discount = await discounts.redeem_tokens(session, user_id, req.token_amount)
        await session.commit()
        return discount


@app.get("/discounts/mine")
async def my_discounts(identity: Identity = Depends(current_identity)):
    user_id = _require_user(identity)
    async with async_session() as session:
        return await discounts.list_user_discounts(session, user_id)


@app.get("/discounts")
async def list_discounts(
    status: str | None = None,
    search: str | None = None,
    limit: int = 20,
    offset: int = 0,
    identity: Identity = Depends(current_identity),
):
    """全コードの一覧と状態別の件数 (管理者)"""
    _require_admin(identity)
    async with async_session() as session:
        return await discounts.list_discounts(session, status=status, search=search, limit=limit, offset=offset)


@app.patch("/discounts/{code}")
async def update_discount(code: str, req: UpdateDiscountRequest, identity: Identity = Depends(current_identity)):
    _require_admin(identity)
    async with async_session() as session:
        discount = await discounts.update_discount(session, code, req.model_dump(exclude_unset=True))
        await session.commit()
        return discount


@app.delete("/discounts/{code}")
async def cancel_discount(code: str, identity: Identity = Depends(current_identity)):
    """コードを取り消す。行は削除せず status を cancelled にする。"""
    _require_admin(identity)
    async with async_session() as session:
        discount = await discounts.cancel_discount(session, code)
        await session.commit()
        return discount

# ── 里親 ────────────────────────────────────────

@app.get("/adoptions/mine")
async def my_adoptions(identity: Identity = Depends(current_identity)):
    user_id = _require_user(identity)
    async with async_session() as session:
        return await adoption.list_user_adoptions(session, user_id)


@app.post("/adoptions/expire")
async def expire_adoptions(identity: Identity = Depends(current_identity)):
    """期限切れの区画里親を解放する (管理者・定期ジョブ用)"""
    _require_admin(identity)
    async with async_session() as session:
        expired = await adoption.expire_lapsed(session)
        await session.commit()
        return {"expired": expired}


# ── Event Store (監査・デバッグ用) ────────────────

@app.get("/events/{aggregate_id}")
async def get_aggregate_events(aggregate_id: UUID, identity: Identity = Depends(current_identity)):
    """指定集約のイベントを返す"""
    _require_admin(identity)
    async with async_session() as session:
        return await event_store.load_events(session, aggregate_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "commerce-service"}
