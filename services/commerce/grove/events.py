"""
Commerce Service — イベント定義

注文集約で発生した事実をイベントとして定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
event_store には model_dump(mode="json") した dict を保存する。
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class OrderEvent(BaseModel):
    order_id: UUID
    timestamp: datetime
    actor: str | None = None
    note: str | None = None


class OrderCreated(OrderEvent):
    """注文が作成された（常に pending）"""
    order_number: str
    user_id: str | None
    items: list[dict]
    customer: dict
    shipping_address: dict | None = None
    payment_method: str
    payment_amount: float
    currency: str
    subtotal: float
    shipping: float
    tax: float
    discount: float
    total: float
    token_total: float
    discount_code: str | None = None
    access_token_hash: str | None = None


class PaymentIntentAttached(OrderEvent):
    """決済インテントが注文に紐付けられた"""
    intent_id: str
    amount: float
    currency: str


class PaymentFailed(OrderEvent):
    """決済が失敗した（注文は pending のまま再試行できる）"""
    intent_id: str | None = None
    reason: str = ""


class OrderConfirmed(OrderEvent):
    """支払いが完了し注文が確定した"""
    intent_id: str | None = None


class OrderShipped(OrderEvent):
    tracking_number: str | None = None


class OrderDelivered(OrderEvent):
    pass


class OrderCancelled(OrderEvent):
    reason: str = ""


class OrderRefunded(OrderEvent):
    reason: str = ""
    refund_id: str | None = None
