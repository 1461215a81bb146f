"""
Commerce Service — クエリハンドラ (CQRS の Read 側)

読み取りはリードモデルから行う。
リードモデルは Write 側のコマンドが同じトランザクションで更新する非正規化データ。
"""

import hashlib
import json
import secrets
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ForbiddenError, NotFoundError


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def check_access(
    owner_id: str | None,
    requester_id: str | None,
    is_admin: bool,
    token_hash: str | None = None,
    order_token: str | None = None,
) -> None:
    """
    所有者か管理者だけが注文を扱える。

    ゲスト注文 (所有者なし) は、作成時に発行したアクセストークンを
    提示した場合のみ扱える。
    """
    if is_admin:
        return
    if owner_id is None:
        if token_hash and order_token and secrets.compare_digest(token_hash, hash_token(order_token)):
            return
        raise ForbiddenError("Not authorized to access this order")
    if owner_id != requester_id:
        raise ForbiddenError("Not authorized to access this order")


async def authorize(
    session: AsyncSession,
    order_id: UUID,
    requester_id: str | None,
    is_admin: bool,
    order_token: str | None = None,
) -> None:
    """リードモデル上の所有者で check_access する。注文が無ければ NotFoundError。"""
    result = await session.execute(
        text("SELECT user_id, access_token_hash FROM orders_read_model WHERE id = :id"),
        {"id": str(order_id)},
    )
    row = result.fetchone()
    if row is None:
        raise NotFoundError("Order not found")
    check_access(row.user_id, requester_id, is_admin, row.access_token_hash, order_token)


def _to_dict(row) -> dict:
    return {
        "id": str(row.id),
        "order_number": row.order_number,
        "user_id": row.user_id,
        "status": row.status,
        "items": json.loads(row.items),
        "customer": json.loads(row.customer),
        "shipping_address": json.loads(row.shipping_address) if row.shipping_address else None,
        "payment": {
            "method": row.payment_method,
            "status": row.payment_status,
            "amount": float(row.payment_amount),
            "currency": row.payment_currency,
            "transaction_id": row.payment_intent_id,
        },
        "totals": {
            "subtotal": float(row.subtotal),
            "shipping": float(row.shipping),
            "tax": float(row.tax),
            "discount": float(row.discount),
            "total": float(row.total),
            "token_total": float(row.token_total),
        },
        "discount_code": row.discount_code,
        "tracking_number": row.tracking_number,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def get_order(session: AsyncSession, order_id: UUID) -> dict | None:
    """リードモデルから注文を取得する。"""
    result = await session.execute(
        text("SELECT * FROM orders_read_model WHERE id = :id"),
        {"id": str(order_id)},
    )
    row = result.fetchone()
    return _to_dict(row) if row else None


async def list_orders(
    session: AsyncSession,
    user_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict]:
    """注文一覧。user_id を指定するとそのユーザーの注文だけ。"""
    clauses, params = [], {"limit": limit, "offset": offset}
    if user_id is not None:
        clauses.append("user_id = :user_id")
        params["user_id"] = user_id
    if status is not None:
        clauses.append("status = :status")
        params["status"] = status
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    result = await session.execute(
        text(f"""
            SELECT * FROM orders_read_model
            {where}
            ORDER BY created_at DESC
            LIMIT :limit OFFSET :offset
        """),
        params,
    )
    return [_to_dict(row) for row in result.fetchall()]


async def find_order_id_by_intent(session: AsyncSession, intent_id: str) -> UUID | None:
    """ゲートウェイのインテント ID から注文を引く。"""
    result = await session.execute(
        text("SELECT id FROM orders_read_model WHERE payment_intent_id = :intent_id"),
        {"intent_id": intent_id},
    )
    order_id = result.scalar_one_or_none()
    return UUID(order_id) if order_id else None
