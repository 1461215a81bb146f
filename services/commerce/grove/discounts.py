"""
Commerce Service — 割引コード台帳

コードは大文字に正規化して保存・照合する。

validate: 有効性・所有者・最低注文額を確認し、割引額を計算する（状態は変えない）
consume : 使用回数を条件付き UPDATE で 1 増やす。上限に達したら status='used'。
          同じコードを同時に消費しようとしても勝者は 1 人だけ。
管理    : 一覧 (状態・検索語で絞り込み)、項目の更新、取消 (status='cancelled')。
          取消は論理削除で、使用履歴は残る。

消費は注文作成時ではなく決済確定時に行うため、
放置された未払い注文が 1 回限りのコードを消費することはない。
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import config, tokens
from .errors import (
    ConflictError,
    DiscountAlreadyUsedError,
    DiscountBelowMinimumError,
    DiscountExhaustedError,
    DiscountExpiredError,
    DiscountNotApplicableError,
    DiscountNotEntitledError,
    DiscountNotFoundError,
    NotFoundError,
    ValidationError,
)
from .pricing import DiscountTerms, calculate_discount, to_money

logger = logging.getLogger(__name__)

# 管理者が変更できる項目。使用履歴と所有者は変更不可
EDITABLE_FIELDS = (
    "percentage",
    "max_usage",
    "min_order_amount",
    "max_discount_amount",
    "expires_at",
    "description",
    "status",
)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def generate_code(prefix: str = "GRV") -> str:
    return f"{prefix}{secrets.token_hex(4).upper()}"


def _terms(row) -> DiscountTerms:
    return DiscountTerms(
        code=row.code,
        percentage=Decimal(str(row.percentage)),
        max_discount_amount=to_money(row.max_discount_amount) if row.max_discount_amount is not None else None,
    )


def _to_dict(row) -> dict:
    return {
        "code": row.code,
        "percentage": float(row.percentage),
        "user_id": row.user_id,
        "max_usage": row.max_usage,
        "current_usage": row.current_usage,
        "min_order_amount": float(row.min_order_amount),
        "max_discount_amount": float(row.max_discount_amount) if row.max_discount_amount is not None else None,
        "expires_at": row.expires_at,
        "status": row.status,
        "description": row.description,
        "used_at": row.used_at,
        "order_id": row.order_id,
    }


async def _load(session: AsyncSession, code: str):
    result = await session.execute(
        text("SELECT * FROM discounts WHERE code = :code"),
        {"code": code},
    )
    return result.fetchone()


def _check_usable(row, now: str) -> None:
    """status == active かつ使用回数 < 上限 かつ 期限内 であること。"""
    if row.expires_at <= now or row.status == "expired":
        raise DiscountExpiredError()
    if row.status != "active" or row.current_usage >= row.max_usage:
        raise DiscountExhaustedError()


async def validate(
    session: AsyncSession,
    code: str,
    order_amount,
    user_id: str | None,
) -> tuple[DiscountTerms, Decimal]:
    """
    コードを検証して (割引条件, 割引額) を返す。

    order_amount は 小計 + 送料。ユーザーに紐付いたコードはゲストや他人には使えない。
    """
    code = normalize_code(code)
    if not code:
        raise ValidationError("Discount code is required")
    row = await _load(session, code)
    if row is None:
        raise DiscountNotFoundError()

    _check_usable(row, datetime.now(timezone.utc).isoformat())

    if row.user_id is not None and row.user_id != user_id:
        raise DiscountNotEntitledError()

    amount = to_money(order_amount)
    minimum = to_money(row.min_order_amount)
    if amount < minimum:
        raise DiscountBelowMinimumError(
            f"Minimum order amount of ${minimum:.2f} required for this discount"
        )

    terms = _terms(row)
    discount = calculate_discount(amount, terms)
    if discount <= 0:
        raise DiscountNotApplicableError()
    return terms, discount


async def consume(
    session: AsyncSession,
    code: str,
    user_id: str | None,
    order_id: str,
) -> bool:
    """
    コードを 1 回分消費し、どの注文が使ったかを記録する。

    同じ注文での再消費は何もせず False を返す。
    上限到達・期限切れ・競合負けは DiscountAlreadyUsedError などを送出する。
    commit はしない。
    """
    code = normalize_code(code)
    now = datetime.now(timezone.utc).isoformat()

    result = await session.execute(
        text("SELECT 1 FROM discount_redemptions WHERE code = :code AND order_id = :order_id"),
        {"code": code, "order_id": order_id},
    )
    if result.first() is not None:
        return False

    # compare-and-swap: 有効な場合に限り使用回数を進める
    result = await session.execute(
        text("""
            UPDATE discounts
            SET current_usage = current_usage + 1,
                status = CASE WHEN current_usage + 1 >= max_usage THEN 'used' ELSE status END,
                used_by = :user_id,
                used_at = :now,
                order_id = :order_id
            WHERE code = :code
              AND status = 'active'
              AND current_usage < max_usage
              AND expires_at > :now
              AND (user_id IS NULL OR user_id = :user_id)
        """),
        {"code": code, "user_id": user_id, "order_id": order_id, "now": now},
    )
    if result.rowcount == 0:
        row = await _load(session, code)
        if row is None:
            raise DiscountNotFoundError()
        if row.user_id is not None and row.user_id != user_id:
            raise DiscountNotEntitledError()
        if row.expires_at <= now:
            raise DiscountExpiredError()
        if row.status == "cancelled":
            raise DiscountExhaustedError()
        raise DiscountAlreadyUsedError()

    await session.execute(
        text("""
            INSERT INTO discount_redemptions (code, order_id, user_id, used_at)
            VALUES (:code, :order_id, :user_id, :now)
        """),
        {"code": code, "order_id": order_id, "user_id": user_id, "now": now},
    )
    logger.info("Discount %s consumed by order %s", code, order_id)
    return True


async def create_discount(
    session: AsyncSession,
    *,
    percentage,
    code: str | None = None,
    user_id: str | None = None,
    max_usage: int = 1,
    min_order_amount=0,
    max_discount_amount=None,
    expires_at: datetime | None = None,
    valid_days: int | None = None,
    description: str | None = None,
    token_amount: int | None = None,
    created_by: str | None = None,
) -> dict:
    """割引コードを作成する（管理者、またはトークン交換）。commit はしない。"""
    percentage = Decimal(str(percentage))
    if not Decimal(0) < percentage <= Decimal(100):
        raise ValidationError("Discount percentage must be between 0 and 100")
    if max_usage < 1:
        raise ValidationError("max_usage must be at least 1")

    now = datetime.now(timezone.utc)
    if expires_at is None:
        expires_at = now + timedelta(days=valid_days or config.REDEEMED_DISCOUNT_VALID_DAYS)
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at <= now:
        raise ValidationError("Discount expiry must be in the future")

    code = normalize_code(code) if code else generate_code()
    if await _load(session, code) is not None:
        raise ConflictError(f"Discount code {code} already exists")

    await session.execute(
        text("""
            INSERT INTO discounts
                (code, percentage, user_id, max_usage, current_usage, min_order_amount,
                 max_discount_amount, expires_at, status, description, token_amount,
                 created_by, created_at)
            VALUES
                (:code, :percentage, :user_id, :max_usage, 0, :min_order_amount,
                 :max_discount_amount, :expires_at, 'active', :description, :token_amount,
                 :created_by, :now)
        """),
        {
            "code": code,
            "percentage": float(percentage),
            "user_id": user_id,
            "max_usage": max_usage,
            "min_order_amount": float(to_money(min_order_amount)),
            "max_discount_amount": float(to_money(max_discount_amount)) if max_discount_amount is not None else None,
            "expires_at": expires_at.astimezone(timezone.utc).isoformat(),
            "description": description,
            "token_amount": token_amount,
            "created_by": created_by,
            "now": now.isoformat(),
        },
    )
    return _to_dict(await _load(session, code))


async def redeem_tokens(session: AsyncSession, user_id: str, token_amount: int) -> dict:
    """
    トークンを割引コードに交換する。

    100 トークンごとに 1%、最大 50%。発行されるコードは本人専用・1 回限り。
    引き落としとコード発行は同じ作業単位で行う。commit はしない。
    """
    if token_amount < config.MIN_REDEMPTION_TOKENS:
        raise ValidationError(
            f"At least {config.MIN_REDEMPTION_TOKENS} tokens are required for a discount"
        )
    percentage = min(token_amount // config.TOKENS_PER_DISCOUNT_PERCENT, config.MAX_REDEMPTION_PERCENT)
    # 上限を超えた分は引き落とさない
    spent = percentage * config.TOKENS_PER_DISCOUNT_PERCENT

    code = generate_code("TUT")
    await tokens.debit(
        session, user_id, spent,
        f"Redeemed for {percentage}% discount code {code}",
        tx_type="redemption",
    )
    return await create_discount(
        session,
        code=code,
        percentage=percentage,
        user_id=user_id,
        max_usage=1,
        valid_days=config.REDEEMED_DISCOUNT_VALID_DAYS,
        description=f"{percentage}% off for {spent} tokens",
        token_amount=spent,
        created_by=user_id,
    )


async def list_user_discounts(session: AsyncSession, user_id: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT * FROM discounts
            WHERE user_id = :user_id
            ORDER BY created_at DESC
        """),
        {"user_id": user_id},
    )
    return [_to_dict(row) for row in result.fetchall()]


async def get_discount(session: AsyncSession, code: str) -> dict | None:
    row = await _load(session, normalize_code(code))
    return _to_dict(row) if row else None


# ── 管理 ────────────────────────────────────────

async def list_discounts(
    session: AsyncSession,
    status: str | None = None,
    search: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> dict:
    """全コードの一覧 (新しい順)。件数と状態別の集計も返す。"""
    clauses, params = [], {}
    if status is not None:
        clauses.append("status = :status")
        params["status"] = status
    if search:
        clauses.append("(UPPER(code) LIKE :pattern OR UPPER(COALESCE(description, '')) LIKE :pattern)")
        params["pattern"] = f"%{search.strip().upper()}%"
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    result = await session.execute(
        text(f"""
            SELECT * FROM discounts
            {where}
            ORDER BY created_at DESC
            LIMIT :limit OFFSET :offset
        """),
        {**params, "limit": limit, "offset": offset},
    )
    rows = result.fetchall()

    result = await session.execute(text(f"SELECT COUNT(*) FROM discounts {where}"), params)
    total = result.scalar_one()

    result = await session.execute(
        text("SELECT status, COUNT(*) AS count FROM discounts GROUP BY status")
    )
    stats = {row.status: row.count for row in result.fetchall()}

    return {"discounts": [_to_dict(row) for row in rows], "total": total, "stats": stats}


async def update_discount(session: AsyncSession, code: str, changes: dict) -> dict:
    """
    コードの条件を変更する。commit はしない。

    status に指定できるのは active / cancelled のみ。active のコードは
    使用回数と上限から used / active を決め直す。上限を現在の使用回数より
    下げることはできない。
    """
    code = normalize_code(code)
    row = await _load(session, code)
    if row is None:
        raise NotFoundError(f"Discount code {code} not found")

    protected = sorted(set(changes) - set(EDITABLE_FIELDS))
    if protected:
        raise ValidationError(f"Cannot update discount fields: {', '.join(protected)}")
    # null で消せるのは上限額と説明だけ
    changes = {
        key: value for key, value in changes.items()
        if value is not None or key in ("max_discount_amount", "description")
    }

    values = {}
    if "percentage" in changes:
        percentage = Decimal(str(changes["percentage"]))
        if not Decimal(0) < percentage <= Decimal(100):
            raise ValidationError("Discount percentage must be between 0 and 100")
        values["percentage"] = float(percentage)
    if "max_usage" in changes:
        max_usage = int(changes["max_usage"])
        if max_usage < max(1, row.current_usage):
            raise ValidationError(
                f"max_usage must be at least {max(1, row.current_usage)} (current usage)"
            )
        values["max_usage"] = max_usage
    if "min_order_amount" in changes:
        minimum = to_money(changes["min_order_amount"])
        if minimum < 0:
            raise ValidationError("min_order_amount cannot be negative")
        values["min_order_amount"] = float(minimum)
    if "max_discount_amount" in changes:
        cap = changes["max_discount_amount"]
        if cap is not None and to_money(cap) <= 0:
            raise ValidationError("max_discount_amount must be positive")
        values["max_discount_amount"] = float(to_money(cap)) if cap is not None else None
    if "expires_at" in changes:
        expires_at = changes["expires_at"]
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        values["expires_at"] = expires_at.astimezone(timezone.utc).isoformat()
    if "description" in changes:
        values["description"] = changes["description"]

    status = changes.get("status", row.status)
    if "status" in changes and status not in ("active", "cancelled"):
        raise ValidationError("Discount status can only be set to active or cancelled")
    if status in ("active", "used"):
        status = "used" if row.current_usage >= values.get("max_usage", row.max_usage) else "active"
    values["status"] = status

    assignments = ", ".join(f"{column} = :{column}" for column in values)
    await session.execute(
        text(f"UPDATE discounts SET {assignments} WHERE code = :code"),
        {**values, "code": code},
    )
    logger.info("Discount %s updated: %s", code, ", ".join(sorted(values)))
    return _to_dict(await _load(session, code))


async def cancel_discount(session: AsyncSession, code: str) -> dict:
    """コードを取り消す (論理削除)。以後の検証・消費はすべて失敗する。commit はしない。"""
    code = normalize_code(code)
    result = await session.execute(
        text("UPDATE discounts SET status = 'cancelled' WHERE code = :code"),
        {"code": code},
    )
    if result.rowcount == 0:
        raise NotFoundError(f"Discount code {code} not found")
    logger.info("Discount %s cancelled", code)
    return _to_dict(await _load(session, code))
