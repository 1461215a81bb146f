"""
Commerce Service — ロイヤルティトークン台帳

ユーザーごとの残高と、追記専用の取引履歴を持つ。
残高は常に取引の合計と一致し、負にならない。

引き落としは `balance >= :amount` 条件付きの UPDATE 1 文で行うため、
同じユーザーへの同時引き落としでも残高が負になることはない。
ここの関数は commit しない。呼び出し側のコマンドが作業単位を所有する。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InsufficientBalanceError, ValidationError
from .pricing import to_money

logger = logging.getLogger(__name__)

TRANSACTION_TYPES = ("reward", "redemption", "donation", "transfer", "adoption", "purchase")


async def _ensure_account(session: AsyncSession, user_id: str, now: str) -> None:
    await session.execute(
        text("""
            INSERT INTO token_balances (user_id, balance, updated_at)
            VALUES (:user_id, 0, :now)
            ON CONFLICT (user_id) DO NOTHING
        """),
        {"user_id": user_id, "now": now},
    )


async def _read_balance(session: AsyncSession, user_id: str) -> Decimal:
    result = await session.execute(
        text("SELECT balance FROM token_balances WHERE user_id = :user_id"),
        {"user_id": user_id},
    )
    value = result.scalar_one_or_none()
    return to_money(value or 0)


async def _record(
    session: AsyncSession,
    user_id: str,
    tx_type: str,
    amount: Decimal,
    description: str,
    order_id: str | None,
    now: str,
) -> None:
    await session.execute(
        text("""
            INSERT INTO token_transactions (id, user_id, type, amount, description, order_id, created_at)
            VALUES (:id, :user_id, :type, :amount, :description, :order_id, :now)
        """),
        {
            "id": str(uuid4()),
            "user_id": user_id,
            "type": tx_type,
            "amount": float(amount),
            "description": description,
            "order_id": order_id,
            "now": now,
        },
    )


def _validate(amount, tx_type: str) -> Decimal:
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Token amount must be positive")
    if tx_type not in TRANSACTION_TYPES:
        raise ValidationError(f"Unknown token transaction type: {tx_type}")
    return amount


async def get_balance(session: AsyncSession, user_id: str) -> Decimal:
    """残高を返す。口座が無ければ残高 0 で作成する。"""
    await _ensure_account(session, user_id, datetime.now(timezone.utc).isoformat())
    return await _read_balance(session, user_id)


async def debit(
    session: AsyncSession,
    user_id: str,
    amount,
    description: str,
    order_id: str | None = None,
    tx_type: str = "purchase",
) -> Decimal:
    """
    残高から amount を引き落とし、負の取引を記録する。

    残高不足なら何も変更せずに InsufficientBalanceError を送出する。
    戻り値は引き落とし後の残高。
    """
    amount = _validate(amount, tx_type)
    now = datetime.now(timezone.utc).isoformat()
    await _ensure_account(session, user_id, now)

    result = await session.execute(
        text("""
            UPDATE token_balances
            SET balance = balance - :amount, updated_at = :now
            WHERE user_id = :user_id AND balance >= :amount
        """),
        {"user_id": user_id, "amount": float(amount), "now": now},
    )
    if result.rowcount == 0:
        balance = await _read_balance(session, user_id)
        raise InsufficientBalanceError(
            f"Insufficient token balance: {balance} available, {amount} required"
        )

    await _record(session, user_id, tx_type, -amount, description, order_id, now)
    balance = await _read_balance(session, user_id)
    logger.info("Debited %s tokens from %s (balance %s)", amount, user_id, balance)
    return balance


async def credit(
    session: AsyncSession,
    user_id: str,
    amount,
    description: str,
    order_id: str | None = None,
    tx_type: str = "reward",
) -> Decimal:
    """残高に amount を加算し、正の取引を記録する。戻り値は加算後の残高。"""
    amount = _validate(amount, tx_type)
    now = datetime.now(timezone.utc).isoformat()
    await _ensure_account(session, user_id, now)

    await session.execute(
        text("""
            UPDATE token_balances
            SET balance = balance + :amount, updated_at = :now
            WHERE user_id = :user_id
        """),
        {"user_id": user_id, "amount": float(amount), "now": now},
    )
    await _record(session, user_id, tx_type, amount, description, order_id, now)
    balance = await _read_balance(session, user_id)
    logger.info("Credited %s tokens to %s (balance %s)", amount, user_id, balance)
    return balance


async def list_transactions(session: AsyncSession, user_id: str, limit: int = 50) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT id, type, amount, description, order_id, created_at
            FROM token_transactions
            WHERE user_id = :user_id
            ORDER BY created_at DESC
            LIMIT :limit
        """),
        {"user_id": user_id, "limit": limit},
    )
    return [
        {
            "id": row.id,
            "type": row.type,
            "amount": float(row.amount),
            "description": row.description,
            "order_id": row.order_id,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]


async def has_wallet(session: AsyncSession, user_id: str) -> bool:
    """トークン払いに必要なウォレットが紐付いているか。"""
    result = await session.execute(
        text("SELECT wallet_address FROM user_wallets WHERE user_id = :user_id"),
        {"user_id": user_id},
    )
    return bool(result.scalar_one_or_none())
