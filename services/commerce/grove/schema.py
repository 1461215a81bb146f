"""
Commerce Service — スキーマ定義

開発・テストでは SQLite、本番では PostgreSQL を使う。
どちらでも動く DDL だけを使い、タイムスタンプは ISO-8601 (UTC) 文字列で保存する。
文字列のまま大小比較しても時系列順になる。

共有される可変状態は 3 つ:
  - land_plots.occupied_slots / trees.adopter_count  (里親枠)
  - discounts.current_usage                          (割引コードの使用回数)
  - token_balances.balance                           (トークン残高)
いずれも条件付き UPDATE (compare-and-swap) でのみ変更する。
"""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

STATEMENTS = [
    # ── Event Store ──
    """
    CREATE TABLE IF NOT EXISTS event_store (
        aggregate_id   TEXT NOT NULL,
        aggregate_type TEXT NOT NULL,
        event_type     TEXT NOT NULL,
        event_data     TEXT NOT NULL,
        version        INTEGER NOT NULL,
        created_at     TEXT NOT NULL,
        PRIMARY KEY (aggregate_id, version)
    )
    """,
    # ── Read Model ──
    """
    CREATE TABLE IF NOT EXISTS orders_read_model (
        id                TEXT PRIMARY KEY,
        order_number      TEXT NOT NULL UNIQUE,
        user_id           TEXT,
        status            TEXT NOT NULL,
        payment_method    TEXT NOT NULL,
        payment_status    TEXT NOT NULL,
        payment_amount    FLOAT NOT NULL,
        payment_currency  TEXT NOT NULL,
        payment_intent_id TEXT,
        subtotal          FLOAT NOT NULL,
        shipping          FLOAT NOT NULL,
        tax               FLOAT NOT NULL,
        discount          FLOAT NOT NULL,
        total             FLOAT NOT NULL,
        token_total       FLOAT NOT NULL,
        discount_code     TEXT,
        access_token_hash TEXT,
        items             TEXT NOT NULL,
        customer          TEXT NOT NULL,
        shipping_address  TEXT,
        tracking_number   TEXT,
        created_at        TEXT NOT NULL,
        updated_at        TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_user ON orders_read_model (user_id)",
    "CREATE INDEX IF NOT EXISTS ix_orders_intent ON orders_read_model (payment_intent_id)",
    # ── Catalog (管理画面側が所有。ここでは参照と枠の確保のみ) ──
    """
    CREATE TABLE IF NOT EXISTS products (
        id          TEXT PRIMARY KEY,
        name        TEXT NOT NULL,
        price       FLOAT,
        token_price FLOAT,
        active      BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_variants (
        id          TEXT PRIMARY KEY,
        product_id  TEXT NOT NULL,
        name        TEXT NOT NULL,
        price       FLOAT,
        token_price FLOAT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trees (
        id             TEXT PRIMARY KEY,
        name           TEXT NOT NULL,
        species        TEXT,
        location       TEXT,
        price          FLOAT NOT NULL,
        token_price    FLOAT,
        max_adopters   INTEGER NOT NULL DEFAULT 1,
        adopter_count  INTEGER NOT NULL DEFAULT 0,
        status         TEXT NOT NULL DEFAULT 'Available'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tree_adopters (
        tree_id    TEXT NOT NULL,
        user_id    TEXT NOT NULL,
        order_id   TEXT,
        adopted_at TEXT NOT NULL,
        PRIMARY KEY (tree_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS land_plots (
        id             TEXT PRIMARY KEY,
        name           TEXT NOT NULL,
        location       TEXT,
        price          FLOAT NOT NULL,
        token_price    FLOAT,
        total_slots    INTEGER NOT NULL,
        occupied_slots INTEGER NOT NULL DEFAULT 0,
        status         TEXT NOT NULL DEFAULT 'Available'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS plot_adoptions (
        id          TEXT PRIMARY KEY,
        plot_id     TEXT NOT NULL,
        user_id     TEXT NOT NULL,
        order_id    TEXT,
        slot_number INTEGER NOT NULL,
        adopted_at  TEXT NOT NULL,
        expires_at  TEXT NOT NULL,
        status      TEXT NOT NULL
    )
    """,
    # 同じ区画で Active な枠番号は一意
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_plot_active_slot
        ON plot_adoptions (plot_id, slot_number) WHERE status = 'Active'
    """,
    "CREATE INDEX IF NOT EXISTS ix_plot_adoptions_user ON plot_adoptions (user_id)",
    # ── Discount Ledger ──
    """
    CREATE TABLE IF NOT EXISTS discounts (
        code                TEXT PRIMARY KEY,
        percentage          FLOAT NOT NULL,
        user_id             TEXT,
        max_usage           INTEGER NOT NULL DEFAULT 1,
        current_usage       INTEGER NOT NULL DEFAULT 0,
        min_order_amount    FLOAT NOT NULL DEFAULT 0,
        max_discount_amount FLOAT,
        expires_at          TEXT NOT NULL,
        status              TEXT NOT NULL DEFAULT 'active',
        description         TEXT,
        token_amount        INTEGER,
        used_by             TEXT,
        used_at             TEXT,
        order_id            TEXT,
        created_by          TEXT,
        created_at          TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS discount_redemptions (
        code     TEXT NOT NULL,
        order_id TEXT NOT NULL,
        user_id  TEXT,
        used_at  TEXT NOT NULL,
        PRIMARY KEY (code, order_id)
    )
    """,
    # ── Loyalty Token Ledger ──
    """
    CREATE TABLE IF NOT EXISTS token_balances (
        user_id    TEXT PRIMARY KEY,
        balance    FLOAT NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_transactions (
        id          TEXT PRIMARY KEY,
        user_id     TEXT NOT NULL,
        type        TEXT NOT NULL,
        amount      FLOAT NOT NULL,
        description TEXT,
        order_id    TEXT,
        created_at  TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_token_tx_user ON token_transactions (user_id)",
    """
    CREATE TABLE IF NOT EXISTS user_wallets (
        user_id        TEXT PRIMARY KEY,
        wallet_address TEXT NOT NULL
    )
    """,
    # ── Outbox / Webhook ──
    """
    CREATE TABLE IF NOT EXISTS notification_outbox (
        id          TEXT PRIMARY KEY,
        dedupe_key  TEXT NOT NULL UNIQUE,
        order_id    TEXT,
        kind        TEXT NOT NULL,
        recipient   TEXT NOT NULL,
        payload     TEXT NOT NULL,
        status      TEXT NOT NULL DEFAULT 'pending',
        attempts    INTEGER NOT NULL DEFAULT 0,
        last_error  TEXT,
        created_at  TEXT NOT NULL,
        sent_at     TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        event_id    TEXT PRIMARY KEY,
        event_type  TEXT NOT NULL,
        received_at TEXT NOT NULL
    )
    """,
]


async def create_schema(engine: AsyncEngine) -> None:
    """全テーブルを作成する（既に存在するものはそのまま）。"""
    async with engine.begin() as conn:
        for statement in STATEMENTS:
            await conn.execute(text(statement))
    logger.info("Schema ready (%d statements)", len(STATEMENTS))
