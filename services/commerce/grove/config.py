"""
Commerce Service — 設定

すべての設定値は環境変数から読み込む。未設定の場合は開発用の既定値を使う。
金額は float の丸め誤差を避けるため Decimal で保持する。
"""

import os
from decimal import Decimal

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./grove.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

ORDER_EVENTS_CHANNEL = "order_events"

# ── 価格計算 ─────────────────────────────────────

TAX_RATE = Decimal(os.environ.get("TAX_RATE", "0.08"))
FREE_SHIPPING_THRESHOLD = Decimal(os.environ.get("FREE_SHIPPING_THRESHOLD", "25.00"))
SHIPPING_COST = Decimal(os.environ.get("SHIPPING_COST", "5.00"))
# ゲートウェイが受け付ける最小決済額
MINIMUM_PAYABLE = Decimal(os.environ.get("MINIMUM_PAYABLE", "0.50"))
DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")
TOKEN_CURRENCY = "TUT"

# ── 決済ゲートウェイ ──────────────────────────────

PAYMENT_GATEWAY = os.environ.get("PAYMENT_GATEWAY", "fake")
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))
MINIMUM_CHARGE_CENTS = 50

# ── メール (外部コラボレーター) ─────────────────────

EMAIL_SERVICE_URL = os.environ.get("EMAIL_SERVICE_URL", "http://localhost:8025")
EMAIL_TIMEOUT_SECONDS = float(os.environ.get("EMAIL_TIMEOUT_SECONDS", "10"))
OUTBOX_POLL_INTERVAL_SECONDS = float(os.environ.get("OUTBOX_POLL_INTERVAL_SECONDS", "2"))
OUTBOX_MAX_ATTEMPTS = int(os.environ.get("OUTBOX_MAX_ATTEMPTS", "5"))
OUTBOX_BATCH_SIZE = 20

# ── 里親 (adoption) ───────────────────────────────

ADOPTION_TERM_YEARS = 1
ADOPTION_MILESTONES = (5, 10, 25)

# ── トークン → 割引コード交換 ──────────────────────

TOKENS_PER_DISCOUNT_PERCENT = 100
MIN_REDEMPTION_TOKENS = 100
MAX_REDEMPTION_PERCENT = 50
REDEEMED_DISCOUNT_VALID_DAYS = 30
