"""
Commerce Service — 注文集約 (Order Aggregate)

Event Sourcing では集約の状態を直接保存しない。
イベントをリプレイして現在の状態を復元する。

apply_xxx メソッド: 各イベントを適用して状態を変更する
"""

from uuid import UUID

from .errors import InvalidTransitionError, ValidationError

PENDING = "pending"
CONFIRMED = "confirmed"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"
REFUNDED = "refunded"

_VALID_TRANSITIONS = {
    PENDING: {CONFIRMED, CANCELLED},
    CONFIRMED: {SHIPPED, CANCELLED, REFUNDED},
    SHIPPED: {DELIVERED},
    DELIVERED: set(),
    CANCELLED: set(),
    REFUNDED: set(),
}

# 遷移先の状態 → 追記するイベント
TRANSITION_EVENTS = {
    CONFIRMED: "OrderConfirmed",
    SHIPPED: "OrderShipped",
    DELIVERED: "OrderDelivered",
    CANCELLED: "OrderCancelled",
    REFUNDED: "OrderRefunded",
}

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"


class OrderAggregate:
    """
    注文集約 — イベントから現在の状態を再構築する。

    状態遷移:
        pending   → confirmed  (支払い完了)
        pending   → cancelled
        confirmed → shipped → delivered
        confirmed → cancelled | refunded
    delivered / cancelled / refunded は終端状態。
    """

    def __init__(self) -> None:
        self.id: UUID | None = None
        self.order_number: str = ""
        self.user_id: str | None = None
        self.items: list[dict] = []
        self.customer: dict = {}
        self.shipping_address: dict | None = None
        self.payment_method: str = ""
        self.payment_status: str = PAYMENT_PENDING
        self.payment_amount: float = 0
        self.currency: str = ""
        self.intent_id: str | None = None
        self.subtotal: float = 0
        self.shipping: float = 0
        self.tax: float = 0
        self.discount: float = 0
        self.total: float = 0
        self.token_total: float = 0
        self.discount_code: str | None = None
        self.access_token_hash: str | None = None
        # ゲスト注文の作成直後だけ平文を持つ。イベントに残るのはハッシュのみ
        self.access_token: str | None = None
        self.tracking_number: str | None = None
        self.status: str = "unknown"
        self.notes: list[dict] = []
        self.version: int = 0

    @property
    def exists(self) -> bool:
        return self.version > 0

    @property
    def adoption_items(self) -> list[dict]:
        return [item for item in self.items if item.get("type") == "adoption"]

    # ── 状態遷移のガード ─────────────────────────────

    def can_transition(self, target: str) -> bool:
        return target in _VALID_TRANSITIONS.get(self.status, set())

    def assert_can_transition(self, target: str) -> None:
        if target not in _VALID_TRANSITIONS:
            raise ValidationError(f"Unknown order status: {target}")
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f"Cannot change order {self.order_number} from {self.status} to {target}"
            )

    # ── イベント適用メソッド ──────────────────────────

    def _note(self, data: dict) -> None:
        if data.get("note"):
            self.notes.append({
                "note": data["note"],
                "actor": data.get("actor"),
                "timestamp": data.get("timestamp"),
            })

    def apply_order_created(self, data: dict) -> None:
        self.id = UUID(data["order_id"])
        self.order_number = data["order_number"]
        self.user_id = data.get("user_id")
        self.items = data["items"]
        self.customer = data["customer"]
        self.shipping_address = data.get("shipping_address")
        self.payment_method = data["payment_method"]
        self.payment_amount = data["payment_amount"]
        self.currency = data["currency"]
        self.subtotal = data["subtotal"]
        self.shipping = data["shipping"]
        self.tax = data["tax"]
        self.discount = data["discount"]
        self.total = data["total"]
        self.token_total = data["token_total"]
        self.discount_code = data.get("discount_code")
        self.access_token_hash = data.get("access_token_hash")
        self.status = PENDING
        self._note(data)

    def apply_payment_intent_attached(self, data: dict) -> None:
        self.intent_id = data["intent_id"]
        self.currency = data["currency"]
        self.payment_status = PAYMENT_PENDING

    def apply_payment_failed(self, data: dict) -> None:
        self.payment_status = PAYMENT_FAILED
        self._note(data)

    def apply_order_confirmed(self, data: dict) -> None:
        self.status = CONFIRMED
        self.payment_status = PAYMENT_COMPLETED
        if data.get("intent_id"):
            self.intent_id = data["intent_id"]
        self._note(data)

    def apply_order_shipped(self, data: dict) -> None:
        self.status = SHIPPED
        self.tracking_number = data.get("tracking_number") or self.tracking_number
        self._note(data)

    def apply_order_delivered(self, data: dict) -> None:
        self.status = DELIVERED
        self._note(data)

    def apply_order_cancelled(self, data: dict) -> None:
        self.status = CANCELLED
        self._note(data)

    def apply_order_refunded(self, data: dict) -> None:
        self.status = REFUNDED
        self.payment_status = PAYMENT_REFUNDED
        self._note(data)

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "OrderCreated": self.apply_order_created,
            "PaymentIntentAttached": self.apply_payment_intent_attached,
            "PaymentFailed": self.apply_payment_failed,
            "OrderConfirmed": self.apply_order_confirmed,
            "OrderShipped": self.apply_order_shipped,
            "OrderDelivered": self.apply_order_delivered,
            "OrderCancelled": self.apply_order_cancelled,
            "OrderRefunded": self.apply_order_refunded,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg
