"""
Commerce Service — ドメイン例外

すべての例外は GroveError を継承し、HTTP ステータスと機械可読なコードを持つ。
main.py の例外ハンドラがこれを JSON レスポンスに変換する。
"""


class GroveError(Exception):
    status_code = 500
    code = "internal_error"
    default_message = "Internal error"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(GroveError):
    """入力が不正"""
    status_code = 400
    code = "validation_error"
    default_message = "Invalid request"


class ForbiddenError(GroveError):
    status_code = 403
    code = "forbidden"
    default_message = "Not authorized"


class NotFoundError(GroveError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class ConflictError(GroveError):
    """同時更新の競合、または現在の状態と矛盾する操作"""
    status_code = 409
    code = "conflict"
    default_message = "Conflicting update"


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"
    default_message = "Invalid status transition"


class InsufficientBalanceError(GroveError):
    status_code = 400
    code = "insufficient_balance"
    default_message = "Insufficient token balance"


class BelowMinimumPayableError(GroveError):
    """割引適用後の合計がゲートウェイの最小決済額を下回る"""
    status_code = 400
    code = "below_minimum_payable"
    default_message = "Order total is below the minimum payable amount"


class SignatureVerificationError(GroveError):
    status_code = 400
    code = "invalid_signature"
    default_message = "Webhook signature verification failed"


class PaymentGatewayError(GroveError):
    """外部決済ゲートウェイの失敗。ゲートウェイのコード/種別をそのまま運ぶ。"""
    status_code = 502
    code = "payment_gateway_error"
    default_message = "Payment gateway error"

    def __init__(
        self,
        message: str = "",
        gateway_code: str | None = None,
        gateway_type: str | None = None,
    ) -> None:
        super().__init__(message)
        self.gateway_code = gateway_code
        self.gateway_type = gateway_type


# ── 割引コード ──────────────────────────────────

class DiscountNotFoundError(ValidationError):
    """未知のコードは入力の誤りとして 400 で返す"""
    code = "discount_not_found"
    default_message = "Invalid discount code"


class DiscountExpiredError(ValidationError):
    code = "discount_expired"
    default_message = "Discount code has expired"


class DiscountExhaustedError(ValidationError):
    code = "discount_exhausted"
    default_message = "Discount code is no longer available"


class DiscountNotEntitledError(ValidationError):
    code = "discount_not_entitled"
    default_message = "This discount code is not valid for your account"


class DiscountBelowMinimumError(ValidationError):
    code = "discount_below_minimum"
    default_message = "Order amount is below the minimum for this discount"


class DiscountNotApplicableError(ValidationError):
    code = "discount_not_applicable"
    default_message = "Discount code does not reduce this order"


class DiscountAlreadyUsedError(ConflictError):
    code = "discount_already_used"
    default_message = "Discount code has already been used"


# ── 里親枠 ──────────────────────────────────────

class SlotsExhaustedError(ConflictError):
    code = "slots_exhausted"
    default_message = "No adoption slots remain"


class AlreadyAdoptedError(ConflictError):
    code = "already_adopted"
    default_message = "You have already adopted this tree"
