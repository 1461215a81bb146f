"""
Commerce Service — 価格計算エンジン

I/O を持たない純粋な計算モジュール。
  小計 → 送料 → 割引 (小計 + 送料 に対して、税の前) → 税 → 合計

金額はすべて Decimal で扱い、各値を算出した時点で 2 桁に丸める。
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from . import config
from .errors import BelowMinimumPayableError, DiscountNotApplicableError, ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_money(value) -> Decimal:
    """float / str / Decimal を 2 桁に丸めた Decimal に変換する。"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricingPolicy:
    tax_rate: Decimal
    free_shipping_threshold: Decimal
    shipping_cost: Decimal
    minimum_payable: Decimal

    @classmethod
    def from_config(cls) -> "PricingPolicy":
        return cls(
            tax_rate=config.TAX_RATE,
            free_shipping_threshold=config.FREE_SHIPPING_THRESHOLD,
            shipping_cost=config.SHIPPING_COST,
            minimum_payable=config.MINIMUM_PAYABLE,
        )


@dataclass(frozen=True)
class PricedLine:
    """価格計算に必要な明細の最小情報"""
    unit_price: Decimal
    quantity: int
    token_unit_price: Decimal | None = None


@dataclass(frozen=True)
class DiscountTerms:
    code: str
    percentage: Decimal
    max_discount_amount: Decimal | None = None


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    shipping: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    token_total: Decimal
    discount_code: str | None = None
    discount_capped: bool = False

    def as_dict(self) -> dict:
        return {
            "subtotal": float(self.subtotal),
            "shipping": float(self.shipping),
            "discount": float(self.discount),
            "tax": float(self.tax),
            "total": float(self.total),
            "token_total": float(self.token_total),
        }


# ── 各ステップ ──────────────────────────────────

def calculate_subtotals(lines: Iterable[PricedLine]) -> tuple[Decimal, Decimal]:
    """(法定通貨の小計, トークン建ての小計) を返す。"""
    subtotal = ZERO
    token_subtotal = ZERO
    for line in lines:
        if line.quantity < 1:
            raise ValidationError("Item quantity must be at least 1")
        subtotal += line.unit_price * line.quantity
        if line.token_unit_price is not None:
            token_subtotal += line.token_unit_price * line.quantity
    return to_money(subtotal), to_money(token_subtotal)


def calculate_shipping(subtotal: Decimal, policy: PricingPolicy, paid_in_tokens: bool = False) -> Decimal:
    if paid_in_tokens or subtotal > policy.free_shipping_threshold:
        return ZERO
    return to_money(policy.shipping_cost)


def calculate_discount(amount: Decimal, terms: DiscountTerms) -> Decimal:
    """amount (小計 + 送料) に対する割引額。上限があればそこで打ち切る。"""
    discount = to_money(amount * terms.percentage / Decimal(100))
    if terms.max_discount_amount is not None and discount > terms.max_discount_amount:
        discount = to_money(terms.max_discount_amount)
    return min(discount, to_money(amount))


def calculate_tax(taxable: Decimal, policy: PricingPolicy) -> Decimal:
    return to_money(max(ZERO, taxable) * policy.tax_rate)


def total_for(discountable: Decimal, discount: Decimal, policy: PricingPolicy) -> Decimal:
    base = max(ZERO, discountable - discount)
    return to_money(base + calculate_tax(base, policy))


def max_discount_for_floor(discountable: Decimal, policy: PricingPolicy) -> Decimal:
    """
    合計が最小決済額以上に収まる最大の割引額 (セント単位) を返す。

    税の丸めがあるので解析解の少し上から 1 セントずつ下げて確かめる。
    割引 0 でも最小額に届かない場合は BelowMinimumPayableError。
    """
    floor = policy.minimum_payable
    if total_for(discountable, ZERO, policy) < floor:
        raise BelowMinimumPayableError(
            f"Order total must be at least {floor:.2f}"
        )
    estimate = discountable - floor / (Decimal(1) + policy.tax_rate)
    candidate = min(discountable, to_money(estimate) + CENT)
    while candidate > ZERO and total_for(discountable, candidate, policy) < floor:
        candidate -= CENT
    return max(ZERO, candidate)


# ── まとめて計算 ────────────────────────────────

def price_order(
    lines: list[PricedLine],
    policy: PricingPolicy,
    *,
    paid_in_tokens: bool = False,
    discount: DiscountTerms | None = None,
) -> Totals:
    """
    注文の合計を計算する。

    割引は (小計 + 送料) に適用し、税には適用しない。
    割引後の合計が 0 より大きく最小決済額未満になる場合は、
    最小決済額に収まるところまで割引を減らす。
    トークン払いの注文は送料 0、割引なし、最小決済額のチェックなし。
    """
    if not lines:
        raise ValidationError("Order must contain at least one item")
    if paid_in_tokens and discount is not None:
        raise ValidationError("Discount codes cannot be combined with token payment")

    subtotal, token_total = calculate_subtotals(lines)
    if paid_in_tokens:
        if any(line.token_unit_price is None for line in lines):
            raise ValidationError("Every item must have a token price to pay with tokens")
        if token_total <= ZERO:
            raise ValidationError("Token total must be greater than zero")

    shipping = calculate_shipping(subtotal, policy, paid_in_tokens)
    discountable = subtotal + shipping

    discount_amount = ZERO
    capped = False
    if discount is not None:
        discount_amount = calculate_discount(discountable, discount)
        if discount_amount <= ZERO:
            raise DiscountNotApplicableError()
        total = total_for(discountable, discount_amount, policy)
        if ZERO < total < policy.minimum_payable:
            ceiling = max_discount_for_floor(discountable, policy)
            if ceiling <= ZERO:
                raise BelowMinimumPayableError(
                    "Discount cannot be applied: the order total would fall "
                    f"below the minimum payable amount of {policy.minimum_payable:.2f}"
                )
            discount_amount = ceiling
            capped = True

    base = max(ZERO, discountable - discount_amount)
    tax = calculate_tax(base, policy)
    total = to_money(base + tax)

    if not paid_in_tokens and ZERO < total < policy.minimum_payable:
        raise BelowMinimumPayableError(
            f"Order total must be at least {policy.minimum_payable:.2f}"
        )

    return Totals(
        subtotal=subtotal,
        shipping=shipping,
        discount=discount_amount,
        tax=tax,
        total=total,
        token_total=token_total,
        discount_code=discount.code if discount is not None else None,
        discount_capped=capped,
    )
