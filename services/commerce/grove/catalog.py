"""
Commerce Service — カタログ解決

リクエストの明細は 商品 (variant 任意) と 里親 (木 / 区画) のタグ付きユニオン。
注文作成時に 1 度だけカタログを引き、名前と単価を固定したスナップショットにする。
以降は価格をカタログから読み直さない（領収書が変わらないように）。
"""

from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFoundError, ValidationError
from .pricing import PricedLine, to_money


# ── リクエスト側 (タグ付きユニオン) ──────────────────

class ProductItem(BaseModel):
    type: Literal["product"] = "product"
    product_id: str
    variant_id: str | None = None
    quantity: int = Field(default=1, ge=1, le=100)


class AdoptionItem(BaseModel):
    type: Literal["adoption"] = "adoption"
    target: Literal["tree", "plot"]
    target_id: str
    quantity: Literal[1] = 1
    adoption_for: Literal["self", "gift"] = "self"
    recipient_name: str | None = None
    recipient_email: EmailStr | None = None
    gift_message: str | None = None


RequestedItem = Annotated[ProductItem | AdoptionItem, Field(discriminator="type")]


# ── 解決済みスナップショット ─────────────────────────

class OrderLine(BaseModel):
    type: Literal["product", "adoption"]
    ref_id: str
    variant_id: str | None = None
    target: Literal["tree", "plot"] | None = None
    name: str
    unit_price: float
    token_unit_price: float | None = None
    quantity: int
    location: str | None = None
    species: str | None = None
    adoption_for: Literal["self", "gift"] | None = None
    recipient_name: str | None = None
    recipient_email: str | None = None
    gift_message: str | None = None

    @property
    def is_gift(self) -> bool:
        return self.adoption_for == "gift" and bool((self.recipient_email or "").strip())

    def priced(self) -> PricedLine:
        return PricedLine(
            unit_price=to_money(self.unit_price),
            quantity=self.quantity,
            token_unit_price=to_money(self.token_unit_price) if self.token_unit_price is not None else None,
        )


def _price(value) -> float | None:
    return float(to_money(value)) if value is not None else None


async def _resolve_product(session: AsyncSession, item: ProductItem) -> OrderLine:
    product = (await session.execute(
        text("SELECT id, name, price, token_price, active FROM products WHERE id = :id"),
        {"id": item.product_id},
    )).fetchone()
    if product is None or not product.active:
        raise NotFoundError(f"Product {item.product_id} not found")

    name = product.name
    price, token_price = product.price, product.token_price
    if item.variant_id:
        variant = (await session.execute(
            text("""
                SELECT id, name, price, token_price FROM product_variants
                WHERE id = :id AND product_id = :product_id
            """),
            {"id": item.variant_id, "product_id": item.product_id},
        )).fetchone()
        if variant is None:
            raise NotFoundError(f"Variant {item.variant_id} not found")
        name = f"{product.name} - {variant.name}"
        if variant.price is not None:
            price = variant.price
        if variant.token_price is not None:
            token_price = variant.token_price

    if price is None or Decimal(str(price)) < 0:
        raise ValidationError(f"Product {name} has no valid price")

    return OrderLine(
        type="product",
        ref_id=item.product_id,
        variant_id=item.variant_id,
        name=name,
        unit_price=_price(price),
        token_unit_price=_price(token_price),
        quantity=item.quantity,
    )


async def _resolve_adoption(session: AsyncSession, item: AdoptionItem) -> OrderLine:
    if item.target == "tree":
        row = (await session.execute(
            text("SELECT id, name, location, species, price, token_price FROM trees WHERE id = :id"),
            {"id": item.target_id},
        )).fetchone()
        species = row.species if row else None
    else:
        row = (await session.execute(
            text("SELECT id, name, location, price, token_price FROM land_plots WHERE id = :id"),
            {"id": item.target_id},
        )).fetchone()
        species = None
    if row is None:
        raise NotFoundError(f"{item.target.capitalize()} {item.target_id} not found")

    return OrderLine(
        type="adoption",
        ref_id=item.target_id,
        target=item.target,
        name=row.name,
        unit_price=_price(row.price),
        token_unit_price=_price(row.token_price),
        quantity=1,
        location=row.location,
        species=species,
        adoption_for=item.adoption_for,
        recipient_name=item.recipient_name,
        recipient_email=str(item.recipient_email) if item.recipient_email else None,
        gift_message=item.gift_message,
    )


async def resolve_items(session: AsyncSession, items: list[ProductItem | AdoptionItem]) -> list[OrderLine]:
    """明細をカタログで解決する。未知の商品・木・区画は NotFoundError。"""
    if not items:
        raise ValidationError("Order must contain at least one item")
    lines = []
    for item in items:
        if isinstance(item, ProductItem):
            lines.append(await _resolve_product(session, item))
        else:
            lines.append(await _resolve_adoption(session, item))
    return lines
