# cartsync/domain/schemas.py
from datetime import datetime
from decimal import Decimal
from typing import List

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """camelCase na zewnatrz, snake_case w kodzie (oba przyjmowane na wejsciu)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ItemIn(CamelModel):
    """Schema dla dodawania produktu do koszyka."""

    product_id: str = Field(..., min_length=1, description="ID produktu")
    quantity: int = Field(1, gt=0, description="Ilosc (musi byc > 0)")
    custom_length: Decimal | None = Field(None, gt=0, description="Dlugosc dla produktow o zmiennym wymiarze")
    is_gift: bool = False
    gift_message: str | None = Field(None, max_length=500)


class QuantityIn(CamelModel):
    """quantity <= 0 usuwa pozycje."""

    quantity: int


class MergeIn(CamelModel):
    session_id: str = Field(..., min_length=1)
    device_fingerprint: str | None = None


class DiscountIn(CamelModel):
    code: str = Field(..., min_length=1, max_length=64)


class CartItemOut(CamelModel):
    id: str
    product_id: str
    product_name: str | None = None
    quantity: int
    unit_price: Decimal
    base_price: Decimal
    tax_rate: Decimal | None = None
    tax_included: bool = False
    total_price: Decimal
    custom_length: Decimal | None = None
    is_gift: bool = False
    gift_message: str | None = None


class PaymentComponentOut(CamelModel):
    type: str
    amount: Decimal
    label: str
    description: str = ""
    is_negative: bool = False


class CartOut(CamelModel):
    """Schema dla koszyka (response)."""

    cart_id: str
    status: str
    is_guest: bool
    user_id: str | None = None
    session_id: str | None = None
    items: List[CartItemOut]
    subtotal: Decimal
    components: List[PaymentComponentOut]
    final_total: Decimal
    item_count: int
    currency: str
    discount_code: str | None = None
    is_gift: bool = False
    gift_message: str | None = None
    expires_at: datetime | None = None
    last_activity_at: datetime | None = None


class ValidationOut(CamelModel):
    valid: bool
    errors: List[str]
    warnings: List[str]
    cart: CartOut


class MergeOut(CamelModel):
    merged: bool
    fallback: bool
    guest_cart_id: str | None = None
    cart: CartOut


class StatsOut(CamelModel):
    by_status: dict[str, int]
    active_guest_carts: int
    average_cart_size: float
