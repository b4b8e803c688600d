# cartsync/client/cache.py
"""Client cart cache as a pure state transition.

``reduce(state, action, rules)`` never touches the network or the disk.
Server snapshots replace the state wholesale (the server is the authority);
local actions apply the same add / update / remove rules the server uses and
recompute totals with ``cartsync.domain.pricing``, leaving the state marked
``stale`` until the next server sync.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Union

from pydantic import BaseModel, ConfigDict

from cartsync.domain import pricing
from cartsync.domain.pricing import PricedLine, PricingRules
from cartsync.domain.schemas import CartOut, PaymentComponentOut

LOCAL_ID_PREFIX = "local:"


class CachedLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    product_id: str
    product_name: str | None = None
    quantity: int
    unit_price: Decimal
    base_price: Decimal
    tax_rate: Decimal | None = None
    tax_included: bool = False
    custom_length: Decimal | None = None
    is_gift: bool = False
    gift_message: str | None = None

    @property
    def key(self) -> str:
        return pricing.line_key(self.product_id, self.custom_length)

    def priced(self) -> PricedLine:
        return PricedLine(
            product_id=self.product_id,
            quantity=self.quantity,
            unit_price=self.unit_price,
            base_price=self.base_price,
            tax_rate=self.tax_rate,
            tax_included=self.tax_included,
            custom_length=self.custom_length,
        )


class CartCacheState(BaseModel):
    model_config = ConfigDict(frozen=True)

    cart_id: str | None = None
    session_id: str | None = None
    is_guest: bool = True
    lines: tuple[CachedLine, ...] = ()
    discount_code: str | None = None
    subtotal: Decimal = pricing.ZERO
    components: tuple[PaymentComponentOut, ...] = ()
    final_total: Decimal = pricing.ZERO
    item_count: int = 0
    currency: str = "USD"
    stale: bool = False
    expires_at: datetime | None = None
    last_sync_at: datetime | None = None

    def find(self, item_id: str) -> CachedLine | None:
        # lokalne pozycje mozna tez wskazac kluczem linii
        for line in self.lines:
            if line.item_id == item_id or line.key == item_id:
                return line
        return None


# ---- actions ----
@dataclass(frozen=True)
class ServerSynced:
    cart: CartOut
    synced_at: datetime


@dataclass(frozen=True)
class ItemAdded:
    product_id: str
    quantity: int
    unit_price: Decimal
    base_price: Decimal | None = None
    tax_rate: Decimal | None = None
    tax_included: bool = False
    custom_length: Decimal | None = None
    product_name: str | None = None
    is_gift: bool = False
    gift_message: str | None = None


@dataclass(frozen=True)
class QuantityUpdated:
    item_id: str
    quantity: int


@dataclass(frozen=True)
class ItemRemoved:
    item_id: str


@dataclass(frozen=True)
class Cleared:
    pass


@dataclass(frozen=True)
class SessionChanged:
    session_id: str | None
    is_guest: bool


CartAction = Union[ServerSynced, ItemAdded, QuantityUpdated, ItemRemoved, Cleared, SessionChanged]


def reduce(state: CartCacheState, action: CartAction, rules: PricingRules) -> CartCacheState:
    match action:
        case ServerSynced(cart=cart, synced_at=synced_at):
            return _from_server(state, cart, synced_at)

        case ItemAdded():
            return _add(state, action, rules)

        case QuantityUpdated(item_id=item_id, quantity=quantity) if quantity <= 0:
            return _remove(state, item_id, rules)

        case QuantityUpdated(item_id=item_id, quantity=quantity):
            line = state.find(item_id)
            if line is None:
                return state
            lines = tuple(
                existing.model_copy(update={"quantity": quantity}) if existing is line else existing
                for existing in state.lines
            )
            return _recompute(state, lines, rules)

        case ItemRemoved(item_id=item_id):
            return _remove(state, item_id, rules)

        case Cleared():
            return _recompute(state.model_copy(update={"discount_code": None}), (), rules)

        case SessionChanged(session_id=session_id, is_guest=is_guest):
            return CartCacheState(session_id=session_id, is_guest=is_guest, currency=state.currency, stale=True)

    raise TypeError(f"Unknown cart action {action!r}")


def _from_server(state: CartCacheState, cart: CartOut, synced_at: datetime) -> CartCacheState:
    lines = tuple(
        CachedLine(
            item_id=item.id,
            product_id=item.product_id,
            product_name=item.product_name,
            quantity=item.quantity,
            unit_price=item.unit_price,
            base_price=item.base_price,
            tax_rate=item.tax_rate,
            tax_included=item.tax_included,
            custom_length=item.custom_length,
            is_gift=item.is_gift,
            gift_message=item.gift_message,
        )
        for item in cart.items
    )
    return CartCacheState(
        cart_id=cart.cart_id,
        session_id=cart.session_id if cart.is_guest else state.session_id,
        is_guest=cart.is_guest,
        lines=lines,
        discount_code=cart.discount_code,
        subtotal=cart.subtotal,
        components=tuple(cart.components),
        final_total=cart.final_total,
        item_count=cart.item_count,
        currency=cart.currency,
        stale=False,
        expires_at=cart.expires_at,
        last_sync_at=synced_at,
    )


def _add(state: CartCacheState, action: ItemAdded, rules: PricingRules) -> CartCacheState:
    if action.quantity <= 0:
        return state

    custom_length = pricing.normalize_length(action.custom_length)
    key = pricing.line_key(action.product_id, custom_length)
    unit_price = pricing.money(action.unit_price)
    base_price = pricing.money(action.base_price if action.base_price is not None else action.unit_price)

    existing = next((line for line in state.lines if line.key == key), None)
    if existing is not None:
        updated = existing.model_copy(
            update={
                "quantity": existing.quantity + action.quantity,
                "unit_price": unit_price,
                "base_price": base_price,
                "is_gift": existing.is_gift or action.is_gift,
                "gift_message": action.gift_message or existing.gift_message,
            }
        )
        lines = tuple(updated if line is existing else line for line in state.lines)
    else:
        lines = state.lines + (
            CachedLine(
                item_id=f"{LOCAL_ID_PREFIX}{key}",
                product_id=action.product_id,
                product_name=action.product_name,
                quantity=action.quantity,
                unit_price=unit_price,
                base_price=base_price,
                tax_rate=action.tax_rate,
                tax_included=action.tax_included,
                custom_length=custom_length,
                is_gift=action.is_gift,
                gift_message=action.gift_message,
            ),
        )
    return _recompute(state, lines, rules)


def _remove(state: CartCacheState, item_id: str, rules: PricingRules) -> CartCacheState:
    line = state.find(item_id)
    if line is None:
        # juz nie ma - no-op
        return state
    return _recompute(state, tuple(existing for existing in state.lines if existing is not line), rules)


def _recompute(state: CartCacheState, lines: tuple[CachedLine, ...], rules: PricingRules) -> CartCacheState:
    result = pricing.calculate([line.priced() for line in lines], rules, discount_code=state.discount_code)
    return state.model_copy(
        update={
            "lines": lines,
            "subtotal": result.subtotal,
            "components": tuple(PaymentComponentOut(**c.to_dict()) for c in result.components),
            "final_total": result.final_total,
            "item_count": result.item_count,
            "currency": result.currency,
            "stale": True,
        }
    )
