# cartsync/domain/pricing.py
"""Payment component calculation shared by the server and the client cache.

Everything in here is a pure function of cart lines and a rule set, so the
server snapshot and the client's offline fallback produce the same numbers.
Money is Decimal end to end and every component is quantised to cents with
ROUND_HALF_UP, which keeps ``final_total`` reproducible for the payment step.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import ClassVar, Iterable, Mapping, Union

from cartsync.domain.errors import StaleCalculationError
from cartsync.utils.logging import get_logger

logger = get_logger(__name__)

CENT = Decimal("0.01")
# dlugosc trzymana w Numeric(10, 3)
LENGTH_STEP = Decimal("0.001")
ZERO = Decimal("0.00")

EXPRESS_METHODS = ("express", "overnight")


def money(value) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_length(custom_length) -> Decimal | None:
    if custom_length is None:
        return None
    value = custom_length if isinstance(custom_length, Decimal) else Decimal(str(custom_length))
    return value.quantize(LENGTH_STEP, rounding=ROUND_HALF_UP).normalize()


def line_key(product_id: str, custom_length=None) -> str:
    """Uniqueness key of a cart line: product alone, or product + length."""
    length = normalize_length(custom_length)
    if length is None:
        return str(product_id)
    return f"{product_id}@{format(length, 'f')}"


def variable_dimension_price(fixed_height, custom_length, rate) -> Decimal:
    # cena za linie juz zawiera podatek
    return money(Decimal(str(fixed_height)) * Decimal(str(custom_length)) * Decimal(str(rate)))


def _percent_label(rate: Decimal) -> str:
    return f"{format((rate * 100).normalize(), 'f')}%"


# ==================== components ====================

class ComponentType(str, Enum):
    TAX = "TAX"
    SHIPPING = "SHIPPING"
    DISCOUNT = "DISCOUNT"
    FEE = "FEE"


@dataclass(frozen=True)
class _Component:
    amount: Decimal
    label: str
    description: str = ""

    type: ClassVar[ComponentType]

    @property
    def is_negative(self) -> bool:
        return self.type is ComponentType.DISCOUNT

    @property
    def signed_amount(self) -> Decimal:
        return signed_amount(self)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "amount": self.amount,
            "label": self.label,
            "description": self.description,
            "is_negative": self.is_negative,
        }


@dataclass(frozen=True)
class TaxComponent(_Component):
    type = ComponentType.TAX


@dataclass(frozen=True)
class ShippingComponent(_Component):
    type = ComponentType.SHIPPING


@dataclass(frozen=True)
class DiscountComponent(_Component):
    type = ComponentType.DISCOUNT


@dataclass(frozen=True)
class FeeComponent(_Component):
    type = ComponentType.FEE


PaymentComponent = Union[TaxComponent, ShippingComponent, DiscountComponent, FeeComponent]

_COMPONENT_CLASSES = {
    ComponentType.TAX: TaxComponent,
    ComponentType.SHIPPING: ShippingComponent,
    ComponentType.DISCOUNT: DiscountComponent,
    ComponentType.FEE: FeeComponent,
}


def signed_amount(component: PaymentComponent) -> Decimal:
    match component:
        case TaxComponent() | ShippingComponent() | FeeComponent():
            return component.amount
        case DiscountComponent():
            return -component.amount
    raise TypeError(f"Unknown payment component {component!r}")


def component_from_dict(data: Mapping) -> PaymentComponent:
    cls = _COMPONENT_CLASSES[ComponentType(data["type"])]
    return cls(
        amount=money(data["amount"]),
        label=data.get("label") or "",
        description=data.get("description") or "",
    )


# ==================== rules ====================

class AdjustmentKind(str, Enum):
    PERCENT = "PERCENT"
    FLAT = "FLAT"


@dataclass(frozen=True)
class DiscountRule:
    code: str
    kind: AdjustmentKind
    value: Decimal
    label: str = ""
    expires_at: datetime | None = None
    min_subtotal: Decimal = ZERO

    @classmethod
    def from_config(cls, code: str, data: Mapping) -> "DiscountRule":
        expires_at = data.get("expires_at")
        if isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at)
        return cls(
            code=code.upper(),
            kind=AdjustmentKind(data["kind"]),
            value=Decimal(str(data["value"])),
            label=data.get("label") or f"{code.upper()} Discount",
            expires_at=expires_at,
            min_subtotal=Decimal(str(data.get("min_subtotal", "0"))),
        )

    def amount_for(self, subtotal: Decimal) -> Decimal:
        if self.kind is AdjustmentKind.PERCENT:
            amount = money(subtotal * self.value)
        else:
            amount = money(self.value)
        return min(amount, subtotal)


@dataclass(frozen=True)
class FeeRule:
    method: str
    kind: AdjustmentKind
    value: Decimal
    label: str = "Processing Fee"

    @classmethod
    def from_config(cls, method: str, data: Mapping) -> "FeeRule":
        return cls(
            method=method.lower(),
            kind=AdjustmentKind(data["kind"]),
            value=Decimal(str(data["value"])),
            label=data.get("label") or "Processing Fee",
        )

    def amount_for(self, subtotal: Decimal) -> Decimal:
        if self.kind is AdjustmentKind.PERCENT:
            return money(subtotal * self.value)
        return money(self.value)


@dataclass(frozen=True)
class PricingRules:
    tax_rate: Decimal = Decimal("0.08")
    free_shipping_threshold: Decimal = Decimal("50.00")
    shipping_fee: Decimal = Decimal("9.99")
    express_shipping_fee: Decimal = Decimal("19.99")
    discounts: Mapping[str, DiscountRule] = field(default_factory=dict)
    fees: Mapping[str, FeeRule] = field(default_factory=dict)
    currency: str = "USD"

    @classmethod
    def from_settings(cls) -> "PricingRules":
        from cartsync.utils import settings

        return cls(
            tax_rate=settings.TAX_RATE,
            free_shipping_threshold=settings.FREE_SHIPPING_THRESHOLD,
            shipping_fee=settings.SHIPPING_FEE,
            express_shipping_fee=settings.EXPRESS_SHIPPING_FEE,
            discounts={
                code.upper(): DiscountRule.from_config(code, data)
                for code, data in settings.DISCOUNT_CODES.items()
            },
            fees={
                method.lower(): FeeRule.from_config(method, data)
                for method, data in settings.PAYMENT_FEES.items()
            },
            currency=settings.CURRENCY,
        )


# ==================== calculation ====================

@dataclass(frozen=True)
class PricedLine:
    """The pricing-relevant view of one cart line."""

    product_id: str
    quantity: int
    unit_price: Decimal
    base_price: Decimal
    tax_rate: Decimal | None = None
    tax_included: bool = False
    custom_length: Decimal | None = None

    @property
    def key(self) -> str:
        return line_key(self.product_id, self.custom_length)

    @property
    def base_total(self) -> Decimal:
        return self.base_price * self.quantity

    @property
    def display_total(self) -> Decimal:
        return money(self.unit_price * self.quantity)


@dataclass(frozen=True)
class PricingResult:
    subtotal: Decimal
    components: tuple
    final_total: Decimal
    item_count: int
    currency: str = "USD"

    def _sum(self, component_type: ComponentType) -> Decimal:
        return sum((c.amount for c in self.components if c.type is component_type), ZERO)

    @property
    def tax(self) -> Decimal:
        return self._sum(ComponentType.TAX)

    @property
    def shipping(self) -> Decimal:
        return self._sum(ComponentType.SHIPPING)

    @property
    def discount(self) -> Decimal:
        return self._sum(ComponentType.DISCOUNT)

    @property
    def fees(self) -> Decimal:
        return self._sum(ComponentType.FEE)

    def to_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "components": [c.to_dict() for c in self.components],
            "final_total": self.final_total,
            "item_count": self.item_count,
            "currency": self.currency,
        }


def _tax_component(lines: list[PricedLine], rules: PricingRules) -> TaxComponent | None:
    taxable = [line for line in lines if not line.tax_included]
    amount = money(
        sum(
            (line.base_total * (line.tax_rate if line.tax_rate is not None else rules.tax_rate) for line in taxable),
            Decimal("0"),
        )
    )
    if amount <= ZERO:
        return None

    rates = {line.tax_rate if line.tax_rate is not None else rules.tax_rate for line in taxable}
    if len(rates) == 1:
        rate = rates.pop()
        return TaxComponent(amount, f"Tax ({_percent_label(rate)})", "Standard tax rate applied")
    return TaxComponent(amount, "Tax", "Tax calculated per item rate")


def _shipping_component(subtotal: Decimal, rules: PricingRules, shipping_method: str | None) -> ShippingComponent:
    if subtotal >= rules.free_shipping_threshold:
        return ShippingComponent(
            ZERO,
            "Free Shipping",
            f"Free shipping on orders over ${money(rules.free_shipping_threshold)}",
        )

    method = (shipping_method or "standard").lower()
    if method in EXPRESS_METHODS:
        label = "Overnight Shipping" if method == "overnight" else "Express Shipping"
        return ShippingComponent(money(rules.express_shipping_fee), label, "Express delivery within 2-3 business days")
    return ShippingComponent(money(rules.shipping_fee), "Standard Shipping", "Standard delivery within 5-7 business days")


def _discount_component(
    code: str,
    subtotal: Decimal,
    rules: PricingRules,
    as_of: datetime,
) -> DiscountComponent:
    try:
        rule = rules.discounts.get(code.upper())
    except Exception as exc:
        # regula niedostepna: nie blokujemy checkoutu, rabat = 0
        stale = StaleCalculationError(f"Discount lookup failed for {code}: {exc}")
        logger.warning(f"{stale} - falling back to zero discount")
        return DiscountComponent(ZERO, "Discount", "Discount could not be verified")

    if rule is None:
        return DiscountComponent(ZERO, "Discount", f"Discount code {code.upper()} is not valid")
    if rule.expires_at is not None and as_of >= rule.expires_at:
        return DiscountComponent(ZERO, "Discount", f"Discount code {rule.code} has expired")
    if subtotal < rule.min_subtotal:
        return DiscountComponent(
            ZERO, "Discount", f"Discount code {rule.code} requires a subtotal of ${money(rule.min_subtotal)}"
        )

    return DiscountComponent(rule.amount_for(subtotal), rule.label, f"Discount code {rule.code} applied")


def _fee_component(payment_method: str, subtotal: Decimal, rules: PricingRules) -> FeeComponent | None:
    rule = rules.fees.get(payment_method.lower())
    if rule is None:
        return None
    amount = rule.amount_for(subtotal)
    if amount <= ZERO:
        return None
    return FeeComponent(amount, rule.label, f"{rule.label} for {rule.method}")


def calculate(
    lines: Iterable[PricedLine],
    rules: PricingRules,
    discount_code: str | None = None,
    shipping_method: str | None = None,
    payment_method: str | None = None,
    as_of: datetime | None = None,
) -> PricingResult:
    """Price a cart.

    Subtotal is built from pre-tax base amounts. Lines flagged ``tax_included``
    (variable-dimension products) already carry their full chargeable amount
    and get no extra TAX. ``as_of`` only matters for discount codes with an
    expiry; pass it explicitly when the result has to be reproducible.
    """
    lines = list(lines)
    as_of = as_of or datetime.now(timezone.utc)

    subtotal = money(sum((line.base_total for line in lines), Decimal("0")))
    item_count = sum(line.quantity for line in lines)

    components: list[PaymentComponent] = []
    tax = _tax_component(lines, rules)
    if tax is not None:
        components.append(tax)

    if lines:
        components.append(_shipping_component(subtotal, rules, shipping_method))

    if discount_code and discount_code.strip():
        components.append(_discount_component(discount_code.strip(), subtotal, rules, as_of))

    if payment_method and payment_method.strip():
        fee = _fee_component(payment_method.strip(), subtotal, rules)
        if fee is not None:
            components.append(fee)

    final_total = money(max(subtotal + sum((signed_amount(c) for c in components), ZERO), ZERO))

    return PricingResult(
        subtotal=subtotal,
        components=tuple(components),
        final_total=final_total,
        item_count=item_count,
        currency=rules.currency,
    )
