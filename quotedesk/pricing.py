"""Line-item pricing and quote totals.

Dimensions are entered in centimetres and billed per square metre. Every
function here is pure: callers rebuild a draft with ``recompute`` after any
field change instead of patching derived values in place.
"""
from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Iterable

VAT_RATE = 0.05
DEFAULT_MINIMUM_CHARGEABLE_AREA = 1.0
DISCOUNT_TYPES = ("none", "percentage", "fixed")
CM2_PER_M2 = 10000
THOUSANDS_GROUPED = re.compile(r"[+-]?\d{1,3}(,\d{3})+(\.\d+)?")


def to_number(value: Any) -> float:
    """Coerce a loosely typed input to a float; anything unusable becomes 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        raw = str(value).replace("\xa0", " ").strip()
        if "," in raw:
            # Only thousands grouping; a decimal comma is not a number here.
            if not THOUSANDS_GROUPED.fullmatch(raw):
                return 0.0
            raw = raw.replace(",", "")
        if not raw:
            return 0.0
        try:
            number = float(raw)
        except ValueError:
            return 0.0
    return number if math.isfinite(number) else 0.0


def to_quantity(value: Any) -> int:
    return int(to_number(value))


@dataclass(frozen=True)
class ItemPrice:
    area: float
    chargeable_area: float
    total: float


def price_item(
    height: Any,
    width: Any,
    qty: Any,
    unit_price: Any,
    minimum_chargeable_area: Any,
) -> ItemPrice:
    """Price one line item.

    A single non-positive dimension zeroes the geometric area of the whole
    line. The chargeable area never drops below ``minimum_chargeable_area``
    per unit, even when the geometric area is zero.
    """
    height_value = to_number(height)
    width_value = to_number(width)
    qty_value = to_quantity(qty)
    unit_price_value = to_number(unit_price)
    minimum = to_number(minimum_chargeable_area)

    if height_value > 0 and width_value > 0 and qty_value > 0:
        area = height_value * width_value * qty_value / CM2_PER_M2
    else:
        area = 0.0

    chargeable_area = max(area, minimum * qty_value)
    if chargeable_area > 0 and unit_price_value > 0:
        total = chargeable_area * unit_price_value
    else:
        total = 0.0
    return ItemPrice(area=area, chargeable_area=chargeable_area, total=total)


@dataclass(frozen=True)
class QuoteItem:
    location: str = ""
    type: str = ""
    height: float = 0.0
    width: float = 0.0
    qty: int = 1
    unit_price: float = 0.0
    area: float = 0.0
    chargeable_area: float = 0.0
    total: float = 0.0

    def priced(self, minimum_chargeable_area: float) -> QuoteItem:
        price = price_item(self.height, self.width, self.qty, self.unit_price, minimum_chargeable_area)
        return replace(
            self,
            area=price.area,
            chargeable_area=price.chargeable_area,
            total=price.total,
        )

    def is_blank(self) -> bool:
        return not self.location and not self.type and self.height <= 0 and self.width <= 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def item_from_mapping(data: dict[str, Any]) -> QuoteItem:
    return QuoteItem(
        location=str(data.get("location") or "").strip(),
        type=str(data.get("type") or "").strip(),
        height=to_number(data.get("height")),
        width=to_number(data.get("width")),
        qty=to_quantity(data.get("qty")),
        unit_price=to_number(data.get("unit_price")),
    )


@dataclass(frozen=True)
class DiscountPolicy:
    discount_type: str = "none"
    discount_value: float = 0.0

    def __post_init__(self) -> None:
        if self.discount_type not in DISCOUNT_TYPES:
            allowed = ", ".join(DISCOUNT_TYPES)
            raise ValueError(f"Invalid discount type '{self.discount_type}'. Allowed: {allowed}.")

    def amount(self, subtotal: float) -> float:
        """Discount on ``subtotal``, never negative and never more than it."""
        if self.discount_type == "percentage":
            amount = subtotal * (self.discount_value / 100)
        elif self.discount_type == "fixed":
            amount = self.discount_value
        else:
            return 0.0
        return min(max(amount, 0.0), max(subtotal, 0.0))


@dataclass(frozen=True)
class QuoteTotals:
    subtotal: float = 0.0
    total_chargeable_area: float = 0.0
    discount: float = 0.0
    vat_amount: float = 0.0
    shipping_amount: float = 0.0
    total: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


def aggregate_quote(
    items: Iterable[QuoteItem],
    discount: DiscountPolicy | None = None,
    shipping_amount: Any = 0.0,
    vat_rate: float = VAT_RATE,
) -> QuoteTotals:
    """Roll priced items up into quote totals.

    The discount comes off the subtotal only. VAT is charged on the discounted
    subtotal and shipping is added afterwards, outside the VAT base.
    """
    policy = discount or DiscountPolicy()
    item_list = list(items)
    subtotal = sum(item.total for item in item_list)
    total_chargeable_area = sum(item.chargeable_area for item in item_list)
    discount_amount = policy.amount(subtotal)
    vat_base = subtotal - discount_amount
    vat_amount = vat_base * vat_rate
    shipping = to_number(shipping_amount)
    return QuoteTotals(
        subtotal=subtotal,
        total_chargeable_area=total_chargeable_area,
        discount=discount_amount,
        vat_amount=vat_amount,
        shipping_amount=shipping,
        total=vat_base + vat_amount + shipping,
    )


@dataclass(frozen=True)
class QuoteDraft:
    items: tuple[QuoteItem, ...] = (QuoteItem(),)
    minimum_chargeable_area: float = DEFAULT_MINIMUM_CHARGEABLE_AREA
    discount_type: str = "none"
    discount_value: float = 0.0
    shipping_amount: float = 0.0
    vat_rate: float = VAT_RATE
    totals: QuoteTotals = field(default_factory=QuoteTotals)

    @property
    def discount_policy(self) -> DiscountPolicy:
        return DiscountPolicy(self.discount_type, self.discount_value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "minimum_chargeable_area": self.minimum_chargeable_area,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "shipping_amount": self.shipping_amount,
            "totals": self.totals.to_dict(),
        }


def recompute(draft: QuoteDraft) -> QuoteDraft:
    """Re-price every item and the totals.

    The minimum chargeable area applies to the whole draft, so all items are
    re-priced, not only the one that changed. A zero minimum falls back to
    the default.
    """
    minimum = draft.minimum_chargeable_area or DEFAULT_MINIMUM_CHARGEABLE_AREA
    items = tuple(item.priced(minimum) for item in draft.items)
    totals = aggregate_quote(items, draft.discount_policy, draft.shipping_amount, draft.vat_rate)
    return replace(draft, items=items, minimum_chargeable_area=minimum, totals=totals)


def update_item(draft: QuoteDraft, index: int, **changes: Any) -> QuoteDraft:
    items = list(draft.items)
    items[index] = replace(items[index], **changes)
    return recompute(replace(draft, items=tuple(items)))


def add_item(draft: QuoteDraft, item: QuoteItem | None = None) -> QuoteDraft:
    return recompute(replace(draft, items=draft.items + (item or QuoteItem(),)))


def remove_item(draft: QuoteDraft, index: int) -> QuoteDraft:
    items = tuple(item for i, item in enumerate(draft.items) if i != index)
    return recompute(replace(draft, items=items))


def draft_from_payload(payload: dict[str, Any], vat_rate: float = VAT_RATE) -> QuoteDraft:
    discount_type = str(payload.get("discount_type") or "none").strip().lower()
    draft = QuoteDraft(
        items=tuple(item_from_mapping(raw) for raw in payload.get("items") or [] if isinstance(raw, dict)),
        minimum_chargeable_area=to_number(payload.get("minimum_chargeable_area")),
        discount_type=discount_type,
        discount_value=0.0 if discount_type == "none" else to_number(payload.get("discount_value")),
        shipping_amount=to_number(payload.get("shipping_amount")),
        vat_rate=vat_rate,
    )
    return recompute(draft)
