# Overview: Service-layer pricing math; pure VAT-inclusive cart totals with no side effects.

"""
Pricing / VAT Engine

All listed selling prices are VAT-INCLUSIVE (the customer sees the final
price). VAT is extracted, never added:

    price_before_vat = total / (1 + vat_rate)
    vat              = total - price_before_vat

INVARIANTS:
- Pure and deterministic: identical input gives identical output, no I/O,
  no reads of customer records. Special-customer pricing is resolved once,
  when a line enters the cart (resolve_unit_price), and frozen on the line.
- total = subtotal - discount_amount, exactly, before rounding.
- discount_pct must be within [0, 100]; anything else is rejected.
- Outputs are rounded half-up to cents; price_before_vat * (1 + vat_rate)
  reproduces total within one cent.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from ..schemas import CartLine, Customer, round_money
from ..validation import ValidationError, coerce_decimal

DEFAULT_VAT_RATE = Decimal("0.16")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class CartTotals:
    subtotal: Decimal
    discount_pct: Decimal
    discount_amount: Decimal
    total: Decimal
    price_before_vat: Decimal
    total_vat: Decimal
    vat_rate: Decimal

    def to_dict(self) -> dict:
        return {
            "subtotal": float(self.subtotal),
            "discountPercentage": float(self.discount_pct),
            "discountAmount": float(self.discount_amount),
            "subtotalAfterDiscount": float(self.total),
            "priceBeforeVAT": float(self.price_before_vat),
            "totalVAT": float(self.total_vat),
            "total": float(self.total),
            "vatRate": float(self.vat_rate),
        }


@dataclass(frozen=True)
class LineVAT:
    line: CartLine
    item_total: Decimal
    item_vat: Decimal
    item_price_before_vat: Decimal
    vat_rate: Decimal


def _rate(vat_rate) -> Decimal:
    rate = coerce_decimal("vat_rate", vat_rate)
    if rate < 0:
        raise ValidationError("vat_rate must be >= 0")
    return rate


def validate_discount(discount_pct) -> Decimal:
    """Parse a discount percentage; reject anything outside [0, 100]."""
    if discount_pct is None or discount_pct == "":
        return Decimal("0")
    pct = coerce_decimal("discount_pct", discount_pct)
    if pct < 0 or pct > HUNDRED:
        raise ValidationError(
            "Discount must be between 0 and 100 percent",
            details={"discount_pct": str(pct)},
        )
    return pct


def calculate_price_before_vat(selling_price, vat_rate=DEFAULT_VAT_RATE) -> Decimal:
    price = coerce_decimal("selling_price", selling_price)
    if price <= 0:
        return Decimal("0.00")
    return round_money(price / (1 + _rate(vat_rate)))


def calculate_vat(selling_price, vat_rate=DEFAULT_VAT_RATE) -> Decimal:
    price = coerce_decimal("selling_price", selling_price)
    if price <= 0:
        return Decimal("0.00")
    rate = _rate(vat_rate)
    return round_money(price - price / (1 + rate))


def resolve_unit_price(base_price, customer: Customer | None = None) -> Decimal:
    """
    Effective unit price for a line entering the cart.

    Customers flagged for special pricing get base * (1 - discountRate/100).
    Callers freeze the result on the CartLine; later customer changes do not
    reprice existing lines.
    """
    base = coerce_decimal("price", base_price)
    if customer is not None and customer.special_pricing and customer.discount_rate > 0:
        return base * (1 - customer.discount_rate / HUNDRED)
    return base


def compute_cart_totals(
    cart: Iterable[CartLine],
    discount_pct=0,
    vat_rate=DEFAULT_VAT_RATE,
) -> CartTotals:
    """
    Cart totals with an inclusive-VAT breakdown.

    subtotal        = sum(unit_price * quantity)
    discount_amount = subtotal * discount_pct / 100
    total           = subtotal - discount_amount
    """
    pct = validate_discount(discount_pct)
    rate = _rate(vat_rate)

    subtotal = sum((line.line_total for line in cart), Decimal("0"))
    discount_amount = subtotal * pct / HUNDRED
    total = subtotal - discount_amount
    price_before_vat = total / (1 + rate)
    total_vat = total - price_before_vat

    return CartTotals(
        subtotal=round_money(subtotal),
        discount_pct=pct,
        discount_amount=round_money(discount_amount),
        total=round_money(total),
        price_before_vat=round_money(price_before_vat),
        total_vat=round_money(total_vat),
        vat_rate=rate,
    )


def compute_item_vat(cart: Iterable[CartLine], vat_rate=DEFAULT_VAT_RATE) -> list[LineVAT]:
    """Per-line inclusive-VAT breakdown (cart-level discount is not spread over lines)."""
    rate = _rate(vat_rate)
    out: list[LineVAT] = []
    for line in cart:
        item_total = line.line_total
        before = item_total / (1 + rate)
        out.append(LineVAT(
            line=line,
            item_total=round_money(item_total),
            item_vat=round_money(item_total - before),
            item_price_before_vat=round_money(before),
            vat_rate=rate,
        ))
    return out


def pricing_metrics(selling_price, cost_price, vat_rate=DEFAULT_VAT_RATE) -> dict:
    """Profit, margin and markup for a product (stocking screens)."""
    selling = coerce_decimal("selling_price", selling_price)
    cost = coerce_decimal("cost_price", cost_price)

    profit = selling - cost if selling and cost else Decimal("0")
    margin = (selling - cost) / selling * HUNDRED if selling > 0 else Decimal("0")
    markup = (selling - cost) / cost * HUNDRED if cost > 0 else Decimal("0")

    return {
        "selling_price": round_money(selling),
        "cost_price": round_money(cost),
        "price_before_vat": calculate_price_before_vat(selling, vat_rate),
        "vat_amount": calculate_vat(selling, vat_rate),
        "vat_rate": _rate(vat_rate),
        "profit": round_money(profit),
        "margin": round_money(margin),
        "markup": round_money(markup),
    }
