"""
Money Engine

Pure bill arithmetic shared by the POS, billing dashboard and receipt
screens. The calculation order is fixed:

    1. per line:  subtotal = price x qty, discount capped at that subtotal
    2. sum lines: subtotal, item discount total, after-item-discount total
    3. bill discount, capped at the after-item-discount total
    4. taxable base = after-item-discount - bill discount (never below 0)
    5. tax = taxable base x tax rate
    6. service charge = taxable base x service rate (when enabled)
    7. grand total = taxable base + tax + service charge

Everything is computed in Decimal at full precision. Rounding to two
places happens only through BillTotals.rounded() / format_amount().

compute_bill() never raises. Garbage, negative or non-finite inputs are
clamped to zero so a half-filled form still renders a valid bill, and
oversized ones are capped at MAX_INPUT.
"""

from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, localcontext
from typing import Any, Iterable, Mapping, Optional, Union

from kot_engine.models import Bill, Discount, DiscountMode, Order, OrderItem

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")

# Largest price, quantity, rate or discount value accepted as input
MAX_INPUT = Decimal("1000000000")

DiscountLike = Union[Discount, Mapping[str, Any], None]
ItemLike = Union[OrderItem, Mapping[str, Any]]


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class LineTotals:
    """Computed amounts for one line item."""
    name: str
    line_subtotal: Decimal
    line_discount: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class BillTotals:
    """
    Full breakdown of a bill.

    Attributes:
        lines: Per-line amounts, in input order
        subtotal: Sum of price x quantity
        item_discount_total: Sum of capped line discounts
        after_item_discount: subtotal - item_discount_total
        bill_discount_amount: Capped bill-level discount
        taxable_base: Amount tax and service charge apply to
        tax: taxable_base x tax rate
        service_charge: taxable_base x service rate, or 0
        grand_total: taxable_base + tax + service_charge
    """
    lines: tuple[LineTotals, ...]
    subtotal: Decimal
    item_discount_total: Decimal
    after_item_discount: Decimal
    bill_discount_amount: Decimal
    taxable_base: Decimal
    tax: Decimal
    service_charge: Decimal
    grand_total: Decimal

    def rounded(self) -> "BillTotals":
        """Copy with every amount rounded to two decimals for display."""
        lines = tuple(
            LineTotals(
                name=line.name,
                line_subtotal=round_money(line.line_subtotal),
                line_discount=round_money(line.line_discount),
                line_total=round_money(line.line_total),
            )
            for line in self.lines
        )
        amounts = {
            f.name: round_money(getattr(self, f.name))
            for f in fields(self)
            if f.name != "lines"
        }
        return BillTotals(lines=lines, **amounts)

    def to_dict(self, rounded: bool = True) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization (amounts as strings)."""
        totals = self.rounded() if rounded else self
        data = {
            f.name: str(getattr(totals, f.name))
            for f in fields(totals)
            if f.name != "lines"
        }
        data["lines"] = [
            {
                "name": line.name,
                "line_subtotal": str(line.line_subtotal),
                "line_discount": str(line.line_discount),
                "line_total": str(line.line_total),
            }
            for line in totals.lines
        ]
        return data


# =============================================================================
# INPUT COERCION
# =============================================================================

def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        number = value
    elif value is None or isinstance(value, bool):
        return ZERO
    else:
        try:
            number = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            return ZERO
    if not number.is_finite():
        return ZERO
    return number


def _non_negative(value: Any) -> Decimal:
    number = _to_decimal(value)
    return number if number > ZERO else ZERO


def _bounded(value: Any) -> Decimal:
    return min(_non_negative(value), MAX_INPUT)


def _read(source: Any, *names: str) -> Any:
    for name in names:
        if isinstance(source, Mapping):
            if name in source:
                return source[name]
        elif hasattr(source, name):
            return getattr(source, name)
    return None


def _discount_parts(discount: Any) -> tuple[DiscountMode, Decimal]:
    if discount is None:
        return DiscountMode.FLAT, ZERO
    raw_mode = _read(discount, "mode")
    try:
        mode = DiscountMode(raw_mode) if raw_mode is not None else DiscountMode.FLAT
    except ValueError:
        mode = DiscountMode.FLAT
    return mode, _bounded(_read(discount, "value"))


def discount_amount(base: Decimal, discount: DiscountLike) -> Decimal:
    """
    Amount a discount takes off `base`, capped at `base`.

    Percent discounts take value% of the base; flat discounts take the
    value itself. The result is never negative and never exceeds base.
    """
    base = _non_negative(base)
    mode, value = _discount_parts(discount)
    if mode is DiscountMode.PERCENT:
        amount = base * value / HUNDRED
    else:
        amount = value
    return min(base, amount)


def _line_totals(item: Any) -> LineTotals:
    price = _bounded(_read(item, "unit_price", "price", "unitPrice"))
    quantity = _bounded(_read(item, "quantity", "qty"))
    line_subtotal = price * quantity
    line_discount = discount_amount(
        line_subtotal,
        _read(item, "line_discount", "lineDiscount"),
    )
    name = _read(item, "name")
    return LineTotals(
        name=str(name) if name is not None else "Item",
        line_subtotal=line_subtotal,
        line_discount=line_discount,
        line_total=line_subtotal - line_discount,
    )


# =============================================================================
# PUBLIC API
# =============================================================================

def compute_bill(
    items: Optional[Iterable[ItemLike]],
    bill_discount: DiscountLike = None,
    tax_rate: Any = ZERO,
    service_charge_enabled: bool = False,
    service_charge_rate: Any = ZERO,
) -> BillTotals:
    """
    Compute the monetary totals of a bill.

    Args:
        items: OrderItem models or mappings (price/qty keys accepted)
        bill_discount: Discount applied after line discounts
        tax_rate: Decimal rate, e.g. 0.18 for 18% GST
        service_charge_enabled: Whether to apply the service charge
        service_charge_rate: Decimal rate, e.g. 0.10

    Returns:
        BillTotals at full precision

    Example:
        >>> totals = compute_bill(
        ...     [{"price": 100, "qty": 2,
        ...       "line_discount": {"mode": "PERCENT", "value": 10}}],
        ...     bill_discount={"mode": "FLAT", "value": 20},
        ...     tax_rate="0.18",
        ... )
        >>> totals.grand_total
        Decimal('188.80')
    """
    lines = tuple(_line_totals(item) for item in (items or ()))

    subtotal = sum((line.line_subtotal for line in lines), ZERO)
    item_discount_total = sum((line.line_discount for line in lines), ZERO)
    after_item_discount = sum((line.line_total for line in lines), ZERO)

    bill_discount_amount = discount_amount(after_item_discount, bill_discount)
    taxable_base = max(after_item_discount - bill_discount_amount, ZERO)

    tax = taxable_base * _bounded(tax_rate)
    service_charge = (
        taxable_base * _bounded(service_charge_rate)
        if service_charge_enabled
        else ZERO
    )

    return BillTotals(
        lines=lines,
        subtotal=subtotal,
        item_discount_total=item_discount_total,
        after_item_discount=after_item_discount,
        bill_discount_amount=bill_discount_amount,
        taxable_base=taxable_base,
        tax=tax,
        service_charge=service_charge,
        grand_total=taxable_base + tax + service_charge,
    )


def compute_bill_for(
    bill: Bill,
    order: Order,
    default_tax_rate: Any = ZERO,
    default_service_charge_rate: Any = ZERO,
    default_service_charge_enabled: bool = False,
) -> BillTotals:
    """Compute totals for a bill/order pair, falling back to configured defaults."""
    tax_rate = bill.tax_rate if bill.tax_rate is not None else default_tax_rate
    service_rate = (
        bill.service_charge_rate
        if bill.service_charge_rate is not None
        else default_service_charge_rate
    )
    return compute_bill(
        order.items,
        bill_discount=bill.bill_discount,
        tax_rate=tax_rate,
        service_charge_enabled=(
            bill.service_charge_enabled
            if bill.service_charge_enabled is not None
            else default_service_charge_enabled
        ),
        service_charge_rate=service_rate,
    )


def round_money(amount: Any) -> Decimal:
    """Round to two decimals, half-up."""
    with localcontext() as ctx:
        ctx.prec = 60
        return _to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(amount: Any, symbol: str = "₹") -> str:
    """
    Format an amount for display.

    Example:
        >>> format_amount(Decimal("1250"))
        '₹1,250.00'
    """
    return f"{symbol}{round_money(amount):,.2f}"
