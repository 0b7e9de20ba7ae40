"""
Estimate calculation service.

Pure derivation functions: cost -> markup -> unit price -> margin -> totals.
Every derived figure is a function of (cost, markup_percentage, quantity)
and the contingency percentage; nothing else may set them.
All arithmetic is done with Decimal. A percentage computed against a zero
denominator is 0.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional

ZERO = Decimal('0')
HUNDRED = Decimal('100')
CENTS = Decimal('0.01')
PERCENT_PLACES = Decimal('0.01')
QUANTITY_PLACES = Decimal('0.001')


def to_decimal(value: Any, default: Decimal = ZERO, field: str = 'value') -> Decimal:
    """
    Convert form input to Decimal.

    None and blank strings fall back to `default`.

    Raises:
        ValueError: if the value is not numeric
    """
    if value is None:
        return default
    if isinstance(value, Decimal):
        result = value
    else:
        text = str(value).strip()
        if not text:
            return default
        try:
            result = Decimal(text)
        except (InvalidOperation, ValueError):
            raise ValueError(f"{field} must be numeric, got '{value}'")
    if not result.is_finite():
        raise ValueError(f"{field} must be a finite number, got '{value}'")
    return result


def money(value: Decimal) -> Decimal:
    """Round to cents for storage."""
    return value.quantize(CENTS)


def _percentage_of(part: Decimal, whole: Decimal) -> Decimal:
    if whole > 0:
        return part / whole * HUNDRED
    return ZERO


def item_inputs(item: Any) -> Dict[str, Decimal]:
    """Read (cost, markup_percentage, quantity) from a mapping or an object."""
    if isinstance(item, dict):
        get = item.get
    else:
        get = lambda name, default=None: getattr(item, name, default)  # noqa: E731
    return {
        'cost': to_decimal(get('cost'), field='cost'),
        'markup_percentage': to_decimal(get('markup_percentage'), field='markup_percentage'),
        'quantity': to_decimal(get('quantity'), default=Decimal('1'), field='quantity'),
    }


def quantize_inputs(cost: Any, markup_percentage: Any, quantity: Any = 1) -> Dict[str, Decimal]:
    """
    Line item inputs rounded to the precision of the estimate_items columns
    (cost to cents, markup to 0.01, quantity to 0.001).

    Derived figures of a stored row must be computed from these values.
    """
    return {
        'cost': money(to_decimal(cost, field='cost')),
        'markup_percentage': to_decimal(markup_percentage, field='markup_percentage').quantize(PERCENT_PLACES),
        'quantity': to_decimal(quantity, default=Decimal('1'), field='quantity').quantize(QUANTITY_PLACES),
    }


def calculate_line_item(cost: Any, markup_percentage: Any, quantity: Any = 1) -> Dict[str, Decimal]:
    """
    Derived figures for one line item.

    Returns:
        Dict with markup_amount (per unit), unit_price, total_price,
        gross_margin and gross_margin_percentage.
    """
    cost = to_decimal(cost, field='cost')
    markup_percentage = to_decimal(markup_percentage, field='markup_percentage')
    quantity = to_decimal(quantity, default=Decimal('1'), field='quantity')

    markup_amount = cost * markup_percentage / HUNDRED
    unit_price = cost + markup_amount
    total_price = unit_price * quantity
    gross_margin = (unit_price - cost) * quantity

    return {
        'markup_amount': markup_amount,
        'unit_price': unit_price,
        'total_price': total_price,
        'gross_margin': gross_margin,
        'gross_margin_percentage': _percentage_of(unit_price - cost, unit_price),
    }


def calculate_contingency(subtotal: Any, contingency_percentage: Any) -> Dict[str, Decimal]:
    """Contingency amount and grand total for a known subtotal."""
    subtotal = to_decimal(subtotal, field='subtotal')
    contingency_percentage = to_decimal(contingency_percentage, field='contingency_percentage')
    contingency_amount = subtotal * contingency_percentage / HUNDRED
    return {
        'contingency_amount': contingency_amount,
        'grand_total': subtotal + contingency_amount,
    }


def calculate_estimate_totals(items: Iterable[Any], contingency_percentage: Any = 0) -> Dict[str, Decimal]:
    """
    Aggregate totals for a list of line items.

    Items may be dicts or objects exposing cost, markup_percentage and
    quantity (draft items and persisted rows both qualify).
    """
    total_cost = ZERO
    total_markup = ZERO
    subtotal = ZERO
    total_gross_margin = ZERO

    for item in items:
        inputs = item_inputs(item)
        figures = calculate_line_item(**inputs)
        total_cost += inputs['cost'] * inputs['quantity']
        total_markup += figures['markup_amount'] * inputs['quantity']
        subtotal += figures['total_price']
        total_gross_margin += figures['gross_margin']

    totals = {
        'total_cost': total_cost,
        'total_markup': total_markup,
        'subtotal': subtotal,
        'total_gross_margin': total_gross_margin,
        'overall_margin_percentage': _percentage_of(total_gross_margin, subtotal),
    }
    totals.update(calculate_contingency(subtotal, contingency_percentage))
    return totals


def serialize_figures(figures: Optional[Dict[str, Decimal]], places: Decimal = CENTS) -> Dict[str, str]:
    """Render a figures dict as strings for JSON responses."""
    if not figures:
        return {}
    return {key: str(value.quantize(places)) for key, value in figures.items()}
