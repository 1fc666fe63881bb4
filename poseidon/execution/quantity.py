from __future__ import annotations

from decimal import Decimal, ROUND_DOWN


def _to_decimal(x) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def floor_to_lot(qty: float, lot_size) -> Decimal:
    """
    Round quantity DOWN to the nearest multiple of lot_size.
    A non-positive lot_size leaves the quantity untouched.
    """
    q = _to_decimal(qty)
    lot = _to_decimal(lot_size)
    if lot <= 0:
        return q
    return (q / lot).to_integral_value(rounding=ROUND_DOWN) * lot


def _float_quantize(value: Decimal, step) -> float:
    """
    Convert Decimal -> float but quantize to the step's decimal places
    so 0.1-style lot sizes don't leak float noise into order quantities.
    """
    step_d = _to_decimal(step)
    if step_d <= 0:
        return float(value)
    places = max(0, -step_d.as_tuple().exponent)
    return float(value.quantize(Decimal("1").scaleb(-places)))


def round_qty(qty: float, lot_size: float = 1.0, min_size: float = 0.0) -> float:
    """
    Contract quantity for a reduce order: floored to lot_size, then lifted to min_size.
    Returns 0.0 for non-positive or non-numeric input.
    """
    try:
        q = float(qty)
    except (TypeError, ValueError):
        return 0.0
    if not (q > 0):
        return 0.0
    stepped = _float_quantize(floor_to_lot(q, lot_size), lot_size)
    return max(float(min_size or 0.0), stepped)


def subtract_qty(size: float, qty: float) -> float:
    """size - qty without binary float drift (2.5 + 1.875 style fills stay exact)."""
    out = _to_decimal(size) - _to_decimal(qty)
    if out < 0:
        return 0.0
    return float(out)
