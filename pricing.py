# pricing.py
"""
Order total computation shared by the server (authoritative) and the
counter device (display).

Each item is a mapping with:
    basePrice           price of one unit before discount
    quantity            positive integer
    taxRate             GST percentage
    gstType             "INCLUDE" (price carries GST) or "EXCLUDE"
    discountPercentage  0..100

Amounts are kept at full Decimal precision until the returned totals are
quantized to paise.
"""
from decimal import Decimal, InvalidOperation

from database import GstType, money
from errors import ValidationError

HUNDRED = Decimal("100")
ONE_PAISA = Decimal("0.01")


def normalize_gst_type(value) -> str:
    v = (value or GstType.EXCLUDE.value)
    v = str(v).strip().upper()
    return GstType.INCLUDE.value if "INCLUDE" in v else GstType.EXCLUDE.value


def _dec(value, field, index):
    try:
        return Decimal(str(value if value is not None else 0))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"items[{index}].{field} must be a number", fields={f"items[{index}].{field}": "invalid"})


def _line(item, index):
    base = _dec(item.get("basePrice"), "basePrice", index)
    rate = _dec(item.get("taxRate"), "taxRate", index)
    disc = _dec(item.get("discountPercentage"), "discountPercentage", index)
    try:
        qty = int(item.get("quantity") or 0)
    except (TypeError, ValueError):
        qty = 0

    if qty <= 0:
        raise ValidationError(f"items[{index}].quantity must be a positive integer", fields={f"items[{index}].quantity": "invalid"})
    if base < 0:
        raise ValidationError(f"items[{index}].basePrice must be >= 0", fields={f"items[{index}].basePrice": "invalid"})
    if rate < 0:
        raise ValidationError(f"items[{index}].taxRate must be >= 0", fields={f"items[{index}].taxRate": "invalid"})
    if disc < 0 or disc > HUNDRED:
        raise ValidationError(f"items[{index}].discountPercentage must be between 0 and 100", fields={f"items[{index}].discountPercentage": "invalid"})

    return base, Decimal(qty), rate, disc, normalize_gst_type(item.get("gstType"))


def line_amounts(item, index=0):
    """Return (taxable, gst, discount) for one item at full precision."""
    base, qty, rate, disc, gst_type = _line(item, index)
    unit = base * (1 - disc / HUNDRED)
    line = unit * qty
    if gst_type == GstType.INCLUDE.value:
        taxable = line / (1 + rate / HUNDRED)
        gst = line - taxable
    else:
        taxable = line
        gst = line * rate / HUNDRED
    discount = base * disc / HUNDRED * qty
    return taxable, gst, discount


def calculate_order_totals(items):
    subtotal = Decimal("0")
    tax = Decimal("0")
    total_discount = Decimal("0")

    for i, item in enumerate(items or []):
        taxable, gst, discount = line_amounts(item, i)
        subtotal += taxable
        tax += gst
        total_discount += discount

    total = subtotal + tax
    rounded_tax = money(tax)
    cgst = money(rounded_tax / 2)
    return {
        "subtotal": money(subtotal),
        "tax": rounded_tax,
        "cgst": cgst,
        "sgst": rounded_tax - cgst,
        "totalDiscount": money(total_discount),
        "total": money(total),
    }


def line_total(item) -> Decimal:
    taxable, gst, _ = line_amounts(item)
    return money(taxable + gst)


def totals_match(server_totals, client_totals, window=ONE_PAISA) -> bool:
    """True when every client-supplied figure is within `window` of the server's."""
    for key in ("subtotal", "tax", "total", "totalDiscount"):
        if client_totals.get(key) is None:
            continue
        try:
            client_value = Decimal(str(client_totals[key]))
        except (InvalidOperation, ValueError):
            return False
        if abs(client_value - server_totals[key]) > window:
            return False
    return True


def totals_to_json(totals):
    return {k: float(v) for k, v in totals.items()}
