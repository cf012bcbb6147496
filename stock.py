# stock.py
"""
Monthly stock ledgers.

One row per (tenant, product, year, month) holds the month's day entries in
`stock_details`:

    {date, invordStock, expiredStock, damageStock, usedStock,
     carryForward, balance, recorded}

Entries are kept in date order and the chain is recomputed on every write:

    carryForward(d) = balance(previous entry), or the month opening
    balance(d)      = carryForward(d) + invord - used - expired - damage

The opening of a month is 0 unless the month has been bridged, in which case
it follows the previous month's closing balance.

The theater ledger (MonthlyStock) is the tenant-wide store; the cafe ledger
(CafeMonthlyStock) is what counter availability reads and what paid orders
consume.
"""
import copy
import logging
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from database import db, now_utc, dec3, MonthlyStock, CafeMonthlyStock, Product, save_json
from errors import ValidationError, NotFoundError, ConflictError

logger = logging.getLogger(__name__)

LEDGERS = {"theater": MonthlyStock, "cafe": CafeMonthlyStock}
MOVEMENT_FIELDS = ("invordStock", "expiredStock", "damageStock", "usedStock")


def ledger_model(source):
    src = (source or "theater").strip().lower()
    if src not in LEDGERS:
        raise ValidationError("stockSource must be 'theater' or 'cafe'", fields={"stockSource": "invalid"})
    return LEDGERS[src]


def parse_day(value) -> date:
    if value is None or value == "":
        return now_utc().date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError("date must be YYYY-MM-DD", fields={"date": "invalid"})


def _qty(value, field):
    try:
        q = Decimal(str(value if value not in (None, "") else 0))
    except Exception:
        raise ValidationError(f"{field} must be a number", fields={field: "invalid"})
    if q < 0:
        raise ValidationError(f"{field} must be >= 0", fields={field: "invalid"})
    return q


def _num(x) -> float:
    return float(dec3(x))


def _require_product(tenant_id, product_id) -> Product:
    p = db.session.get(Product, int(product_id))
    if not p or p.tenant_id != int(tenant_id):
        raise NotFoundError("Product not found")
    return p


def _find_doc(model, tenant_id, product_id, year, month):
    return model.query.filter_by(tenant_id=int(tenant_id), product_id=int(product_id), year=year, month=month).first()


def _get_or_create_doc(model, tenant_id, product_id, year, month):
    doc = _find_doc(model, tenant_id, product_id, year, month)
    if doc:
        return doc
    doc = model(
        tenant_id=int(tenant_id), product_id=int(product_id), year=year, month=month,
        opening_balance=0, bridged=False, stock_details=[], closing_balance=0,
    )
    db.session.add(doc)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        doc = _find_doc(model, tenant_id, product_id, year, month)
        if doc is None:
            raise
    return doc


def _prev_month(year, month):
    return (year - 1, 12) if month == 1 else (year, month - 1)


def _next_month(year, month):
    return (year + 1, 1) if month == 12 else (year, month + 1)


def recompute(doc):
    details = sorted(copy.deepcopy(doc.stock_details or []), key=lambda d: d["date"])
    carry = Decimal(str(doc.opening_balance or 0)) if doc.bridged else Decimal("0")
    for d in details:
        d["carryForward"] = _num(carry)
        balance = (
            carry
            + Decimal(str(d.get("invordStock") or 0))
            - Decimal(str(d.get("usedStock") or 0))
            - Decimal(str(d.get("expiredStock") or 0))
            - Decimal(str(d.get("damageStock") or 0))
        )
        d["balance"] = _num(balance)
        carry = balance
    save_json(doc, "stock_details", details)
    doc.closing_balance = dec3(carry)
    return doc


def _propagate(model, doc):
    """Push a changed closing balance into bridged later months."""
    year, month = doc.year, doc.month
    closing = doc.closing_balance
    while True:
        year, month = _next_month(year, month)
        nxt = _find_doc(model, doc.tenant_id, doc.product_id, year, month)
        if not nxt or not nxt.bridged:
            return
        nxt.opening_balance = closing
        recompute(nxt)
        closing = nxt.closing_balance


def _empty_detail(day: date):
    return {
        "date": day.isoformat(),
        "invordStock": 0.0, "expiredStock": 0.0, "damageStock": 0.0, "usedStock": 0.0,
        "carryForward": 0.0, "balance": 0.0, "recorded": False,
    }


def record_stock(tenant_id, product_id, day, fields: dict, source="theater") -> dict:
    """Record the explicit stock entry for one product and calendar day.

    A day that so far only carries order usage is merged into; a second
    explicit entry for the same day is rejected.
    """
    model = ledger_model(source)
    _require_product(tenant_id, product_id)
    day = parse_day(day)
    amounts = {f: _qty((fields or {}).get(f), f) for f in MOVEMENT_FIELDS}

    doc = _get_or_create_doc(model, tenant_id, product_id, day.year, day.month)
    details = copy.deepcopy(doc.stock_details or [])
    key = day.isoformat()
    entry = next((d for d in details if d["date"] == key), None)
    if entry and entry.get("recorded"):
        raise ConflictError(f"Stock for {key} is already recorded", fields={"date": "duplicate"})
    if entry is None:
        entry = _empty_detail(day)
        details.append(entry)

    for f, q in amounts.items():
        entry[f] = _num(Decimal(str(entry.get(f) or 0)) + q)
    entry["recorded"] = True

    save_json(doc, "stock_details", details)
    recompute(doc)
    _propagate(model, doc)
    db.session.commit()
    logger.info("%s stock recorded for product %s on %s", source, product_id, key)
    return next(d for d in doc.stock_details if d["date"] == key)


def record_usage(tenant_id, product_id, quantity, source="cafe", day=None):
    """Add consumed units to the day's entry. The caller commits."""
    model = ledger_model(source)
    day = parse_day(day)
    qty = _qty(quantity, "quantity")

    doc = _get_or_create_doc(model, tenant_id, product_id, day.year, day.month)
    details = copy.deepcopy(doc.stock_details or [])
    key = day.isoformat()
    entry = next((d for d in details if d["date"] == key), None)
    if entry is None:
        entry = _empty_detail(day)
        details.append(entry)
    entry["usedStock"] = _num(Decimal(str(entry.get("usedStock") or 0)) + qty)

    save_json(doc, "stock_details", details)
    recompute(doc)
    _propagate(model, doc)
    return doc


def _balance_on(doc, day: date):
    """(entry or None, balance carried into or produced on `day`)."""
    if doc is None:
        return None, Decimal("0")
    carry = Decimal(str(doc.opening_balance or 0)) if doc.bridged else Decimal("0")
    key = day.isoformat()
    for d in sorted(doc.stock_details or [], key=lambda x: x["date"]):
        if d["date"] == key:
            return d, Decimal(str(d.get("balance") or 0))
        if d["date"] > key:
            break
        carry = Decimal(str(d.get("balance") or 0))
    return None, carry


def balances_for(tenant_id, product_ids, source="cafe", day=None) -> dict:
    model = ledger_model(source)
    day = parse_day(day)
    ids = [int(i) for i in product_ids]
    if not ids:
        return {}
    docs = model.query.filter(
        model.tenant_id == int(tenant_id), model.year == day.year,
        model.month == day.month, model.product_id.in_(ids),
    ).all()
    by_product = {d.product_id: d for d in docs}
    return {pid: _balance_on(by_product.get(pid), day)[1] for pid in ids}


def current_balance(tenant_id, product_id, source="cafe", day=None) -> Decimal:
    return balances_for(tenant_id, [product_id], source, day).get(int(product_id), Decimal("0"))


def get_daily_balances(tenant_id, day=None, source="theater"):
    """Per-product figures for one day; products without an entry get zero movements."""
    model = ledger_model(source)
    day = parse_day(day)
    products = Product.query.filter_by(tenant_id=int(tenant_id)).order_by(Product.name.asc()).all()
    docs = model.query.filter_by(tenant_id=int(tenant_id), year=day.year, month=day.month).all()
    by_product = {d.product_id: d for d in docs}

    out = []
    for p in products:
        entry, balance = _balance_on(by_product.get(p.id), day)
        if entry:
            row = {
                "invordStock": entry.get("invordStock", 0.0),
                "expiredStock": entry.get("expiredStock", 0.0),
                "carryForward": entry.get("carryForward", 0.0),
                "usedStock": entry.get("usedStock", 0.0),
                "damageStock": entry.get("damageStock", 0.0),
                "balance": entry.get("balance", 0.0),
            }
        else:
            row = {
                "invordStock": 0.0, "expiredStock": 0.0, "usedStock": 0.0, "damageStock": 0.0,
                "carryForward": _num(balance), "balance": _num(balance),
            }
        row.update({"productId": p.id, "productName": p.name, "date": day.isoformat()})
        out.append(row)
    return out


def bridge_month(tenant_id, product_id, year, month, source="cafe") -> dict:
    model = ledger_model(source)
    _require_product(tenant_id, product_id)
    year, month = _year_month(year, month)

    py, pm = _prev_month(year, month)
    prev = _find_doc(model, tenant_id, product_id, py, pm)
    opening = prev.closing_balance if prev else Decimal("0")

    doc = _get_or_create_doc(model, tenant_id, product_id, year, month)
    doc.opening_balance = opening
    doc.bridged = True
    recompute(doc)
    _propagate(model, doc)
    db.session.commit()
    logger.info("%s stock for product %s bridged into %04d-%02d with %s", source, product_id, year, month, opening)
    return month_view(doc)


def _year_month(year, month):
    try:
        year, month = int(year), int(month)
    except (TypeError, ValueError):
        raise ValidationError("year and month must be integers", fields={"year": "invalid", "month": "invalid"})
    if not 1 <= month <= 12:
        raise ValidationError("month must be 1..12", fields={"month": "invalid"})
    return year, month


def get_month(tenant_id, product_id, year=None, month=None, source="cafe") -> dict:
    model = ledger_model(source)
    _require_product(tenant_id, product_id)
    today = now_utc().date()
    year, month = _year_month(year or today.year, month or today.month)
    doc = _find_doc(model, tenant_id, product_id, year, month)
    if doc is None:
        return {
            "tenantId": int(tenant_id), "productId": int(product_id), "year": year, "month": month,
            "openingBalance": 0.0, "bridged": False, "stockDetails": [], "closingBalance": 0.0,
        }
    return month_view(doc)


def month_view(doc) -> dict:
    return {
        "tenantId": doc.tenant_id,
        "productId": doc.product_id,
        "year": doc.year,
        "month": doc.month,
        "openingBalance": _num(doc.opening_balance or 0),
        "bridged": bool(doc.bridged),
        "stockDetails": sorted(doc.stock_details or [], key=lambda d: d["date"]),
        "closingBalance": _num(doc.closing_balance or 0),
    }
