# orders.py
"""
Order intake and payment-state transitions.

Orders come in through one entry point, `create_order`, from three
channels:

    counter   staff at the POS or a kiosk    source pos | kiosk
    customer  in-seat QR ordering            source qr_order (default), qr_code,
                                             online, web, app, customer

Prices, tax and discounts are snapshotted from the catalog and totals are
recomputed here; whatever totals the client sends are only compared.
`clientRef` (the offline queue's queueId) makes intake idempotent per tenant.

Status moves pending -> paid | failed | cancelled and never leaves a
terminal state. Events are emitted after the commit that made them true.
"""
import logging
from collections import defaultdict
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

import access
import catalog
import qr_codes
import stock
from database import (
    db, now_utc, money, iso,
    Tenant, Order, OrderItem, Product, Category,
    OrderSource, PaymentStatus, ONLINE_SOURCES, COUNTER_SOURCES, TERMINAL_PAYMENT_STATUSES,
)
from errors import ValidationError, NotFoundError, ConflictError, AuthorizationError
from events import bus, ORDER_CREATED, ORDER_PAID, ORDER_FAILED, ORDER_CANCELLED
from pricing import calculate_order_totals, totals_match, line_total, totals_to_json

logger = logging.getLogger(__name__)

NUMBER_PAD = 4
NUMBER_RETRIES = 5
COUNTER_PAGES = ("pos", "orders")
CASH_METHODS = {"cash"}


def order_prefix(tenant: Tenant) -> str:
    prefix = (tenant.setting("orderPrefix") or "").strip()
    if prefix:
        return prefix
    name = (tenant.name or "").strip()
    if len(name) >= 2:
        return name[:2].upper()
    if len(name) == 1:
        return (name * 2).upper()
    return "OR"


def _next_sequence(tenant_id) -> int:
    current = db.session.query(func.max(Order.sequence)).filter(Order.tenant_id == tenant_id).scalar()
    return int(current or 0) + 1


def _channel(principal, requested_source):
    """Pick the order source from who is calling and what they asked for."""
    src = (requested_source or "").strip().lower() or None
    staff = (
        principal is not None
        and getattr(principal, "is_authenticated", False)
        and access.norm_role(getattr(principal, "role", "")) != access.CUSTOMER_ROLE
    )
    if staff:
        if src is None:
            return OrderSource.POS.value
        if src not in COUNTER_SOURCES:
            raise ValidationError(f"Staff orders must use source pos or kiosk, got '{src}'", fields={"source": "invalid"})
        return src
    if src is None:
        return OrderSource.QR_ORDER.value
    if src not in ONLINE_SOURCES:
        raise ValidationError(f"Customer orders cannot use source '{src}'", fields={"source": "invalid"})
    return src


def _authorize(principal, tenant_id, source):
    if source in COUNTER_SOURCES:
        access.ensure_tenant_scope(principal, tenant_id)
        if not any(access.can_use_page(principal, page) for page in COUNTER_PAGES):
            raise AuthorizationError("Your role cannot place counter orders")
    elif principal is not None and getattr(principal, "is_authenticated", False):
        if not getattr(principal, "is_super_admin", False) and int(principal.tenant_id) != int(tenant_id):
            raise AuthorizationError("You do not have access to this theater")


def _quantity(value, index):
    try:
        qty = int(value)
    except (TypeError, ValueError):
        qty = 0
    if qty <= 0 or str(value).strip() not in (str(qty), f"{qty}.0"):
        raise ValidationError(f"items[{index}].quantity must be a positive integer",
                              fields={f"items[{index}].quantity": "invalid"})
    return qty


def resolve_items(tenant_id, raw_items):
    """Turn draft lines into OrderItem rows plus the units each product consumes."""
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Order must contain at least one item", fields={"items": "required"})

    categories = {c.id: c.name for c in Category.query.filter_by(tenant_id=int(tenant_id)).all()}
    lines = []
    demand = defaultdict(int)

    for i, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{i}] must be an object", fields={f"items[{i}]": "invalid"})
        qty = _quantity(raw.get("quantity"), i)
        note = (raw.get("note") or raw.get("specialInstructions") or "").strip() or None

        if raw.get("comboId") not in (None, ""):
            try:
                combo = catalog.get_combo(tenant_id, raw["comboId"])
            except NotFoundError:
                raise ValidationError(f"items[{i}]: unknown combo", fields={f"items[{i}].comboId": "unknown"})
            if not combo.is_active:
                raise ValidationError(f"items[{i}]: combo '{combo.name}' is not available",
                                      fields={f"items[{i}].comboId": "inactive"})
            for comp in combo.items or []:
                demand[int(comp["productId"])] += comp["quantity"] * qty
            lines.append(OrderItem(
                combo_id=combo.id,
                components=list(combo.items or []),
                name_snapshot=combo.name,
                category_snapshot="Combo",
                quantity=qty,
                unit_price=money(combo.offer_price),
                tax_rate=combo.tax_rate,
                gst_type=combo.gst_type,
                discount_percentage=combo.discount_percentage,
                note=note,
            ))
            continue

        pid = raw.get("productId")
        if pid in (None, ""):
            raise ValidationError(f"items[{i}].productId is required", fields={f"items[{i}].productId": "required"})
        try:
            product = catalog.get_product(tenant_id, pid)
        except (NotFoundError, ValueError, TypeError):
            raise ValidationError(f"items[{i}]: unknown product", fields={f"items[{i}].productId": "unknown"})
        if not product.is_active or not product.is_available:
            raise ValidationError(f"items[{i}]: '{product.name}' is not available",
                                  fields={f"items[{i}].productId": "inactive"})

        size = (raw.get("size") or "").strip() or None
        unit_price = product.base_price
        if size:
            variant = catalog.find_variant(product, size)
            if variant is None:
                raise ValidationError(f"items[{i}]: '{product.name}' has no size '{size}'",
                                      fields={f"items[{i}].size": "unknown"})
            size = variant["size"]
            unit_price = Decimal(str(variant["price"]))

        demand[product.id] += qty
        lines.append(OrderItem(
            product_id=product.id,
            components=[],
            name_snapshot=product.name,
            category_snapshot=categories.get(product.category_id),
            size=size,
            quantity=qty,
            unit_price=money(unit_price),
            tax_rate=product.tax_rate,
            gst_type=product.gst_type,
            discount_percentage=product.discount_percentage,
            note=note,
        ))

    return lines, dict(demand)


def check_stock(tenant_id, demand: dict):
    """Reject when a stock-tracked product is short in the cafe ledger."""
    if not demand:
        return
    tracked = {
        p.id: p for p in Product.query.filter(Product.tenant_id == int(tenant_id), Product.id.in_(list(demand))).all()
        if p.track_stock
    }
    balances = stock.balances_for(tenant_id, list(tracked), source="cafe")
    short = {}
    for pid, p in tracked.items():
        have = balances.get(pid, Decimal("0"))
        if Decimal(demand[pid]) > have:
            short[str(pid)] = f"{p.name}: requested {demand[pid]}, available {float(have):g}"
    if short:
        raise ConflictError("Some items are out of stock", code="OUT_OF_STOCK", fields=short)


def pricing_items(lines):
    return [
        {
            "basePrice": li.unit_price,
            "quantity": li.quantity,
            "taxRate": li.tax_rate,
            "gstType": li.gst_type,
            "discountPercentage": li.discount_percentage,
        }
        for li in lines
    ]


def _find_by_client_ref(tenant_id, client_ref):
    return Order.query.filter_by(tenant_id=int(tenant_id), client_ref=client_ref).first()


def create_order(tenant_id, draft: dict, principal=None):
    """Create an order. Returns (order, created); created is False when
    `clientRef`/`queueId` matched an order that already exists."""
    tenant = db.session.get(Tenant, int(tenant_id))
    if not tenant or not tenant.is_active:
        raise NotFoundError("Theater not found")

    source = _channel(principal, draft.get("source") or draft.get("orderType"))
    _authorize(principal, tenant.id, source)

    client_ref = str(draft.get("queueId") or draft.get("clientRef") or "").strip() or None
    if client_ref:
        existing = _find_by_client_ref(tenant.id, client_ref)
        if existing:
            logger.info("order %s replayed by client ref %s", existing.order_number, client_ref)
            return existing, False

    qr_name, seat = draft.get("qrName"), draft.get("seat")
    if source in ONLINE_SOURCES:
        qr_name, seat = qr_codes.resolve_seat(tenant.id, qr_name, seat)

    lines, demand = resolve_items(tenant.id, draft.get("items"))
    check_stock(tenant.id, demand)

    totals = calculate_order_totals(pricing_items(lines))
    client_totals = draft.get("totals") or draft.get("pricing") or {}
    adjusted = bool(client_totals) and not totals_match(totals, client_totals)
    if adjusted:
        logger.warning("tenant %s: client totals %s replaced by server totals %s",
                       tenant.id, client_totals, totals_to_json(totals))

    customer = draft.get("customer") or draft.get("customerInfo") or {}
    method = (draft.get("paymentMethod") or ("cash" if source in COUNTER_SOURCES else "online")).strip().lower()
    created_by = getattr(principal, "id", None) if source in COUNTER_SOURCES else None

    order = None
    for attempt in range(NUMBER_RETRIES):
        seq = _next_sequence(tenant.id)
        order = Order(
            tenant_id=tenant.id,
            sequence=seq,
            order_number=f"{order_prefix(tenant)}{str(seq).zfill(NUMBER_PAD)}",
            source=source,
            client_ref=client_ref,
            customer_name=(customer.get("name") or draft.get("customerName") or "").strip() or None,
            customer_phone=(customer.get("phone") or draft.get("customerPhone") or "").strip() or None,
            qr_name=qr_name or None,
            seat=seat or None,
            notes=(draft.get("notes") or draft.get("specialInstructions") or "").strip() or None,
            created_by_id=int(created_by) if isinstance(created_by, int) else None,
            subtotal=totals["subtotal"],
            tax=totals["tax"],
            total_discount=totals["totalDiscount"],
            total=totals["total"],
            payment_method=method,
            payment_status=PaymentStatus.PENDING.value,
        )
        db.session.add(order)
        try:
            db.session.flush()
            for li in lines:
                li.order_id = order.id
                db.session.add(li)
            db.session.commit()
            break
        except IntegrityError:
            db.session.rollback()
            if client_ref:
                existing = _find_by_client_ref(tenant.id, client_ref)
                if existing:
                    return existing, False
            lines = [_clone_line(li) for li in lines]
            logger.info("order number %s taken, retrying (%s)", seq, attempt + 1)
    else:
        raise ConflictError("Could not allocate an order number, please retry")

    order.totals_adjusted = adjusted
    logger.info("order %s created for tenant %s source=%s total=%s", order.order_number, tenant.id, source, order.total)
    bus.emit(ORDER_CREATED, event_payload(order))

    if source in COUNTER_SOURCES and method in CASH_METHODS:
        mark_paid(order, provider="cash")
    return order, True


def _clone_line(li: OrderItem) -> OrderItem:
    return OrderItem(
        product_id=li.product_id, combo_id=li.combo_id, components=list(li.components or []),
        name_snapshot=li.name_snapshot, category_snapshot=li.category_snapshot, size=li.size,
        quantity=li.quantity, unit_price=li.unit_price, tax_rate=li.tax_rate, gst_type=li.gst_type,
        discount_percentage=li.discount_percentage, note=li.note,
    )


def order_items(order: Order):
    return OrderItem.query.filter_by(order_id=order.id).order_by(OrderItem.id.asc()).all()


def consumption(order: Order) -> dict:
    used = defaultdict(int)
    for li in order_items(order):
        if li.combo_id:
            for comp in li.components or []:
                used[int(comp["productId"])] += comp["quantity"] * li.quantity
        elif li.product_id:
            used[li.product_id] += li.quantity
    return dict(used)


def event_payload(order: Order) -> dict:
    return {
        "orderId": order.id,
        "tenantId": order.tenant_id,
        "orderNumber": order.order_number,
        "source": order.source,
        "paymentStatus": order.payment_status,
        "total": float(order.total or 0),
    }


def _not_pending(order: Order):
    return ConflictError(f"Order is already {order.payment_status}", code="ORDER_NOT_PENDING")


def _claim(order: Order, to_status, **values) -> bool:
    """Move the row out of pending with one conditional UPDATE.

    Only the caller whose UPDATE matched gets True; a concurrent worker that
    lost the race sees the refreshed status instead.
    """
    values.update(payment_status=to_status, updated_at=now_utc())
    claimed = (
        Order.query
        .filter(Order.id == order.id, Order.payment_status == PaymentStatus.PENDING.value)
        .update(values, synchronize_session=False)
    )
    db.session.refresh(order)
    return claimed == 1


def mark_paid(order: Order, provider=None, provider_payment_id=None):
    """pending -> paid: consume cafe stock and emit order.paid. Returns False
    when the order was already paid, so callers stay idempotent."""
    values = {"payment_provider": provider or order.payment_provider, "paid_at": now_utc()}
    if provider_payment_id:
        values["provider_payment_id"] = provider_payment_id
    if not _claim(order, PaymentStatus.PAID.value, **values):
        if order.payment_status in (PaymentStatus.PAID.value, PaymentStatus.COMPLETED.value):
            return False
        raise _not_pending(order)

    for pid, qty in consumption(order).items():
        if db.session.get(Product, pid) is not None:
            stock.record_usage(order.tenant_id, pid, qty, source="cafe")
    db.session.commit()
    logger.info("order %s paid via %s", order.order_number, order.payment_provider)
    bus.emit(ORDER_PAID, event_payload(order))
    return True


def mark_failed(order: Order, reason=None):
    if not _claim(order, PaymentStatus.FAILED.value, cancelled_reason=(reason or "")[:300] or None):
        if order.payment_status == PaymentStatus.FAILED.value:
            return False
        raise _not_pending(order)
    db.session.commit()
    logger.info("order %s payment failed: %s", order.order_number, reason)
    bus.emit(ORDER_FAILED, event_payload(order))
    return True


def cancel_order(tenant_id, order_id, reason=None) -> Order:
    order = get_order(tenant_id, order_id)
    if not _claim(order, PaymentStatus.CANCELLED.value, cancelled_reason=(reason or "").strip()[:300] or None):
        raise _not_pending(order)
    db.session.commit()
    logger.info("order %s cancelled", order.order_number)
    bus.emit(ORDER_CANCELLED, event_payload(order))
    return order


def get_order(tenant_id, order_id) -> Order:
    try:
        order = db.session.get(Order, int(order_id))
    except (TypeError, ValueError):
        order = None
    if not order or order.tenant_id != int(tenant_id):
        raise NotFoundError("Order not found")
    return order


def list_orders(tenant_id, status=None, source=None, page=1, limit=20):
    query = Order.query.filter(Order.tenant_id == int(tenant_id))
    if status:
        query = query.filter(Order.payment_status == status.strip().lower())
    if source:
        wanted = {s.strip().lower() for s in source.split(",") if s.strip()}
        query = query.filter(Order.source.in_(wanted))
    try:
        page = max(1, int(page or 1))
        limit = max(1, min(100, int(limit or 20)))
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers")
    total = query.count()
    rows = query.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "items": [order_to_dict(o) for o in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


def item_to_dict(li: OrderItem) -> dict:
    return {
        "id": li.id,
        "productId": li.product_id,
        "comboId": li.combo_id,
        "components": li.components or [],
        "name": li.name_snapshot,
        "category": li.category_snapshot,
        "size": li.size,
        "quantity": li.quantity,
        "unitPrice": float(li.unit_price),
        "taxRate": float(li.tax_rate or 0),
        "gstType": li.gst_type,
        "discountPercentage": float(li.discount_percentage or 0),
        "note": li.note,
        "lineTotal": float(line_total({
            "basePrice": li.unit_price, "quantity": li.quantity, "taxRate": li.tax_rate,
            "gstType": li.gst_type, "discountPercentage": li.discount_percentage,
        })),
    }


def order_to_dict(order: Order) -> dict:
    tax = money(order.tax or 0)
    cgst = money(tax / 2)
    out = {
        "id": order.id,
        "tenantId": order.tenant_id,
        "orderNumber": order.order_number,
        "source": order.source,
        "queueId": order.client_ref,
        "items": [item_to_dict(li) for li in order_items(order)],
        "customer": {"name": order.customer_name, "phone": order.customer_phone},
        "qrName": order.qr_name,
        "seat": order.seat,
        "notes": order.notes,
        "subtotal": float(order.subtotal or 0),
        "tax": float(tax),
        "cgst": float(cgst),
        "sgst": float(tax - cgst),
        "totalDiscount": float(order.total_discount or 0),
        "total": float(order.total or 0),
        "payment": {
            "method": order.payment_method,
            "provider": order.payment_provider,
            "status": order.payment_status,
            "providerOrderId": order.provider_order_id,
            "transactionId": order.transaction_id,
            "paidAt": iso(order.paid_at),
        },
        "isTerminal": order.payment_status in TERMINAL_PAYMENT_STATUSES,
        "cancelledReason": order.cancelled_reason,
        "createdAt": iso(order.created_at),
        "updatedAt": iso(order.updated_at),
    }
    if getattr(order, "totals_adjusted", None) is not None:
        out["totalsAdjusted"] = order.totals_adjusted
    return out
