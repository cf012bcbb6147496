# catalog.py
import logging
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import IntegrityError

import stock
from database import db, now_utc, money, iso, Category, KioskType, Product, ComboOffer
from errors import ValidationError, NotFoundError, ConflictError
from pricing import normalize_gst_type
from storage import is_data_uri, decode_data_uri

logger = logging.getLogger(__name__)

STOCK_SOURCES = ("theater", "cafe")
MAX_PAGE_SIZE = 200


def _decimal(value, field, minimum=None, maximum=None, default="0"):
    try:
        d = Decimal(str(value if value not in (None, "") else default))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", fields={field: "invalid"})
    if minimum is not None and d < minimum:
        raise ValidationError(f"{field} must be >= {minimum}", fields={field: "invalid"})
    if maximum is not None and d > maximum:
        raise ValidationError(f"{field} must be <= {maximum}", fields={field: "invalid"})
    return d


def _page_args(page, limit):
    try:
        page = max(1, int(page or 1))
        limit = max(1, min(MAX_PAGE_SIZE, int(limit or 50)))
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers")
    return page, limit


def _store_images(storage, images, folder):
    if images is None:
        return []
    if isinstance(images, str):
        images = [images]
    out = []
    for img in images:
        if is_data_uri(img):
            raw, mime = decode_data_uri(img)
            out.append(storage.upload(raw, mime, folder))
        elif isinstance(img, str) and img.strip():
            out.append(img.strip())
    return out


# ---------------------------
# Categories and kiosk types
# ---------------------------

def _create_named(model, tenant_id, data, label):
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError(f"{label} name required", fields={"name": "required"})
    if model.query.filter(model.tenant_id == int(tenant_id), db.func.lower(model.name) == name.lower()).first():
        raise ConflictError(f"{label} name already exists")

    row = model(tenant_id=int(tenant_id), name=name, sort_order=int(data.get("sortOrder") or 0),
                is_active=bool(data.get("isActive", True)))
    if model is Category:
        row.image_url = (data.get("imageUrl") or "").strip() or None
    db.session.add(row)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"{label} name already exists")
    return row


def _get_named(model, tenant_id, row_id, label):
    row = db.session.get(model, int(row_id))
    if not row or row.tenant_id != int(tenant_id):
        raise NotFoundError(f"{label} not found")
    return row


def _update_named(model, tenant_id, row_id, patch, label):
    row = _get_named(model, tenant_id, row_id, label)
    if "name" in patch:
        name = (patch.get("name") or "").strip()
        if not name:
            raise ValidationError(f"{label} name required", fields={"name": "required"})
        other = model.query.filter(model.tenant_id == row.tenant_id, db.func.lower(model.name) == name.lower(),
                                   model.id != row.id).first()
        if other:
            raise ConflictError(f"{label} name already exists")
        row.name = name
    if "sortOrder" in patch:
        row.sort_order = int(patch.get("sortOrder") or 0)
    if "isActive" in patch:
        row.is_active = bool(patch["isActive"])
    if model is Category and "imageUrl" in patch:
        row.image_url = (patch.get("imageUrl") or "").strip() or None
    db.session.commit()
    return row


def _delete_named(model, tenant_id, row_id, label, fk):
    row = _get_named(model, tenant_id, row_id, label)
    if Product.query.filter(fk == row.id).first():
        raise ConflictError(f"{label} still has products")
    db.session.delete(row)
    db.session.commit()
    return row


def list_categories(tenant_id):
    return Category.query.filter_by(tenant_id=int(tenant_id)).order_by(Category.sort_order.asc(), Category.name.asc()).all()


def create_category(tenant_id, data):
    return _create_named(Category, tenant_id, data, "Category")


def update_category(tenant_id, category_id, patch):
    return _update_named(Category, tenant_id, category_id, patch, "Category")


def delete_category(tenant_id, category_id):
    return _delete_named(Category, tenant_id, category_id, "Category", Product.category_id)


def list_kiosk_types(tenant_id):
    return KioskType.query.filter_by(tenant_id=int(tenant_id)).order_by(KioskType.sort_order.asc(), KioskType.name.asc()).all()


def create_kiosk_type(tenant_id, data):
    return _create_named(KioskType, tenant_id, data, "Kiosk type")


def update_kiosk_type(tenant_id, kiosk_type_id, patch):
    return _update_named(KioskType, tenant_id, kiosk_type_id, patch, "Kiosk type")


def delete_kiosk_type(tenant_id, kiosk_type_id):
    return _delete_named(KioskType, tenant_id, kiosk_type_id, "Kiosk type", Product.kiosk_type_id)


# ---------------------------
# Products
# ---------------------------

def _variants(value):
    if value in (None, ""):
        return []
    if not isinstance(value, list):
        raise ValidationError("variants must be a list", fields={"variants": "invalid"})
    out, seen = [], set()
    for i, v in enumerate(value):
        size = (v.get("size") or "").strip() if isinstance(v, dict) else ""
        if not size:
            raise ValidationError(f"variants[{i}].size is required", fields={f"variants[{i}].size": "required"})
        if size.lower() in seen:
            raise ValidationError(f"Duplicate variant size '{size}'", fields={f"variants[{i}].size": "duplicate"})
        seen.add(size.lower())
        price = _decimal(v.get("price"), f"variants[{i}].price", minimum=0)
        out.append({"size": size, "price": float(money(price))})
    return out


def _pricing(data, current=None):
    """Accept either a nested `pricing` object or flat fields."""
    src = dict(data.get("pricing") or {})
    for k in ("basePrice", "taxRate", "discountPercentage", "gstType"):
        if k in data and k not in src:
            src[k] = data[k]
    cur = current or {}
    return {
        "base_price": money(_decimal(src.get("basePrice", cur.get("basePrice")), "basePrice", minimum=0)),
        "tax_rate": _decimal(src.get("taxRate", cur.get("taxRate")), "taxRate", minimum=0),
        "discount_percentage": _decimal(src.get("discountPercentage", cur.get("discountPercentage")),
                                        "discountPercentage", minimum=0, maximum=100),
        "gst_type": normalize_gst_type(src.get("gstType", cur.get("gstType"))),
    }


def _check_refs(tenant_id, category_id, kiosk_type_id):
    if category_id not in (None, ""):
        _get_named(Category, tenant_id, category_id, "Category")
    if kiosk_type_id not in (None, ""):
        _get_named(KioskType, tenant_id, kiosk_type_id, "Kiosk type")


def get_product(tenant_id, product_id) -> Product:
    p = db.session.get(Product, int(product_id))
    if not p or p.tenant_id != int(tenant_id):
        raise NotFoundError("Product not found")
    return p


def create_product(tenant_id, data: dict, storage) -> Product:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Product name required", fields={"name": "required"})
    _check_refs(tenant_id, data.get("categoryId"), data.get("kioskTypeId"))
    pricing = _pricing(data)
    variants = _variants(data.get("variants"))
    images = _store_images(storage, data.get("images"), "products")

    p = Product(
        tenant_id=int(tenant_id),
        category_id=int(data["categoryId"]) if data.get("categoryId") not in (None, "") else None,
        kiosk_type_id=int(data["kioskTypeId"]) if data.get("kioskTypeId") not in (None, "") else None,
        name=name,
        description=(data.get("description") or "").strip() or None,
        images=images,
        variants=variants,
        is_active=bool(data.get("isActive", True)),
        is_available=bool(data.get("isAvailable", True)),
        track_stock=bool(data.get("trackStock", True)),
        **pricing,
    )
    db.session.add(p)
    db.session.commit()
    return p


def update_product(tenant_id, product_id, patch: dict, storage) -> Product:
    p = get_product(tenant_id, product_id)
    if "categoryId" in patch or "kioskTypeId" in patch:
        _check_refs(tenant_id, patch.get("categoryId"), patch.get("kioskTypeId"))

    if "name" in patch:
        name = (patch.get("name") or "").strip()
        if not name:
            raise ValidationError("Product name required", fields={"name": "required"})
        p.name = name
    if "description" in patch:
        p.description = (patch.get("description") or "").strip() or None
    if "categoryId" in patch:
        p.category_id = int(patch["categoryId"]) if patch["categoryId"] not in (None, "") else None
    if "kioskTypeId" in patch:
        p.kiosk_type_id = int(patch["kioskTypeId"]) if patch["kioskTypeId"] not in (None, "") else None
    if "pricing" in patch or any(k in patch for k in ("basePrice", "taxRate", "discountPercentage", "gstType")):
        for attr, value in _pricing(patch, current=pricing_dict(p)).items():
            setattr(p, attr, value)
    if "variants" in patch:
        p.variants = _variants(patch.get("variants"))
    if "images" in patch:
        p.images = _store_images(storage, patch.get("images"), "products")
    for key, attr in (("isActive", "is_active"), ("isAvailable", "is_available"), ("trackStock", "track_stock")):
        if key in patch:
            setattr(p, attr, bool(patch[key]))

    p.updated_at = now_utc()
    db.session.commit()
    return p


def delete_product(tenant_id, product_id) -> Product:
    p = get_product(tenant_id, product_id)
    for model in stock.LEDGERS.values():
        model.query.filter_by(tenant_id=p.tenant_id, product_id=p.id).delete(synchronize_session=False)
    db.session.delete(p)
    db.session.commit()
    return p


def pricing_dict(p: Product) -> dict:
    return {
        "basePrice": float(p.base_price or 0),
        "taxRate": float(p.tax_rate or 0),
        "discountPercentage": float(p.discount_percentage or 0),
        "gstType": p.gst_type,
    }


def effective_price(base_price, discount_percentage) -> Decimal:
    return money(Decimal(str(base_price or 0)) * (1 - Decimal(str(discount_percentage or 0)) / 100))


def find_variant(p: Product, size):
    if not size:
        return None
    wanted = str(size).strip().lower()
    for v in p.variants or []:
        if v.get("size", "").strip().lower() == wanted:
            return v
    return None


def product_to_dict(p: Product, categories=None, kiosk_types=None, balance=None) -> dict:
    categories = categories or {}
    kiosk_types = kiosk_types or {}
    cat = categories.get(p.category_id)
    kt = kiosk_types.get(p.kiosk_type_id)
    out = {
        "id": p.id,
        "tenantId": p.tenant_id,
        "name": p.name,
        "description": p.description,
        "images": p.images or [],
        "categoryId": p.category_id,
        "category": {"id": cat.id, "name": cat.name} if cat else None,
        "kioskTypeId": p.kiosk_type_id,
        "kioskType": {"id": kt.id, "name": kt.name} if kt else None,
        "variants": p.variants or [],
        "pricing": pricing_dict(p),
        "effectivePrice": float(effective_price(p.base_price, p.discount_percentage)),
        "isActive": bool(p.is_active),
        "isAvailable": bool(p.is_available),
        "trackStock": bool(p.track_stock),
        "updatedAt": iso(p.updated_at),
    }
    if balance is not None:
        out["balanceStock"] = float(balance)
        out["inStock"] = (not p.track_stock) or balance > 0
    return out


def list_products(tenant_id, stock_source="cafe", page=1, limit=50, category_id=None, q=None, active_only=False):
    """Products with their category/kiosk type joined from in-memory maps and
    `balanceStock` read from the requested ledger."""
    if stock_source not in STOCK_SOURCES:
        raise ValidationError("stockSource must be 'theater' or 'cafe'", fields={"stockSource": "invalid"})
    page, limit = _page_args(page, limit)

    query = Product.query.filter(Product.tenant_id == int(tenant_id))
    if category_id not in (None, ""):
        query = query.filter(Product.category_id == int(category_id))
    if q:
        query = query.filter(Product.name.ilike(f"%{q.strip()}%"))
    if active_only:
        query = query.filter(Product.is_active.is_(True), Product.is_available.is_(True))

    total = query.count()
    rows = query.order_by(Product.name.asc()).offset((page - 1) * limit).limit(limit).all()

    categories = {c.id: c for c in list_categories(tenant_id)}
    kiosk_types = {k.id: k for k in list_kiosk_types(tenant_id)}
    balances = stock.balances_for(tenant_id, [p.id for p in rows], source=stock_source)

    items = [product_to_dict(p, categories, kiosk_types, balances.get(p.id, Decimal("0"))) for p in rows]
    return {
        "items": items,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
        "stockSource": stock_source,
    }


# ---------------------------
# Combo offers
# ---------------------------

def _combo_items(tenant_id, items):
    if not isinstance(items, list) or not items:
        raise ValidationError("Combo needs at least one item", fields={"items": "required"})
    merged = {}
    for i, it in enumerate(items):
        try:
            pid = int(it.get("productId"))
            qty = int(it.get("quantity") or 1)
        except (TypeError, ValueError, AttributeError):
            raise ValidationError(f"items[{i}] is invalid", fields={f"items[{i}]": "invalid"})
        if qty <= 0:
            raise ValidationError(f"items[{i}].quantity must be positive", fields={f"items[{i}].quantity": "invalid"})
        get_product(tenant_id, pid)
        merged[pid] = merged.get(pid, 0) + qty
    return [{"productId": pid, "quantity": qty} for pid, qty in merged.items()]


def get_combo(tenant_id, combo_id) -> ComboOffer:
    c = db.session.get(ComboOffer, int(combo_id))
    if not c or c.tenant_id != int(tenant_id):
        raise NotFoundError("Combo offer not found")
    return c


def create_combo(tenant_id, data: dict, storage) -> ComboOffer:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Combo name required", fields={"name": "required"})
    items = _combo_items(tenant_id, data.get("items"))
    images = _store_images(storage, data.get("image"), "combos")
    c = ComboOffer(
        tenant_id=int(tenant_id),
        name=name,
        items=items,
        offer_price=money(_decimal(data.get("offerPrice"), "offerPrice", minimum=0)),
        tax_rate=_decimal(data.get("taxRate"), "taxRate", minimum=0),
        discount_percentage=_decimal(data.get("discountPercentage"), "discountPercentage", minimum=0, maximum=100),
        gst_type=normalize_gst_type(data.get("gstType")),
        image_url=images[0] if images else None,
        is_active=bool(data.get("isActive", True)),
    )
    db.session.add(c)
    db.session.commit()
    return c


def update_combo(tenant_id, combo_id, patch: dict, storage) -> ComboOffer:
    c = get_combo(tenant_id, combo_id)
    if "name" in patch:
        name = (patch.get("name") or "").strip()
        if not name:
            raise ValidationError("Combo name required", fields={"name": "required"})
        c.name = name
    if "items" in patch:
        c.items = _combo_items(tenant_id, patch.get("items"))
    if "offerPrice" in patch:
        c.offer_price = money(_decimal(patch.get("offerPrice"), "offerPrice", minimum=0))
    if "taxRate" in patch:
        c.tax_rate = _decimal(patch.get("taxRate"), "taxRate", minimum=0)
    if "discountPercentage" in patch:
        c.discount_percentage = _decimal(patch.get("discountPercentage"), "discountPercentage", minimum=0, maximum=100)
    if "gstType" in patch:
        c.gst_type = normalize_gst_type(patch.get("gstType"))
    if "image" in patch:
        images = _store_images(storage, patch.get("image"), "combos")
        c.image_url = images[0] if images else None
    if "isActive" in patch:
        c.is_active = bool(patch["isActive"])
    db.session.commit()
    return c


def delete_combo(tenant_id, combo_id) -> ComboOffer:
    c = get_combo(tenant_id, combo_id)
    db.session.delete(c)
    db.session.commit()
    return c


def combo_to_dict(c: ComboOffer, balances=None) -> dict:
    out = {
        "id": c.id,
        "tenantId": c.tenant_id,
        "name": c.name,
        "items": c.items or [],
        "offerPrice": float(c.offer_price or 0),
        "taxRate": float(c.tax_rate or 0),
        "discountPercentage": float(c.discount_percentage or 0),
        "gstType": c.gst_type,
        "imageUrl": c.image_url,
        "isActive": bool(c.is_active),
    }
    if balances is not None:
        counts = [int(balances.get(it["productId"], 0) // it["quantity"]) for it in c.items or []]
        out["availableCount"] = max(0, min(counts)) if counts else 0
    return out


def list_combos(tenant_id, stock_source="cafe", active_only=False):
    query = ComboOffer.query.filter_by(tenant_id=int(tenant_id))
    if active_only:
        query = query.filter(ComboOffer.is_active.is_(True))
    combos = query.order_by(ComboOffer.name.asc()).all()
    product_ids = {it["productId"] for c in combos for it in c.items or []}
    balances = stock.balances_for(tenant_id, product_ids, source=stock_source)
    return [combo_to_dict(c, balances) for c in combos]
