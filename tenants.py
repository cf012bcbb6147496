# tenants.py
import logging

from sqlalchemy import or_ as sa_or

import access
from database import (
    db, now_utc,
    Tenant, User, AuditLog, UserStatus,
    Order, OrderItem, Product, Category, KioskType,
    ChatMessage, DeviceRegistration, Otp, PaymentTransaction, QRList,
    CafeMonthlyStock, MonthlyStock, ComboOffer, PageAccessList, RoleList,
)
from errors import ValidationError, NotFoundError, ConflictError
from storage import store_documents

logger = logging.getLogger(__name__)

SETTINGS_KEYS = {"beepAudioUrl", "pushServerKey", "orderPrefix"}
MIN_PASSWORD_LEN = 6

# children first so foreign keys never dangle mid-delete
CASCADE_ORDER = [
    ChatMessage, DeviceRegistration, Otp, PaymentTransaction,
    QRList, CafeMonthlyStock, MonthlyStock, ComboOffer,
    PageAccessList, RoleList,
]


def get_tenant(tenant_id) -> Tenant:
    t = db.session.get(Tenant, int(tenant_id))
    if not t:
        raise NotFoundError("Theater not found")
    return t


def list_tenants(q=None, is_active=None, page=1, limit=20):
    query = Tenant.query
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(sa_or(Tenant.name.ilike(like), Tenant.gst_number.ilike(like)))
    if is_active is not None:
        query = query.filter(Tenant.is_active.is_(bool(is_active)))
    total = query.count()
    page = max(1, int(page or 1))
    limit = max(1, min(100, int(limit or 20)))
    rows = query.order_by(Tenant.name.asc()).offset((page - 1) * limit).limit(limit).all()
    return rows, total


def create_tenant(data: dict, storage) -> Tenant:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Theater name required", fields={"name": "required"})

    admin = data.get("admin") or None
    if admin:
        _check_new_user(admin)

    # uploads resolve before anything is written
    documents = store_documents(storage, data.get("documents") or {}, "theaters")

    t = Tenant(
        name=name,
        contact_json=dict(data.get("contact") or {}),
        documents_json=documents,
        gst_number=(data.get("gstNumber") or "").strip() or None,
        fssai_number=(data.get("fssaiNumber") or "").strip() or None,
        settings_json={},
        payment_gateway_json={},
        is_active=bool(data.get("isActive", True)),
    )
    db.session.add(t)
    db.session.flush()

    access.seed_defaults(t.id)

    if admin:
        db.session.add(_build_user(t.id, admin, default_role=access.TENANT_ADMIN_ROLE))

    db.session.commit()
    logger.info("theater %s created (%s)", t.id, t.name)
    return t


def update_tenant(tenant_id, patch: dict, storage) -> Tenant:
    t = get_tenant(tenant_id)

    documents = None
    if "documents" in patch:
        documents = store_documents(storage, patch.get("documents") or {}, "theaters")

    if "name" in patch:
        name = (patch.get("name") or "").strip()
        if not name:
            raise ValidationError("Theater name required", fields={"name": "required"})
        t.name = name
    if "contact" in patch:
        merged = dict(t.contact_json or {})
        merged.update(patch.get("contact") or {})
        t.contact_json = merged
    if documents is not None:
        merged = dict(t.documents_json or {})
        merged.update(documents)
        t.documents_json = merged
    if "gstNumber" in patch:
        t.gst_number = (patch.get("gstNumber") or "").strip() or None
    if "fssaiNumber" in patch:
        t.fssai_number = (patch.get("fssaiNumber") or "").strip() or None
    if "isActive" in patch:
        t.is_active = bool(patch["isActive"])

    t.updated_at = now_utc()
    db.session.commit()
    return t


def delete_tenant(tenant_id):
    t = get_tenant(tenant_id)
    tid = t.id

    order_ids = [oid for (oid,) in db.session.query(Order.id).filter(Order.tenant_id == tid).all()]
    user_ids = [uid for (uid,) in db.session.query(User.id).filter(User.tenant_id == tid).all()]

    for model in CASCADE_ORDER[:4]:
        model.query.filter_by(tenant_id=tid).delete(synchronize_session=False)
    if order_ids:
        OrderItem.query.filter(OrderItem.order_id.in_(order_ids)).delete(synchronize_session=False)
    Order.query.filter_by(tenant_id=tid).delete(synchronize_session=False)
    for model in CASCADE_ORDER[4:]:
        model.query.filter_by(tenant_id=tid).delete(synchronize_session=False)
    for model in (Product, KioskType, Category):
        model.query.filter_by(tenant_id=tid).delete(synchronize_session=False)
    if user_ids:
        AuditLog.query.filter(AuditLog.user_id.in_(user_ids)).update({"user_id": None}, synchronize_session=False)
        User.query.filter(User.id.in_(user_ids)).delete(synchronize_session=False)

    db.session.delete(t)
    db.session.commit()
    logger.info("theater %s deleted with %s order(s) and %s user(s)", tid, len(order_ids), len(user_ids))
    return tid


# ---------------------------
# Settings
# ---------------------------

def update_settings(tenant_id, patch: dict) -> dict:
    t = get_tenant(tenant_id)
    unknown = set(patch or {}) - SETTINGS_KEYS
    if unknown:
        raise ValidationError(f"Unknown setting(s): {', '.join(sorted(unknown))}",
                              fields={k: "unknown" for k in unknown})

    settings = dict(t.settings_json or {})
    for k, v in (patch or {}).items():
        v = v.strip() if isinstance(v, str) else v
        if v in (None, ""):
            settings.pop(k, None)
        else:
            settings[k] = v
    t.settings_json = settings
    t.updated_at = now_utc()
    db.session.commit()
    return public_settings(t)


def public_settings(t: Tenant) -> dict:
    s = dict(t.settings_json or {})
    if s.get("pushServerKey"):
        s["pushServerKey"] = "********"
    return s


# ---------------------------
# Tenant users
# ---------------------------

def _check_new_user(data):
    errors = {}
    username = (data.get("username") or "").strip().lower()
    if not username:
        errors["username"] = "required"
    if len(data.get("password") or "") < MIN_PASSWORD_LEN:
        errors["password"] = f"must be at least {MIN_PASSWORD_LEN} characters"
    if errors:
        raise ValidationError("Invalid user", fields=errors)
    if User.query.filter_by(username=username).first():
        raise ConflictError("Username already used", fields={"username": "taken"})


def _build_user(tenant_id, data, default_role):
    u = User(
        tenant_id=tenant_id,
        username=(data.get("username") or "").strip().lower(),
        name=(data.get("name") or "").strip() or None,
        phone=(data.get("phone") or "").strip() or None,
        role=access.norm_role(data.get("role")) or default_role,
        status=UserStatus.ACTIVE.value,
    )
    u.set_password(data["password"])
    return u


def _check_role(tenant_id, role):
    if not access.role_exists(tenant_id, role):
        raise ValidationError(f"Unknown role '{role}'", fields={"role": "unknown"})


def create_user(tenant_id, data: dict) -> User:
    get_tenant(tenant_id)
    _check_new_user(data)
    u = _build_user(tenant_id, data, default_role=access.TENANT_STAFF_ROLE)
    _check_role(tenant_id, u.role)
    db.session.add(u)
    db.session.commit()
    return u


def list_users(tenant_id):
    get_tenant(tenant_id)
    return User.query.filter_by(tenant_id=int(tenant_id)).order_by(User.username.asc()).all()


def get_user(user_id) -> User:
    u = db.session.get(User, int(user_id))
    if not u:
        raise NotFoundError("User not found")
    return u


def update_user(user_id, patch: dict) -> User:
    u = get_user(user_id)
    if "name" in patch:
        u.name = (patch.get("name") or "").strip() or None
    if "phone" in patch:
        u.phone = (patch.get("phone") or "").strip() or None
    if "role" in patch and u.tenant_id is not None:
        role = access.norm_role(patch.get("role"))
        _check_role(u.tenant_id, role)
        u.role = role
    if "status" in patch:
        status = (patch.get("status") or "").strip().lower()
        if status not in {s.value for s in UserStatus}:
            raise ValidationError("status must be active or inactive", fields={"status": "invalid"})
        u.status = status
    if patch.get("password"):
        if len(patch["password"]) < MIN_PASSWORD_LEN:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LEN} characters",
                                  fields={"password": "too short"})
        u.set_password(patch["password"])
    db.session.commit()
    return u


def delete_user(user_id) -> User:
    u = get_user(user_id)
    AuditLog.query.filter_by(user_id=u.id).update({"user_id": None}, synchronize_session=False)
    db.session.delete(u)
    db.session.commit()
    return u
