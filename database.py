# database.py
import enum
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declared_attr
from sqlalchemy.orm.attributes import flag_modified
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()


def now_utc():
    return datetime.utcnow()


def money(x) -> Decimal:
    try:
        return Decimal(str(x)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except Exception:
        return Decimal("0.00")


def dec3(x) -> Decimal:
    try:
        return Decimal(str(x)).quantize(Decimal("0.001"), rounding=ROUND_HALF_UP)
    except Exception:
        return Decimal("0.000")


def iso(dt):
    return dt.isoformat() if dt else None


class OrderSource(str, enum.Enum):
    POS = "pos"
    QR_CODE = "qr_code"
    QR_ORDER = "qr_order"
    ONLINE = "online"
    WEB = "web"
    APP = "app"
    CUSTOMER = "customer"
    KIOSK = "kiosk"


ONLINE_SOURCES = {
    OrderSource.QR_CODE.value, OrderSource.QR_ORDER.value, OrderSource.ONLINE.value,
    OrderSource.WEB.value, OrderSource.APP.value, OrderSource.CUSTOMER.value,
}
COUNTER_SOURCES = {OrderSource.POS.value, OrderSource.KIOSK.value}


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PAYMENT_STATUSES = {
    PaymentStatus.PAID.value, PaymentStatus.COMPLETED.value,
    PaymentStatus.FAILED.value, PaymentStatus.CANCELLED.value,
}


class GstType(str, enum.Enum):
    INCLUDE = "INCLUDE"
    EXCLUDE = "EXCLUDE"


class UserStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


SUPER_ADMIN_ROLE = "super_admin"


# ---------------------------
# Tenants and users
# ---------------------------

class Tenant(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(160), nullable=False)
    contact_json = db.Column(db.JSON, default=dict)
    documents_json = db.Column(db.JSON, default=dict)
    gst_number = db.Column(db.String(40))
    fssai_number = db.Column(db.String(40))
    settings_json = db.Column(db.JSON, default=dict)
    payment_gateway_json = db.Column(db.JSON, default=dict)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=now_utc)
    updated_at = db.Column(db.DateTime, default=now_utc)

    def setting(self, key, default=None):
        return (self.settings_json or {}).get(key, default)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "contact": self.contact_json or {},
            "documents": self.documents_json or {},
            "gstNumber": self.gst_number,
            "fssaiNumber": self.fssai_number,
            "isActive": bool(self.is_active),
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


class User(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), index=True)
    username = db.Column(db.String(120), unique=True, index=True, nullable=False)
    name = db.Column(db.String(120))
    phone = db.Column(db.String(40))
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(80), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=UserStatus.ACTIVE.value)
    created_at = db.Column(db.DateTime, default=now_utc)

    def set_password(self, pw):
        self.password_hash = generate_password_hash(pw)

    def check_password(self, pw):
        return check_password_hash(self.password_hash, pw)

    def get_id(self):
        return str(self.id)

    @property
    def is_active(self):
        return self.status == UserStatus.ACTIVE.value

    @property
    def is_super_admin(self):
        return self.tenant_id is None and (self.role or "").strip().lower() == SUPER_ADMIN_ROLE

    def to_dict(self):
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "username": self.username,
            "name": self.name,
            "phone": self.phone,
            "role": self.role,
            "status": self.status,
            "createdAt": iso(self.created_at),
        }


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id", ondelete="SET NULL"))
    action = db.Column(db.String(80), nullable=False)
    entity = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.String(80))
    ip = db.Column(db.String(80))
    details_json = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=now_utc)


# ---------------------------
# Access control aggregates (one document per tenant)
# ---------------------------

class RoleList(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, unique=True)
    roles = db.Column(db.JSON, default=list)
    updated_at = db.Column(db.DateTime, default=now_utc)


class PageAccessList(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, unique=True)
    pages = db.Column(db.JSON, default=list)
    updated_at = db.Column(db.DateTime, default=now_utc)


# ---------------------------
# Catalog
# ---------------------------

class Category(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    name = db.Column(db.String(140), nullable=False)
    sort_order = db.Column(db.Integer, default=0)
    image_url = db.Column(db.String(500))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=now_utc)
    __table_args__ = (db.UniqueConstraint("tenant_id", "name", name="uq_category_tenant_name"),)

    def to_dict(self):
        return {
            "id": self.id, "tenantId": self.tenant_id, "name": self.name,
            "sortOrder": self.sort_order, "imageUrl": self.image_url, "isActive": bool(self.is_active),
        }


class KioskType(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    name = db.Column(db.String(140), nullable=False)
    sort_order = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=now_utc)
    __table_args__ = (db.UniqueConstraint("tenant_id", "name", name="uq_kiosk_type_tenant_name"),)

    def to_dict(self):
        return {
            "id": self.id, "tenantId": self.tenant_id, "name": self.name,
            "sortOrder": self.sort_order, "isActive": bool(self.is_active),
        }


class Product(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("category.id"))
    kiosk_type_id = db.Column(db.Integer, db.ForeignKey("kiosk_type.id"))

    name = db.Column(db.String(180), nullable=False)
    description = db.Column(db.String(500))
    images = db.Column(db.JSON, default=list)
    variants = db.Column(db.JSON, default=list)

    base_price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    tax_rate = db.Column(db.Numeric(6, 2), nullable=False, default=0)
    discount_percentage = db.Column(db.Numeric(6, 2), nullable=False, default=0)
    gst_type = db.Column(db.String(10), nullable=False, default=GstType.EXCLUDE.value)

    is_active = db.Column(db.Boolean, default=True)
    is_available = db.Column(db.Boolean, default=True)
    track_stock = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=now_utc)
    updated_at = db.Column(db.DateTime, default=now_utc)


class ComboOffer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    name = db.Column(db.String(180), nullable=False)
    items = db.Column(db.JSON, default=list)
    offer_price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    tax_rate = db.Column(db.Numeric(6, 2), nullable=False, default=0)
    discount_percentage = db.Column(db.Numeric(6, 2), nullable=False, default=0)
    gst_type = db.Column(db.String(10), nullable=False, default=GstType.EXCLUDE.value)
    image_url = db.Column(db.String(500))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=now_utc)


# ---------------------------
# Stock ledgers (one document per tenant/product/month)
# ---------------------------

class _MonthlyLedger:
    id = db.Column(db.Integer, primary_key=True)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)
    opening_balance = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    bridged = db.Column(db.Boolean, default=False)
    stock_details = db.Column(db.JSON, default=list)
    closing_balance = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    updated_at = db.Column(db.DateTime, default=now_utc)

    @declared_attr
    def tenant_id(cls):
        return db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)

    @declared_attr
    def product_id(cls):
        return db.Column(db.Integer, db.ForeignKey("product.id"), nullable=False, index=True)

    @declared_attr
    def __table_args__(cls):
        return (db.UniqueConstraint("tenant_id", "product_id", "year", "month", name=f"uq_{cls.__tablename__}_month"),)


class MonthlyStock(_MonthlyLedger, db.Model):
    __tablename__ = "monthly_stock"


class CafeMonthlyStock(_MonthlyLedger, db.Model):
    __tablename__ = "cafe_monthly_stock"


# ---------------------------
# QR
# ---------------------------

class QRList(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, unique=True)
    qr_names = db.Column(db.JSON, default=list)
    updated_at = db.Column(db.DateTime, default=now_utc)


# ---------------------------
# Orders and payments
# ---------------------------

class Order(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)
    order_number = db.Column(db.String(60), nullable=False)
    source = db.Column(db.String(30), nullable=False, default=OrderSource.POS.value)
    client_ref = db.Column(db.String(120))

    customer_name = db.Column(db.String(140))
    customer_phone = db.Column(db.String(40))
    qr_name = db.Column(db.String(140))
    seat = db.Column(db.String(40))
    notes = db.Column(db.String(500))
    created_by_id = db.Column(db.Integer, db.ForeignKey("user.id", ondelete="SET NULL"))

    subtotal = db.Column(db.Numeric(12, 2), default=0)
    tax = db.Column(db.Numeric(12, 2), default=0)
    total_discount = db.Column(db.Numeric(12, 2), default=0)
    total = db.Column(db.Numeric(12, 2), default=0)

    payment_method = db.Column(db.String(30), default="cash")
    payment_provider = db.Column(db.String(30))
    payment_status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING.value)
    provider_order_id = db.Column(db.String(120), index=True)
    provider_payment_id = db.Column(db.String(120))
    transaction_id = db.Column(db.Integer)

    created_at = db.Column(db.DateTime, default=now_utc)
    updated_at = db.Column(db.DateTime, default=now_utc)
    paid_at = db.Column(db.DateTime)
    cancelled_reason = db.Column(db.String(300))

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "order_number", name="uq_order_tenant_number"),
        db.UniqueConstraint("tenant_id", "client_ref", name="uq_order_tenant_client_ref"),
    )


class OrderItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("order.id"), nullable=False, index=True)

    product_id = db.Column(db.Integer, db.ForeignKey("product.id", ondelete="SET NULL"))
    combo_id = db.Column(db.Integer, db.ForeignKey("combo_offer.id", ondelete="SET NULL"))
    components = db.Column(db.JSON, default=list)

    name_snapshot = db.Column(db.String(200), nullable=False)
    category_snapshot = db.Column(db.String(140))
    size = db.Column(db.String(40))
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(10, 2), nullable=False)
    tax_rate = db.Column(db.Numeric(6, 2), nullable=False, default=0)
    gst_type = db.Column(db.String(10), nullable=False, default=GstType.EXCLUDE.value)
    discount_percentage = db.Column(db.Numeric(6, 2), nullable=False, default=0)
    note = db.Column(db.String(300))


class PaymentTransaction(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("order.id"), nullable=False, index=True)
    provider = db.Column(db.String(30), nullable=False)
    channel = db.Column(db.String(20), nullable=False)
    method = db.Column(db.String(30))
    provider_order_id = db.Column(db.String(120), index=True)
    provider_payment_id = db.Column(db.String(120))
    signature = db.Column(db.String(255))
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    currency = db.Column(db.String(8), default="INR")
    status = db.Column(db.String(20), nullable=False, default="pending")
    error_json = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=now_utc)
    verified_at = db.Column(db.DateTime)


# ---------------------------
# Devices, chat, OTP
# ---------------------------

class DeviceRegistration(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    token = db.Column(db.String(400), nullable=False)
    platform = db.Column(db.String(40))
    registered_by_id = db.Column(db.Integer, db.ForeignKey("user.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime, default=now_utc)
    last_seen_at = db.Column(db.DateTime, default=now_utc)
    __table_args__ = (db.UniqueConstraint("tenant_id", "token", name="uq_device_tenant_token"),)


class ChatMessage(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    sender_id = db.Column(db.Integer, db.ForeignKey("user.id", ondelete="SET NULL"))
    sender_type = db.Column(db.String(20), nullable=False)
    text = db.Column(db.String(4000))
    image_url = db.Column(db.String(1000))
    is_read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=now_utc)

    def to_dict(self):
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "senderId": self.sender_id,
            "senderType": self.sender_type,
            "text": self.text,
            "imageUrl": self.image_url,
            "isRead": bool(self.is_read),
            "createdAt": iso(self.created_at),
        }


class Otp(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    phone = db.Column(db.String(40), nullable=False, index=True)
    code_hash = db.Column(db.String(255), nullable=False)
    attempts = db.Column(db.Integer, default=0)
    expires_at = db.Column(db.DateTime, nullable=False)
    verified_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=now_utc)


TENANT_OWNED_MODELS = [
    ChatMessage, DeviceRegistration, Otp, PaymentTransaction, QRList,
    CafeMonthlyStock, MonthlyStock, ComboOffer, PageAccessList, RoleList,
]


def get_or_create_tenant_doc(model, tenant_id, **defaults):
    """Fetch the per-tenant singleton row, creating it on first use.

    Two requests racing to create the same row hit the unique index on
    tenant_id; the loser rolls back and re-reads the winner's row.
    """
    row = model.query.filter_by(tenant_id=tenant_id).first()
    if row:
        return row
    row = model(tenant_id=tenant_id, **defaults)
    db.session.add(row)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        row = model.query.filter_by(tenant_id=tenant_id).first()
        if row is None:
            raise
    return row


def save_json(row, attr, value):
    setattr(row, attr, value)
    flag_modified(row, attr)
    if hasattr(row, "updated_at"):
        row.updated_at = now_utc()
