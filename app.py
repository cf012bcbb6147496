# app.py
import io
import json
import logging
from functools import wraps

import click
from flask import Flask, request, jsonify, send_file
from flask_login import LoginManager, login_required, current_user
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from werkzeug.exceptions import HTTPException

import access
import catalog
import chat
import fanout
import orders
import otp
import payments
import printing
import qr_codes
import stock
import tenants
from config import load_config
from database import db, now_utc, iso, User, AuditLog, SUPER_ADMIN_ROLE
from errors import (
    AppError, ValidationError, AuthenticationError, AuthorizationError, NotFoundError, ConflictError, require_fields,
)
from events import bus
from storage import build_storage, to_data_uri

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

DB_DOWN_MESSAGE = "Database connection not available - will retry when connection is restored"

app = Flask(__name__)
app.config.update(load_config())

db.init_app(app)

login_manager = LoginManager(app)

serializer = URLSafeTimedSerializer(app.config["SECRET_KEY"])
storage = build_storage(app.config)
sms_sender = otp.LoggingSmsSender()

fanout.init_fanout(bus)


# ---------------------------
# Helpers
# ---------------------------

def ok(data=None, status=200):
    return jsonify({"success": True, "data": data}), status


def json_error(message, code=400, error_code=None):
    body = {"success": False, "error": message}
    if error_code:
        body["code"] = error_code
    return jsonify(body), code


def require_json() -> dict:
    if not request.is_json:
        raise ValidationError("Expected JSON body")
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object body")
    return data


def _form_value(value):
    v = value.strip()
    if v.lower() in ("true", "false"):
        return v.lower() == "true"
    return v


def request_payload() -> dict:
    """JSON body, or a multipart form folded into the same shape.

    Dotted form keys nest (`contact.phone`, `admin.username`); uploaded files
    become data URIs under `documents` so they take the same storage path as
    base64 fields.
    """
    if request.is_json:
        return require_json()
    if not request.form and not request.files:
        raise ValidationError("Expected JSON or multipart body")

    data = {}
    for key, value in request.form.items():
        target = data
        parts = key.split(".")
        for p in parts[:-1]:
            target = target.setdefault(p, {})
        if parts[-1] in ("items", "seats", "variants", "permissions", "requiredRoles"):
            try:
                target[parts[-1]] = json.loads(value)
                continue
            except ValueError:
                pass
        target[parts[-1]] = _form_value(value)
    for key, f in request.files.items():
        raw = f.read()
        if raw:
            name = key.split(".", 1)[1] if key.startswith("documents.") else key
            data.setdefault("documents", {})[name] = to_data_uri(raw, f.mimetype or "application/octet-stream")
    return data


def principal():
    return current_user if current_user.is_authenticated else None


def is_staff(user) -> bool:
    return isinstance(user, User)


def require_roles(*roles):
    allowed = {access.norm_role(r) for r in roles}

    def deco(fn):
        @wraps(fn)
        @login_required
        def wrapper(*args, **kwargs):
            if not is_staff(current_user):
                return json_error("Forbidden: insufficient role", 403, "FORBIDDEN")
            cur = access.norm_role(getattr(current_user, "role", ""))
            if not current_user.is_super_admin and cur not in allowed:
                return json_error("Forbidden: insufficient role", 403, "FORBIDDEN")
            return fn(*args, **kwargs)
        return wrapper
    return deco


def super_admin_required(fn):
    return require_roles(SUPER_ADMIN_ROLE)(fn)


def authorize_tenant(tenant_id, *pages) -> int:
    """Staff of `tenant_id` (or the super admin) with access to any of `pages`."""
    user = principal()
    if user is None:
        raise AuthenticationError("Authentication required")
    if not is_staff(user):
        raise AuthorizationError("Staff access required")
    access.ensure_tenant_scope(user, tenant_id)
    if pages and not any(access.can_use_page(user, p) for p in pages):
        raise AuthorizationError(
            "Your role does not have access to this page",
            redirect=access.check_access(user, "").get("redirect"),
        )
    return int(tenant_id)


def tenant_param(data=None) -> int:
    raw = request.args.get("theaterId")
    if raw in (None, "") and data:
        raw = data.get("theaterId")
    if raw in (None, ""):
        user = principal()
        if user is not None and getattr(user, "tenant_id", None) is not None:
            return int(user.tenant_id)
        raise ValidationError("theaterId required", fields={"theaterId": "required"})
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError("theaterId must be an integer", fields={"theaterId": "invalid"})


def page_args(default_limit=20):
    return request.args.get("page", 1), request.args.get("limit", default_limit)


def audit(action, entity, entity_id=None, details=None, tenant_id=None, user=None):
    actor = user or current_user
    try:
        uid = int(actor.id) if actor and getattr(actor, "is_authenticated", False) else None
    except (TypeError, ValueError, AttributeError):
        uid = None
    if tenant_id is None:
        tenant_id = getattr(actor, "tenant_id", None)

    log = AuditLog(
        tenant_id=tenant_id,
        user_id=uid,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        ip=request.headers.get("X-Forwarded-For", request.remote_addr),
        details_json=(details or {}),
        created_at=now_utc(),
    )
    db.session.add(log)
    db.session.commit()


def issue_token(payload: dict) -> str:
    return serializer.dumps(payload)


# ---------------------------
# Auth wiring
# ---------------------------

@login_manager.user_loader
def load_user(user_id):
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        return None


@login_manager.request_loader
def load_user_from_request(req):
    header = req.headers.get("Authorization", "")
    if not header.lower().startswith("bearer "):
        return None
    token = header[7:].strip().strip("\"'")
    try:
        payload = serializer.loads(token, max_age=app.config["TOKEN_MAX_AGE"])
    except (SignatureExpired, BadSignature):
        return None

    if "uid" in payload:
        user = db.session.get(User, int(payload["uid"]))
        return user if user and user.is_active else None
    if "cid" in payload:
        tenant_id, phone = payload["cid"]
        return otp.CustomerPrincipal(tenant_id, phone)
    return None


@login_manager.unauthorized_handler
def _unauthorized():
    return json_error("Authentication required", 401, "AUTH_REQUIRED")


# ---------------------------
# Error handlers
# ---------------------------

@app.errorhandler(AppError)
def _app_error(e):
    db.session.rollback()
    if e.status >= 500:
        logger.error("%s %s failed: %s", request.method, request.path, e.message)
    return jsonify(e.to_dict()), e.status


@app.errorhandler(OperationalError)
def _db_unavailable(e):
    db.session.rollback()
    logger.error("database unavailable on %s %s: %s", request.method, request.path, e.orig)
    return json_error(DB_DOWN_MESSAGE, 500, "DB_UNAVAILABLE")


@app.errorhandler(HTTPException)
def _http_error(e):
    if e.code == 404:
        return json_error("Not found", 404, "NOT_FOUND")
    if e.code == 403:
        return json_error("Forbidden", 403, "FORBIDDEN")
    if e.code == 413:
        return json_error("Upload too large", 413, "PAYLOAD_TOO_LARGE")
    return json_error(e.description or e.name, e.code, e.name.upper().replace(" ", "_"))


@app.errorhandler(Exception)
def _unhandled(e):
    db.session.rollback()
    logger.exception("unhandled error on %s %s", request.method, request.path)
    return json_error("Internal server error", 500, "INTERNAL_ERROR")


# ---------------------------
# Health
# ---------------------------

@app.route("/api/health", methods=["GET", "HEAD"])
def api_health():
    db.session.execute(text("SELECT 1"))
    return ok({"status": "ok", "time": iso(now_utc())})


# ---------------------------
# Auth
# ---------------------------

@app.route("/api/auth/login", methods=["POST"])
def api_login():
    data = require_json()
    require_fields(data, "username", "password")
    if not isinstance(data["username"], str) or not isinstance(data["password"], str):
        raise ValidationError("username and password must be strings")
    username = data["username"].strip().lower()

    user = User.query.filter_by(username=username).first()
    if not user or not user.check_password(data["password"]):
        logger.info("failed login for %s", username)
        raise AuthenticationError("Invalid username or password", code="INVALID_CREDENTIALS")
    if not user.is_active:
        raise AuthenticationError("This account is inactive", code="ACCOUNT_INACTIVE")
    if user.tenant_id is not None and not tenants.get_tenant(user.tenant_id).is_active:
        raise AuthenticationError("This theater is inactive", code="THEATER_INACTIVE")

    if user.is_super_admin:
        redirect = access.SUPER_ADMIN_MENU[0]["route"]
    else:
        menu = access.get_menu(user)
        redirect = menu[0]["route"] if menu else None

    audit("login", "user", user.id, user=user)
    return ok({
        "token": issue_token({"uid": user.id}),
        "user": user.to_dict(),
        "redirect": redirect,
    })


@app.route("/api/auth/me", methods=["GET"])
@login_required
def api_me():
    menu = access.get_menu(current_user) if is_staff(current_user) else []
    return ok({"user": current_user.to_dict(), "menu": menu})


@app.route("/api/auth/logout", methods=["POST"])
@login_required
def api_logout():
    if is_staff(current_user):
        audit("logout", "user", current_user.id)
    return ok(None)


@app.route("/api/sms/send-otp", methods=["POST"])
def api_send_otp():
    data = require_json()
    require_fields(data, "theaterId", "phone")
    result = otp.send_otp(tenant_param(data), data["phone"], sms_sender, app.config["OTP_TTL_SECONDS"])
    return ok(result)


@app.route("/api/sms/verify-otp", methods=["POST"])
def api_verify_otp():
    data = require_json()
    require_fields(data, "theaterId", "phone", "otp")
    customer = otp.verify_otp(tenant_param(data), data["phone"], data["otp"])
    return ok({
        "token": issue_token({"cid": [customer.tenant_id, customer.phone]}),
        "customer": customer.to_dict(),
    })


# ---------------------------
# Theaters
# ---------------------------

@app.route("/api/theaters", methods=["GET"])
@super_admin_required
def api_theaters_list():
    is_active = request.args.get("isActive")
    if is_active not in (None, ""):
        is_active = is_active.strip().lower() in ("1", "true", "yes")
    else:
        is_active = None
    page, limit = page_args()
    rows, total = tenants.list_tenants(request.args.get("q"), is_active, page, limit)
    limit = max(1, min(100, int(limit or 20)))
    return ok({
        "items": [t.to_dict() for t in rows],
        "pagination": {"page": int(page or 1), "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    })


@app.route("/api/theaters", methods=["POST"])
@super_admin_required
def api_theaters_create():
    data = request_payload()
    t = tenants.create_tenant(data, storage)
    audit("create", "theater", t.id, {"name": t.name}, tenant_id=t.id)
    return ok(t.to_dict(), 201)


@app.route("/api/theaters/<int:theater_id>", methods=["GET"])
@login_required
def api_theaters_get(theater_id):
    authorize_tenant(theater_id)
    t = tenants.get_tenant(theater_id)
    out = t.to_dict()
    out["settings"] = tenants.public_settings(t)
    return ok(out)


@app.route("/api/theaters/<int:theater_id>", methods=["PUT"])
@super_admin_required
def api_theaters_update(theater_id):
    data = request_payload()
    t = tenants.update_tenant(theater_id, data, storage)
    audit("update", "theater", t.id, {"fields": sorted(data)}, tenant_id=t.id)
    return ok(t.to_dict())


@app.route("/api/theaters/<int:theater_id>", methods=["DELETE"])
@super_admin_required
def api_theaters_delete(theater_id):
    tid = tenants.delete_tenant(theater_id)
    audit("delete", "theater", tid, tenant_id=tid)
    return ok({"id": tid})


@app.route("/api/theaters/<int:theater_id>/settings", methods=["PUT"])
@login_required
def api_theater_settings(theater_id):
    authorize_tenant(theater_id, "settings")
    data = require_json()
    settings = tenants.update_settings(theater_id, data)
    audit("update", "theater_settings", theater_id, {"keys": sorted(data)}, tenant_id=theater_id)
    return ok(settings)


@app.route("/api/theaters/<int:theater_id>/payment-gateway/<channel>", methods=["GET"])
@super_admin_required
def api_gateway_get(theater_id, channel):
    t = tenants.get_tenant(theater_id)
    return ok(payments.masked_config(payments.channel_config(t, channel)))


@app.route("/api/theaters/<int:theater_id>/payment-gateway/<channel>", methods=["PUT"])
@super_admin_required
def api_gateway_set(theater_id, channel):
    cfg = payments.set_gateway_config(theater_id, channel, require_json())
    audit("update", "payment_gateway", theater_id, {"channel": channel, "provider": cfg.get("provider")},
          tenant_id=theater_id)
    return ok(cfg)


# ---------------------------
# Tenant users
# ---------------------------

def _authorize_user_admin(target: User):
    if target.tenant_id is None:
        if not (is_staff(current_user) and current_user.is_super_admin):
            raise AuthorizationError("Only the super admin can manage this account")
        return
    authorize_tenant(target.tenant_id, "users")


@app.route("/api/theaters/<int:theater_id>/users", methods=["GET"])
@login_required
def api_users_list(theater_id):
    authorize_tenant(theater_id, "users")
    return ok([u.to_dict() for u in tenants.list_users(theater_id)])


@app.route("/api/theaters/<int:theater_id>/users", methods=["POST"])
@login_required
def api_users_create(theater_id):
    authorize_tenant(theater_id, "users")
    u = tenants.create_user(theater_id, require_json())
    audit("create", "user", u.id, {"username": u.username, "role": u.role}, tenant_id=theater_id)
    return ok(u.to_dict(), 201)


@app.route("/api/users/<int:user_id>", methods=["PUT"])
@login_required
def api_users_update(user_id):
    target = tenants.get_user(user_id)
    _authorize_user_admin(target)
    data = require_json()
    u = tenants.update_user(user_id, data)
    audit("update", "user", u.id, {"fields": sorted(k for k in data if k != "password")}, tenant_id=u.tenant_id)
    return ok(u.to_dict())


@app.route("/api/users/<int:user_id>", methods=["DELETE"])
@login_required
def api_users_delete(user_id):
    target = tenants.get_user(user_id)
    _authorize_user_admin(target)
    if target.id == current_user.id:
        raise ConflictError("You cannot delete your own account")
    tenant_id = target.tenant_id
    tenants.delete_user(user_id)
    audit("delete", "user", user_id, tenant_id=tenant_id)
    return ok({"id": user_id})


# ---------------------------
# Page access and roles
# ---------------------------

@app.route("/api/page-access", methods=["GET"])
@login_required
def api_page_access_list():
    tid = authorize_tenant(tenant_param(), "page_access")
    return ok(access.list_pages(tid))


@app.route("/api/page-access", methods=["POST"])
@login_required
def api_page_access_add():
    data = require_json()
    tid = authorize_tenant(tenant_param(data), "page_access")
    page = access.add_page(tid, data)
    audit("upsert", "page_access", page["id"], {"page": page["page"]}, tenant_id=tid)
    return ok(page, 201)


@app.route("/api/page-access/<page_id>", methods=["PUT"])
@login_required
def api_page_access_update(page_id):
    data = require_json()
    tid = authorize_tenant(tenant_param(data), "page_access")
    patch = {k: v for k, v in data.items() if k != "theaterId"}
    return ok(access.update_page(tid, page_id, patch))


@app.route("/api/page-access/<page_id>", methods=["DELETE"])
@login_required
def api_page_access_remove(page_id):
    tid = authorize_tenant(tenant_param(request.get_json(silent=True) or {}), "page_access")
    removed = access.remove_page(tid, page_id)
    audit("delete", "page_access", removed["id"], {"page": removed["page"]}, tenant_id=tid)
    return ok(removed)


@app.route("/api/roles", methods=["GET"])
@login_required
def api_roles_list():
    tid = authorize_tenant(tenant_param(), "roles", "users")
    return ok(access.list_roles(tid))


@app.route("/api/roles", methods=["POST"])
@login_required
def api_roles_create():
    data = require_json()
    tid = authorize_tenant(tenant_param(data), "roles")
    role = access.create_role(tid, data)
    audit("create", "role", role["id"], {"name": role["name"]}, tenant_id=tid)
    return ok(role, 201)


@app.route("/api/roles/<role_id>", methods=["PUT"])
@login_required
def api_roles_update(role_id):
    data = require_json()
    tid = authorize_tenant(tenant_param(data), "roles")
    role = access.update_role(tid, role_id, data)
    audit("update", "role", role_id, {"name": role["name"]}, tenant_id=tid)
    return ok(role)


@app.route("/api/roles/<role_id>", methods=["DELETE"])
@login_required
def api_roles_delete(role_id):
    tid = authorize_tenant(tenant_param(request.get_json(silent=True) or {}), "roles")
    role = access.delete_role(tid, role_id)
    audit("delete", "role", role_id, {"name": role["name"]}, tenant_id=tid)
    return ok(role)


@app.route("/api/access/menu", methods=["GET"])
@login_required
def api_access_menu():
    if not is_staff(current_user):
        return ok([])
    tenant_id = request.args.get("theaterId")
    if current_user.is_super_admin:
        return ok(access.get_menu(current_user, int(tenant_id) if tenant_id else None))
    return ok(access.get_menu(current_user))


@app.route("/api/access/check", methods=["POST"])
@login_required
def api_access_check():
    data = require_json()
    require_fields(data, "route")
    if not is_staff(current_user):
        return ok({"allow": False, "redirect": None, "accessDenied": True})
    return ok(access.check_access(current_user, data["route"]))


# ---------------------------
# Catalog
# ---------------------------

def _stock_source(staff) -> str:
    # customers always see the ledger that order intake gates on
    if not staff:
        return "cafe"
    return (request.args.get("stockSource") or "cafe").strip().lower()


def _catalog_reader(theater_id) -> bool:
    """True when the caller sees inactive rows too."""
    user = principal()
    if not is_staff(user):
        tenants.get_tenant(theater_id)
        return False
    try:
        authorize_tenant(theater_id)
    except AuthorizationError:
        return False
    return True


def _product_maps(theater_id):
    return (
        {c.id: c for c in catalog.list_categories(theater_id)},
        {k.id: k for k in catalog.list_kiosk_types(theater_id)},
    )


@app.route("/api/theater-products/<int:theater_id>", methods=["GET"])
def api_products_list(theater_id):
    staff = _catalog_reader(theater_id)
    page, limit = page_args(50)
    result = catalog.list_products(
        theater_id,
        stock_source=_stock_source(staff),
        page=page,
        limit=limit,
        category_id=request.args.get("categoryId"),
        q=request.args.get("q"),
        active_only=not staff,
    )
    return ok(result)


@app.route("/api/theater-products/<int:theater_id>/<int:product_id>", methods=["GET"])
def api_products_get(theater_id, product_id):
    staff = _catalog_reader(theater_id)
    p = catalog.get_product(theater_id, product_id)
    if not staff and not (p.is_active and p.is_available):
        raise NotFoundError("Product not found")
    balance = stock.current_balance(theater_id, p.id, source=_stock_source(staff))
    return ok(catalog.product_to_dict(p, *_product_maps(theater_id), balance=balance))


@app.route("/api/theater-products/<int:theater_id>", methods=["POST"])
@login_required
def api_products_create(theater_id):
    authorize_tenant(theater_id, "products")
    p = catalog.create_product(theater_id, request_payload(), storage)
    audit("create", "product", p.id, {"name": p.name}, tenant_id=theater_id)
    return ok(catalog.product_to_dict(p, *_product_maps(theater_id)), 201)


@app.route("/api/theater-products/<int:theater_id>/<int:product_id>", methods=["PUT"])
@login_required
def api_products_update(theater_id, product_id):
    authorize_tenant(theater_id, "products")
    p = catalog.update_product(theater_id, product_id, request_payload(), storage)
    audit("update", "product", p.id, {"name": p.name}, tenant_id=theater_id)
    return ok(catalog.product_to_dict(p, *_product_maps(theater_id)))


@app.route("/api/theater-products/<int:theater_id>/<int:product_id>", methods=["DELETE"])
@login_required
def api_products_delete(theater_id, product_id):
    authorize_tenant(theater_id, "products")
    p = catalog.delete_product(theater_id, product_id)
    audit("delete", "product", product_id, {"name": p.name}, tenant_id=theater_id)
    return ok({"id": product_id})


@app.route("/api/theater-categories/<int:theater_id>", methods=["GET"])
def api_categories_list(theater_id):
    staff = _catalog_reader(theater_id)
    rows = catalog.list_categories(theater_id)
    return ok([c.to_dict() for c in rows if staff or c.is_active])


@app.route("/api/theater-categories/<int:theater_id>", methods=["POST"])
@login_required
def api_categories_create(theater_id):
    authorize_tenant(theater_id, "products")
    c = catalog.create_category(theater_id, request_payload())
    audit("create", "category", c.id, {"name": c.name}, tenant_id=theater_id)
    return ok(c.to_dict(), 201)


@app.route("/api/theater-categories/<int:theater_id>/<int:category_id>", methods=["PUT"])
@login_required
def api_categories_update(theater_id, category_id):
    authorize_tenant(theater_id, "products")
    return ok(catalog.update_category(theater_id, category_id, request_payload()).to_dict())


@app.route("/api/theater-categories/<int:theater_id>/<int:category_id>", methods=["DELETE"])
@login_required
def api_categories_delete(theater_id, category_id):
    authorize_tenant(theater_id, "products")
    catalog.delete_category(theater_id, category_id)
    audit("delete", "category", category_id, tenant_id=theater_id)
    return ok({"id": category_id})


@app.route("/api/theater-kiosk-types/<int:theater_id>", methods=["GET"])
def api_kiosk_types_list(theater_id):
    staff = _catalog_reader(theater_id)
    rows = catalog.list_kiosk_types(theater_id)
    return ok([k.to_dict() for k in rows if staff or k.is_active])


@app.route("/api/theater-kiosk-types/<int:theater_id>", methods=["POST"])
@login_required
def api_kiosk_types_create(theater_id):
    authorize_tenant(theater_id, "products")
    k = catalog.create_kiosk_type(theater_id, request_payload())
    audit("create", "kiosk_type", k.id, {"name": k.name}, tenant_id=theater_id)
    return ok(k.to_dict(), 201)


@app.route("/api/theater-kiosk-types/<int:theater_id>/<int:kiosk_type_id>", methods=["PUT"])
@login_required
def api_kiosk_types_update(theater_id, kiosk_type_id):
    authorize_tenant(theater_id, "products")
    return ok(catalog.update_kiosk_type(theater_id, kiosk_type_id, request_payload()).to_dict())


@app.route("/api/theater-kiosk-types/<int:theater_id>/<int:kiosk_type_id>", methods=["DELETE"])
@login_required
def api_kiosk_types_delete(theater_id, kiosk_type_id):
    authorize_tenant(theater_id, "products")
    catalog.delete_kiosk_type(theater_id, kiosk_type_id)
    audit("delete", "kiosk_type", kiosk_type_id, tenant_id=theater_id)
    return ok({"id": kiosk_type_id})


@app.route("/api/combo-offers/<int:theater_id>", methods=["GET"])
def api_combos_list(theater_id):
    staff = _catalog_reader(theater_id)
    source = (request.args.get("stockSource") or "cafe").strip().lower()
    return ok(catalog.list_combos(theater_id, stock_source=source, active_only=not staff))


@app.route("/api/combo-offers/<int:theater_id>", methods=["POST"])
@login_required
def api_combos_create(theater_id):
    authorize_tenant(theater_id, "products")
    c = catalog.create_combo(theater_id, request_payload(), storage)
    audit("create", "combo", c.id, {"name": c.name}, tenant_id=theater_id)
    return ok(catalog.combo_to_dict(c), 201)


@app.route("/api/combo-offers/<int:theater_id>/<int:combo_id>", methods=["PUT"])
@login_required
def api_combos_update(theater_id, combo_id):
    authorize_tenant(theater_id, "products")
    c = catalog.update_combo(theater_id, combo_id, request_payload(), storage)
    return ok(catalog.combo_to_dict(c))


@app.route("/api/combo-offers/<int:theater_id>/<int:combo_id>", methods=["DELETE"])
@login_required
def api_combos_delete(theater_id, combo_id):
    authorize_tenant(theater_id, "products")
    catalog.delete_combo(theater_id, combo_id)
    audit("delete", "combo", combo_id, tenant_id=theater_id)
    return ok({"id": combo_id})


# ---------------------------
# Stock ledgers
# ---------------------------

def _daily(theater_id, source):
    authorize_tenant(theater_id, "stock", "pos")
    return ok(stock.get_daily_balances(theater_id, request.args.get("date"), source=source))


def _month(theater_id, product_id, source):
    authorize_tenant(theater_id, "stock", "pos")
    return ok(stock.get_month(theater_id, product_id, request.args.get("year"), request.args.get("month"), source=source))


def _record(theater_id, product_id, source):
    authorize_tenant(theater_id, "stock")
    data = require_json()
    detail = stock.record_stock(theater_id, product_id, data.get("date"), data, source=source)
    audit("record", f"{source}_stock", product_id, {"date": detail["date"]}, tenant_id=theater_id)
    return ok(detail, 201)


def _bridge(theater_id, product_id, source):
    authorize_tenant(theater_id, "stock")
    data = require_json()
    require_fields(data, "year", "month")
    view = stock.bridge_month(theater_id, product_id, data["year"], data["month"], source=source)
    audit("bridge", f"{source}_stock", product_id, {"year": view["year"], "month": view["month"]}, tenant_id=theater_id)
    return ok(view)


@app.route("/api/theater-stock/<int:theater_id>", methods=["GET"])
@login_required
def api_theater_stock_daily(theater_id):
    return _daily(theater_id, "theater")


@app.route("/api/theater-stock/<int:theater_id>/<int:product_id>", methods=["GET"])
@login_required
def api_theater_stock_month(theater_id, product_id):
    return _month(theater_id, product_id, "theater")


@app.route("/api/theater-stock/<int:theater_id>/<int:product_id>", methods=["POST"])
@login_required
def api_theater_stock_record(theater_id, product_id):
    return _record(theater_id, product_id, "theater")


@app.route("/api/theater-stock/<int:theater_id>/<int:product_id>/bridge", methods=["POST"])
@login_required
def api_theater_stock_bridge(theater_id, product_id):
    return _bridge(theater_id, product_id, "theater")


@app.route("/api/cafe-stock/<int:theater_id>", methods=["GET"])
@login_required
def api_cafe_stock_daily(theater_id):
    return _daily(theater_id, "cafe")


@app.route("/api/cafe-stock/<int:theater_id>/<int:product_id>", methods=["GET"])
@login_required
def api_cafe_stock_month(theater_id, product_id):
    return _month(theater_id, product_id, "cafe")


@app.route("/api/cafe-stock/<int:theater_id>/<int:product_id>", methods=["POST"])
@login_required
def api_cafe_stock_record(theater_id, product_id):
    return _record(theater_id, product_id, "cafe")


@app.route("/api/cafe-stock/<int:theater_id>/<int:product_id>/bridge", methods=["POST"])
@login_required
def api_cafe_stock_bridge(theater_id, product_id):
    return _bridge(theater_id, product_id, "cafe")


# ---------------------------
# QR names and seats
# ---------------------------

def _qr_base_url():
    return app.config["CUSTOMER_APP_URL"]


@app.route("/api/qr-names/<int:theater_id>", methods=["GET"])
@login_required
def api_qr_list(theater_id):
    authorize_tenant(theater_id, "qr")
    return ok(qr_codes.list_qr_names(theater_id))


@app.route("/api/qr-names/<int:theater_id>", methods=["POST"])
@login_required
def api_qr_create(theater_id):
    authorize_tenant(theater_id, "qr")
    entry = qr_codes.create_qr_name(theater_id, require_json(), storage, _qr_base_url())
    audit("create", "qr_name", entry["id"], {"name": entry["name"], "seats": len(entry["seats"])}, tenant_id=theater_id)
    return ok(entry, 201)


@app.route("/api/qr-names/<int:theater_id>/<qr_id>", methods=["PUT"])
@login_required
def api_qr_update(theater_id, qr_id):
    authorize_tenant(theater_id, "qr")
    return ok(qr_codes.update_qr_name(theater_id, qr_id, require_json(), storage, _qr_base_url()))


@app.route("/api/qr-names/<int:theater_id>/<qr_id>", methods=["DELETE"])
@login_required
def api_qr_delete(theater_id, qr_id):
    authorize_tenant(theater_id, "qr")
    entry = qr_codes.delete_qr_name(theater_id, qr_id)
    audit("delete", "qr_name", entry["id"], {"name": entry["name"]}, tenant_id=theater_id)
    return ok({"id": entry["id"]})


@app.route("/api/qr-names/<int:theater_id>/<qr_id>/seats", methods=["POST"])
@login_required
def api_qr_add_seats(theater_id, qr_id):
    authorize_tenant(theater_id, "qr")
    data = require_json()
    return ok(qr_codes.add_seats(theater_id, qr_id, data.get("seats"), storage, _qr_base_url()), 201)


@app.route("/api/qr-names/<int:theater_id>/<qr_id>/seats/<seat>", methods=["DELETE"])
@login_required
def api_qr_remove_seat(theater_id, qr_id, seat):
    authorize_tenant(theater_id, "qr")
    return ok(qr_codes.remove_seat(theater_id, qr_id, seat))


@app.route("/api/qr-names/<int:theater_id>/<qr_id>/regenerate", methods=["POST"])
@login_required
def api_qr_regenerate(theater_id, qr_id):
    authorize_tenant(theater_id, "qr")
    return ok(qr_codes.regenerate(theater_id, qr_id, storage, _qr_base_url()))


@app.route("/api/qr-names/<int:theater_id>/resolve", methods=["GET"])
def api_qr_resolve(theater_id):
    tenants.get_tenant(theater_id)
    name, seat = qr_codes.resolve_seat(theater_id, request.args.get("qrName"), request.args.get("seat"))
    return ok({"theaterId": theater_id, "qrName": name, "seat": seat})


# ---------------------------
# Orders
# ---------------------------

@app.route("/api/orders/theater", methods=["POST"])
def api_orders_create():
    data = request_payload()
    tid = tenant_param(data)
    user = principal()
    if isinstance(user, otp.CustomerPrincipal):
        data["customerPhone"] = user.phone
        data.pop("customer", None)
    order, created = orders.create_order(tid, data, user)
    if created and is_staff(user):
        audit("create", "order", order.id, {"orderNumber": order.order_number, "source": order.source}, tenant_id=tid)
    return ok(orders.order_to_dict(order), 201 if created else 200)


@app.route("/api/orders/theater/<int:theater_id>", methods=["GET"])
@login_required
def api_orders_list(theater_id):
    authorize_tenant(theater_id, "orders", "pos")
    page, limit = page_args()
    return ok(orders.list_orders(
        theater_id,
        status=request.args.get("status"),
        source=request.args.get("source"),
        page=page,
        limit=limit,
    ))


def _readable_order(theater_id, order_id):
    user = principal()
    if isinstance(user, otp.CustomerPrincipal):
        order = orders.get_order(theater_id, order_id)
        if user.tenant_id != int(theater_id) or (order.customer_phone or "") != user.phone:
            raise AuthorizationError("This order belongs to someone else")
        return order
    authorize_tenant(theater_id, "orders", "pos")
    return orders.get_order(theater_id, order_id)


@app.route("/api/orders/theater/<int:theater_id>/<int:order_id>", methods=["GET"])
@login_required
def api_orders_get(theater_id, order_id):
    return ok(orders.order_to_dict(_readable_order(theater_id, order_id)))


@app.route("/api/orders/theater/<int:theater_id>/<int:order_id>/cancel", methods=["POST"])
@login_required
def api_orders_cancel(theater_id, order_id):
    authorize_tenant(theater_id, "orders", "pos")
    data = request.get_json(silent=True) or {}
    order = orders.cancel_order(theater_id, order_id, data.get("reason"))
    audit("cancel", "order", order.id, {"orderNumber": order.order_number}, tenant_id=theater_id)
    return ok(orders.order_to_dict(order))


@app.route("/api/orders/theater/<int:theater_id>/<int:order_id>/receipt.pdf", methods=["GET"])
@login_required
def api_orders_receipt(theater_id, order_id):
    order = _readable_order(theater_id, order_id)
    pdf = printing.receipt_pdf(orders.order_to_dict(order), tenants.get_tenant(theater_id).to_dict())
    return send_file(
        io.BytesIO(pdf),
        mimetype="application/pdf",
        as_attachment=False,
        download_name=f"{order.order_number}.pdf",
    )


# ---------------------------
# Payments
# ---------------------------

@app.route("/api/payments/config/<int:theater_id>/<channel>", methods=["GET"])
def api_payment_config(theater_id, channel):
    return ok(payments.public_config(theater_id, channel))


@app.route("/api/payments/create-order", methods=["POST"])
def api_payment_create_order():
    data = require_json()
    require_fields(data, "orderId")
    result = payments.create_gateway_order(tenant_param(data), data["orderId"], data.get("method"), data.get("channel"))
    return ok(result, 201)


@app.route("/api/payments/verify", methods=["POST"])
def api_payment_verify():
    data = require_json()
    require_fields(data, "orderId")
    result = payments.verify_payment(tenant_param(data), data)
    return ok({
        "verified": result["verified"],
        "alreadyPaid": result["alreadyPaid"],
        "order": orders.order_to_dict(result["order"]),
    })


@app.route("/api/payments/webhook/razorpay/<int:theater_id>", methods=["POST"])
def api_payment_webhook(theater_id):
    result = payments.handle_razorpay_webhook(
        theater_id, request.get_data(), request.headers.get("X-Razorpay-Signature"),
    )
    return ok(result)


# ---------------------------
# Counter devices
# ---------------------------

@app.route("/api/pos/register-device", methods=["POST"])
@login_required
def api_register_device():
    data = require_json()
    tid = authorize_tenant(tenant_param(data), "pos", "orders")
    row = fanout.register_device(tid, data.get("token"), data.get("platform"), current_user.id)
    return ok({"id": row.id, "theaterId": tid, "platform": row.platform}, 201)


@app.route("/api/pos/unregister-device", methods=["POST"])
@login_required
def api_unregister_device():
    data = require_json()
    tid = authorize_tenant(tenant_param(data), "pos", "orders")
    return ok({"removed": fanout.unregister_device(tid, data.get("token"))})


# ---------------------------
# Chat
# ---------------------------

@app.route("/api/chat/theaters", methods=["GET"])
@super_admin_required
def api_chat_threads():
    return ok(chat.list_threads())


@app.route("/api/chat/messages/<int:theater_id>", methods=["GET"])
@login_required
def api_chat_messages(theater_id):
    authorize_tenant(theater_id)
    return ok(chat.get_messages(theater_id, request.args.get("after"), request.args.get("limit", 200)))


@app.route("/api/chat/messages", methods=["POST"])
@login_required
def api_chat_send():
    if request.is_json:
        data = require_json()
        image = data.get("image")
    else:
        data = request.form.to_dict()
        upload = request.files.get("image")
        image = (upload.read(), upload.mimetype or "application/octet-stream") if upload else None
    tid = authorize_tenant(tenant_param(data))
    m = chat.send_message(tid, current_user, data.get("text"), image, storage)
    return ok(m.to_dict(), 201)


@app.route("/api/chat/messages/<int:theater_id>/mark-read", methods=["PUT"])
@login_required
def api_chat_mark_read(theater_id):
    authorize_tenant(theater_id)
    return ok({"updated": chat.mark_read(theater_id, current_user)})


# ---------------------------
# CLI
# ---------------------------

@app.cli.command("init-db")
def init_db_command():
    db.create_all()
    click.echo("Database tables created.")


@app.cli.command("create-super-admin")
@click.argument("username")
@click.password_option()
def create_super_admin_command(username, password):
    username = username.strip().lower()
    if User.query.filter_by(username=username).first():
        raise click.ClickException(f"User {username} already exists")
    u = User(username=username, name="Super Admin", role=SUPER_ADMIN_ROLE)
    u.set_password(password)
    db.session.add(u)
    db.session.commit()
    click.echo(f"Super admin {username} created.")


@app.cli.command("sweep-payments")
def sweep_payments_command():
    n = payments.sweep_pending(app.config["PAYMENT_PENDING_TIMEOUT_MINUTES"])
    click.echo(f"Cancelled {n} stale pending order(s).")


if __name__ == "__main__":
    with app.app_context():
        db.create_all()
    app.run(host="127.0.0.1", port=5000, debug=app.config["APP_ENV"] == "development", use_reloader=False)
