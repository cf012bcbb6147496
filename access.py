# access.py
"""
Per-tenant access control.

Each tenant owns exactly two aggregates:

    RoleList.roles        [{id, name, description, isActive, isDefault,
                            permissions: [{page, pageName, route, hasAccess}]}]
    PageAccessList.pages  [{id, page, pageName, route, category, requiredRoles,
                            requiredPermissions, showInMenu, showInSidebar,
                            menuOrder, isActive, isBeta, requiresSubscription,
                            tags}]

Sub-entities are addressed by their stable `id` and only ever changed by
rewriting the owning aggregate, so a page removal and the matching
permission cleanup land in one commit.
"""
import copy
import logging
import uuid

from database import (
    db, now_utc, iso,
    RoleList, PageAccessList, SUPER_ADMIN_ROLE,
    get_or_create_tenant_doc, save_json,
)
from errors import ValidationError, NotFoundError, ConflictError, AuthorizationError

logger = logging.getLogger(__name__)

PAGE_CATEGORIES = {
    "dashboard", "products", "orders", "customers", "reports",
    "settings", "admin", "qr", "users", "stock",
}
PAGE_ROLES = {"super_admin", "tenant_admin", "tenant_staff", "customer"}
DEFAULT_CATEGORY = "admin"
DEFAULT_ROLES = ["tenant_admin"]

TENANT_ADMIN_ROLE = "tenant_admin"
TENANT_STAFF_ROLE = "tenant_staff"
CUSTOMER_ROLE = "customer"

TENANT_PLACEHOLDERS = (":tenantId", ":theaterId")

# (page, pageName, route, category, menuOrder)
DEFAULT_PAGES = [
    ("dashboard", "Dashboard", "/theater-dashboard/:tenantId", "dashboard", 1),
    ("products", "Products", "/theater-products/:tenantId", "products", 2),
    ("stock", "Stock", "/theater-stock/:tenantId", "stock", 3),
    ("orders", "Orders", "/theater-orders/:tenantId", "orders", 4),
    ("pos", "POS", "/pos/:tenantId", "orders", 5),
    ("qr", "QR Codes", "/theater-qr/:tenantId", "qr", 6),
    ("users", "Users", "/theater-users/:tenantId", "users", 7),
    ("roles", "Roles", "/theater-roles/:tenantId", "settings", 8),
    ("page_access", "Page Access", "/theater-page-access/:tenantId", "settings", 9),
    ("settings", "Settings", "/theater-settings/:tenantId", "settings", 10),
    ("reports", "Reports", "/theater-reports/:tenantId", "reports", 11),
    ("messages", "Messages", "/theater-messages/:tenantId", "admin", 12),
]
STAFF_PAGES = {"dashboard", "orders", "pos", "products", "stock"}

SUPER_ADMIN_MENU = [
    {"page": "admin_dashboard", "pageName": "Dashboard", "route": "/dashboard", "category": "dashboard", "menuOrder": 1},
    {"page": "theaters", "pageName": "Theaters", "route": "/theaters", "category": "admin", "menuOrder": 2},
    {"page": "page_access", "pageName": "Page Access", "route": "/page-access", "category": "settings", "menuOrder": 3},
    {"page": "roles", "pageName": "Roles", "route": "/roles", "category": "settings", "menuOrder": 4},
    {"page": "messages", "pageName": "Messages", "route": "/messages", "category": "admin", "menuOrder": 5},
]


def norm_role(role) -> str:
    r = (role or "").strip().lower()
    if not r:
        return ""
    r = "_".join(r.replace("-", " ").replace("_", " ").split())
    aliases = {
        "superadmin": SUPER_ADMIN_ROLE,
        "admin": TENANT_ADMIN_ROLE,
        "theater_admin": TENANT_ADMIN_ROLE,
        "theatre_admin": TENANT_ADMIN_ROLE,
        "staff": TENANT_STAFF_ROLE,
        "theater_staff": TENANT_STAFF_ROLE,
        "theatre_staff": TENANT_STAFF_ROLE,
    }
    return aliases.get(r, r)


def substitute_tenant(route: str, tenant_id) -> str:
    out = route or ""
    for placeholder in TENANT_PLACEHOLDERS:
        out = out.replace(placeholder, str(tenant_id))
    return out


def ensure_tenant_scope(principal, tenant_id):
    """Raise unless `principal` may act inside tenant `tenant_id`."""
    if principal is None or not getattr(principal, "is_authenticated", False):
        raise AuthorizationError("Authentication required", code="AUTH_REQUIRED", status=401)
    if getattr(principal, "is_super_admin", False):
        return
    if principal.tenant_id is None or int(principal.tenant_id) != int(tenant_id):
        raise AuthorizationError("You do not have access to this theater")


# ---------------------------
# Page access list
# ---------------------------

def _clean_str(value, field, errors):
    v = value.strip() if isinstance(value, str) else ""
    if not v:
        errors[field] = "required"
    return v


def _str_list(value, field, errors):
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(x, str) for x in value):
        errors[field] = "must be a list of strings"
        return []
    return [x.strip() for x in value if x.strip()]


def normalize_page_spec(spec: dict) -> dict:
    errors = {}
    page = _clean_str(spec.get("page"), "page", errors)
    page_name = _clean_str(spec.get("pageName"), "pageName", errors)
    route = _clean_str(spec.get("route"), "route", errors)

    category = (spec.get("category") or DEFAULT_CATEGORY)
    category = category.strip().lower() if isinstance(category, str) else ""
    if category not in PAGE_CATEGORIES:
        errors["category"] = f"must be one of {sorted(PAGE_CATEGORIES)}"

    roles = _str_list(spec.get("requiredRoles"), "requiredRoles", errors)
    roles = [norm_role(r) for r in roles]
    bad_roles = [r for r in roles if r not in PAGE_ROLES]
    if bad_roles:
        errors["requiredRoles"] = f"unknown role(s): {', '.join(bad_roles)}"
    roles = list(dict.fromkeys(roles)) or list(DEFAULT_ROLES)

    try:
        menu_order = int(spec.get("menuOrder") or 0)
    except (TypeError, ValueError):
        errors["menuOrder"] = "must be an integer"
        menu_order = 0

    if errors:
        raise ValidationError("Invalid page access entry", fields=errors)

    return {
        "page": page,
        "pageName": page_name,
        "route": route,
        "category": category,
        "requiredRoles": roles,
        "requiredPermissions": _str_list(spec.get("requiredPermissions"), "requiredPermissions", {}),
        "showInMenu": bool(spec.get("showInMenu", True)),
        "showInSidebar": bool(spec.get("showInSidebar", True)),
        "menuOrder": menu_order,
        "isActive": bool(spec.get("isActive", True)),
        "isBeta": bool(spec.get("isBeta", False)),
        "requiresSubscription": bool(spec.get("requiresSubscription", False)),
        "tags": _str_list(spec.get("tags"), "tags", {}),
    }


def page_list(tenant_id):
    return get_or_create_tenant_doc(PageAccessList, tenant_id, pages=[])


def list_pages(tenant_id, include_inactive=True):
    pages = list(page_list(tenant_id).pages or [])
    if not include_inactive:
        pages = [p for p in pages if p.get("isActive", True)]
    return sorted(pages, key=lambda p: (p.get("menuOrder") or 0, p.get("pageName") or ""))


def add_page(tenant_id, spec: dict) -> dict:
    """Insert a page or update the existing one with the same `page` key."""
    clean = normalize_page_spec(spec or {})
    doc = page_list(tenant_id)
    pages = copy.deepcopy(doc.pages or [])
    ts = iso(now_utc())

    stored = None
    for p in pages:
        if p.get("page") == clean["page"]:
            p.update(clean)
            p["updatedAt"] = ts
            stored = p
            break
    if stored is None:
        stored = dict(clean, id=uuid.uuid4().hex, createdAt=ts, updatedAt=ts)
        pages.append(stored)

    save_json(doc, "pages", pages)
    _sync_permission_routes(tenant_id, stored)
    db.session.commit()
    logger.info("page %s upserted for tenant %s", stored["page"], tenant_id)
    return stored


def update_page(tenant_id, page_id, patch: dict) -> dict:
    doc = page_list(tenant_id)
    pages = copy.deepcopy(doc.pages or [])
    idx = _find_page_index(pages, page_id)
    if idx is None:
        raise NotFoundError("Page not found")

    merged = dict(pages[idx])
    merged.update(patch or {})
    clean = normalize_page_spec(merged)
    if clean["page"] != pages[idx]["page"] and any(p.get("page") == clean["page"] for p in pages):
        raise ConflictError(f"Page '{clean['page']}' already exists")

    old_key = pages[idx]["page"]
    pages[idx].update(clean)
    pages[idx]["updatedAt"] = iso(now_utc())
    save_json(doc, "pages", pages)
    if old_key != clean["page"]:
        _strip_permissions(tenant_id, old_key)
    _sync_permission_routes(tenant_id, pages[idx])
    db.session.commit()
    return pages[idx]


def remove_page(tenant_id, page_id) -> dict:
    """Delete a page and every role permission that refers to it."""
    doc = page_list(tenant_id)
    pages = copy.deepcopy(doc.pages or [])
    idx = _find_page_index(pages, page_id)
    if idx is None:
        raise NotFoundError("Page not found")

    removed = pages.pop(idx)
    save_json(doc, "pages", pages)
    stripped = _strip_permissions(tenant_id, removed["page"])
    db.session.commit()
    logger.info("page %s removed for tenant %s (%s role permission(s) dropped)", removed["page"], tenant_id, stripped)
    return removed


def _find_page_index(pages, page_id):
    for i, p in enumerate(pages):
        if p.get("id") == page_id:
            return i
    for i, p in enumerate(pages):
        if p.get("page") == page_id:
            return i
    return None


def _strip_permissions(tenant_id, page_key) -> int:
    doc = role_list(tenant_id)
    roles = copy.deepcopy(doc.roles or [])
    dropped = 0
    for r in roles:
        perms = r.get("permissions") or []
        kept = [p for p in perms if p.get("page") != page_key]
        dropped += len(perms) - len(kept)
        r["permissions"] = kept
    if dropped:
        save_json(doc, "roles", roles)
    return dropped


def _sync_permission_routes(tenant_id, page):
    doc = role_list(tenant_id)
    roles = copy.deepcopy(doc.roles or [])
    changed = False
    for r in roles:
        for perm in r.get("permissions") or []:
            if perm.get("page") == page["page"] and (perm.get("route") != page["route"] or perm.get("pageName") != page["pageName"]):
                perm["route"] = page["route"]
                perm["pageName"] = page["pageName"]
                changed = True
    if changed:
        save_json(doc, "roles", roles)


# ---------------------------
# Role list
# ---------------------------

def role_list(tenant_id):
    return get_or_create_tenant_doc(RoleList, tenant_id, roles=[])


def list_roles(tenant_id):
    return list(role_list(tenant_id).roles or [])


def get_role(tenant_id, role_id) -> dict:
    for r in list_roles(tenant_id):
        if r.get("id") == role_id:
            return r
    raise NotFoundError("Role not found")


def _normalize_permissions(tenant_id, permissions):
    if permissions is None:
        return []
    if not isinstance(permissions, list):
        raise ValidationError("permissions must be a list", fields={"permissions": "invalid"})

    pages = {p["page"]: p for p in list_pages(tenant_id)}
    out = {}
    for i, perm in enumerate(permissions):
        if not isinstance(perm, dict):
            raise ValidationError(f"permissions[{i}] must be an object", fields={f"permissions[{i}]": "invalid"})
        key = (perm.get("page") or "").strip()
        if not key:
            raise ValidationError(f"permissions[{i}].page is required", fields={f"permissions[{i}].page": "required"})
        page = pages.get(key)
        route = (perm.get("route") or (page or {}).get("route") or "").strip()
        if not route:
            raise ValidationError(f"Unknown page '{key}'", fields={f"permissions[{i}].page": "unknown"})
        # one entry per page; the last one wins
        out[key] = {
            "page": key,
            "pageName": (page or {}).get("pageName") or perm.get("pageName") or key,
            "route": route,
            "hasAccess": bool(perm.get("hasAccess", False)),
        }
    return list(out.values())


def _check_role_name(roles, name, skip_id=None):
    wanted = norm_role(name)
    for r in roles:
        if r.get("id") != skip_id and norm_role(r.get("name")) == wanted:
            raise ConflictError(f"Role '{name}' already exists")


def create_role(tenant_id, data: dict) -> dict:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Role name required", fields={"name": "required"})

    doc = role_list(tenant_id)
    roles = copy.deepcopy(doc.roles or [])
    _check_role_name(roles, name)

    ts = iso(now_utc())
    role = {
        "id": uuid.uuid4().hex,
        "name": name,
        "description": (data.get("description") or "").strip(),
        "isActive": bool(data.get("isActive", True)),
        "isDefault": bool(data.get("isDefault", False)),
        "permissions": _normalize_permissions(tenant_id, data.get("permissions")),
        "createdAt": ts,
        "updatedAt": ts,
    }
    roles.append(role)
    save_json(doc, "roles", roles)
    db.session.commit()
    return role


def update_role(tenant_id, role_id, patch: dict) -> dict:
    doc = role_list(tenant_id)
    roles = copy.deepcopy(doc.roles or [])
    role = next((r for r in roles if r.get("id") == role_id), None)
    if role is None:
        raise NotFoundError("Role not found")

    if "name" in patch:
        name = (patch.get("name") or "").strip()
        if not name:
            raise ValidationError("Role name required", fields={"name": "required"})
        _check_role_name(roles, name, skip_id=role_id)
        role["name"] = name
    if "description" in patch:
        role["description"] = (patch.get("description") or "").strip()
    if "isActive" in patch:
        role["isActive"] = bool(patch["isActive"])
    if "permissions" in patch:
        role["permissions"] = _normalize_permissions(tenant_id, patch["permissions"])
    role["updatedAt"] = iso(now_utc())

    save_json(doc, "roles", roles)
    db.session.commit()
    return role


def delete_role(tenant_id, role_id) -> dict:
    doc = role_list(tenant_id)
    roles = copy.deepcopy(doc.roles or [])
    role = next((r for r in roles if r.get("id") == role_id), None)
    if role is None:
        raise NotFoundError("Role not found")
    if role.get("isDefault"):
        raise ConflictError("Default roles cannot be deleted")
    save_json(doc, "roles", [r for r in roles if r.get("id") != role_id])
    db.session.commit()
    return role


def seed_defaults(tenant_id):
    """Give a new tenant the default page list plus admin and staff roles."""
    ts = iso(now_utc())
    pages = []
    for key, name, route, category, order in DEFAULT_PAGES:
        pages.append(dict(
            normalize_page_spec({"page": key, "pageName": name, "route": route, "category": category, "menuOrder": order}),
            id=uuid.uuid4().hex, createdAt=ts, updatedAt=ts,
        ))

    def perms(keys):
        return [
            {"page": p["page"], "pageName": p["pageName"], "route": p["route"], "hasAccess": p["page"] in keys}
            for p in pages
        ]

    all_keys = {p["page"] for p in pages}
    roles = [
        {"id": uuid.uuid4().hex, "name": TENANT_ADMIN_ROLE, "description": "Theater administrator",
         "isActive": True, "isDefault": True, "permissions": perms(all_keys), "createdAt": ts, "updatedAt": ts},
        {"id": uuid.uuid4().hex, "name": TENANT_STAFF_ROLE, "description": "Counter staff",
         "isActive": True, "isDefault": True, "permissions": perms(STAFF_PAGES), "createdAt": ts, "updatedAt": ts},
    ]
    save_json(page_list(tenant_id), "pages", pages)
    save_json(role_list(tenant_id), "roles", roles)


def role_exists(tenant_id, name) -> bool:
    wanted = norm_role(name)
    return any(norm_role(r.get("name")) == wanted for r in list_roles(tenant_id))


# ---------------------------
# Evaluation
# ---------------------------

def principal_permissions(principal):
    if principal is None or principal.tenant_id is None:
        return []
    wanted = norm_role(principal.role)
    for r in list_roles(principal.tenant_id):
        if norm_role(r.get("name")) == wanted and r.get("isActive", True):
            return r.get("permissions") or []
    return []


def allowed_routes(principal):
    return {
        substitute_tenant(p.get("route"), principal.tenant_id)
        for p in principal_permissions(principal)
        if p.get("hasAccess") and p.get("route")
    }


def route_allowed(route, allowed) -> bool:
    return any(route == a or route.startswith(a) for a in allowed if a)


def get_menu(principal, tenant_id=None):
    """Ordered navigation items the principal may see."""
    if getattr(principal, "is_super_admin", False):
        if tenant_id is None:
            return [dict(item) for item in SUPER_ADMIN_MENU]
        return [
            dict(p, route=substitute_tenant(p["route"], tenant_id))
            for p in list_pages(tenant_id, include_inactive=False)
            if p.get("showInMenu", True)
        ]

    allowed = allowed_routes(principal)
    menu = []
    for p in list_pages(principal.tenant_id, include_inactive=False):
        if not p.get("showInMenu", True):
            continue
        route = substitute_tenant(p["route"], principal.tenant_id)
        if route_allowed(route, allowed):
            menu.append(dict(p, route=route))
    return menu


def check_access(principal, route) -> dict:
    route = (route or "").strip()
    if getattr(principal, "is_super_admin", False):
        return {"allow": True, "redirect": None, "accessDenied": False}

    route = substitute_tenant(route, principal.tenant_id)
    if route and route_allowed(route, allowed_routes(principal)):
        return {"allow": True, "redirect": None, "accessDenied": False}

    menu = get_menu(principal)
    if menu:
        redirect = menu[0]["route"]
    else:
        fallback = sorted(allowed_routes(principal))
        redirect = fallback[0] if fallback else None
    return {"allow": False, "redirect": redirect, "accessDenied": redirect is None}


def can_use_page(principal, page_key) -> bool:
    if getattr(principal, "is_super_admin", False):
        return True
    if norm_role(getattr(principal, "role", "")) == TENANT_ADMIN_ROLE:
        return True
    return any(p.get("page") == page_key and p.get("hasAccess") for p in principal_permissions(principal))
