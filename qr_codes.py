# qr_codes.py
import copy
import io
import logging
import uuid
from urllib.parse import urlencode

import qrcode

from database import db, now_utc, iso, QRList, get_or_create_tenant_doc, save_json
from errors import ValidationError, NotFoundError, ConflictError
from storage import to_data_uri

logger = logging.getLogger(__name__)


def deep_link(base_url, tenant_id, qr_name, seat) -> str:
    query = urlencode({"qrName": qr_name, "seat": seat})
    return f"{base_url.rstrip('/')}/menu/{tenant_id}?{query}"


def render_png(payload: str) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _seat_image(storage, png: bytes):
    """(imageUrl, imageDataUrl): a stored URL when storage is up, else inline."""
    if getattr(storage, "available", False):
        return storage.upload(png, "image/png", "qr"), None
    return None, to_data_uri(png, "image/png")


def _build_seat(tenant_id, qr_name, label, storage, base_url):
    payload = deep_link(base_url, tenant_id, qr_name, label)
    image_url, data_url = _seat_image(storage, render_png(payload))
    return {
        "id": uuid.uuid4().hex,
        "label": label,
        "qrPayload": payload,
        "imageUrl": image_url,
        "imageDataUrl": data_url,
        "updatedAt": iso(now_utc()),
    }


def _labels(value):
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ValidationError("seats must be a list of labels", fields={"seats": "invalid"})
    out = []
    for s in value:
        label = s.get("label") if isinstance(s, dict) else s
        label = str(label).strip() if label is not None else ""
        if not label:
            raise ValidationError("Seat label required", fields={"seats": "invalid"})
        if label.lower() in {x.lower() for x in out}:
            raise ValidationError(f"Seat '{label}' listed twice", fields={"seats": "duplicate"})
        out.append(label)
    return out


def qr_list(tenant_id):
    return get_or_create_tenant_doc(QRList, tenant_id, qr_names=[])


def list_qr_names(tenant_id):
    doc = QRList.query.filter_by(tenant_id=int(tenant_id)).first()
    return list(doc.qr_names or []) if doc else []


def _find(entries, qr_id):
    for e in entries:
        if e.get("id") == qr_id or e.get("name") == qr_id:
            return e
    raise NotFoundError("QR name not found")


def get_qr_name(tenant_id, qr_id) -> dict:
    return _find(list_qr_names(tenant_id), qr_id)


def create_qr_name(tenant_id, data: dict, storage, base_url) -> dict:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("QR name required", fields={"name": "required"})
    labels = _labels(data.get("seats"))

    doc = qr_list(tenant_id)
    entries = copy.deepcopy(doc.qr_names or [])
    if any((e.get("name") or "").lower() == name.lower() for e in entries):
        raise ConflictError(f"QR name '{name}' already exists for this theater")

    ts = iso(now_utc())
    entry = {
        "id": uuid.uuid4().hex,
        "name": name,
        "screen": (data.get("screen") or "").strip() or None,
        "seats": [_build_seat(tenant_id, name, label, storage, base_url) for label in labels],
        "createdAt": ts,
        "updatedAt": ts,
    }
    entries.append(entry)
    save_json(doc, "qr_names", entries)
    db.session.commit()
    logger.info("QR name %s created for tenant %s with %s seat(s)", name, tenant_id, len(labels))
    return entry


def add_seats(tenant_id, qr_id, seats, storage, base_url) -> dict:
    labels = _labels(seats)
    if not labels:
        raise ValidationError("At least one seat is required", fields={"seats": "required"})

    doc = qr_list(tenant_id)
    entries = copy.deepcopy(doc.qr_names or [])
    entry = _find(entries, qr_id)
    existing = {(s.get("label") or "").lower() for s in entry.get("seats") or []}
    clash = [label for label in labels if label.lower() in existing]
    if clash:
        raise ConflictError(f"Seat(s) already exist: {', '.join(clash)}")

    entry.setdefault("seats", []).extend(
        _build_seat(tenant_id, entry["name"], label, storage, base_url) for label in labels
    )
    entry["updatedAt"] = iso(now_utc())
    save_json(doc, "qr_names", entries)
    db.session.commit()
    return entry


def remove_seat(tenant_id, qr_id, seat) -> dict:
    doc = qr_list(tenant_id)
    entries = copy.deepcopy(doc.qr_names or [])
    entry = _find(entries, qr_id)
    seats = entry.get("seats") or []
    kept = [s for s in seats if s.get("id") != seat and s.get("label") != seat]
    if len(kept) == len(seats):
        raise NotFoundError("Seat not found")
    entry["seats"] = kept
    entry["updatedAt"] = iso(now_utc())
    save_json(doc, "qr_names", entries)
    db.session.commit()
    return entry


def update_qr_name(tenant_id, qr_id, patch: dict, storage, base_url) -> dict:
    doc = qr_list(tenant_id)
    entries = copy.deepcopy(doc.qr_names or [])
    entry = _find(entries, qr_id)
    renamed = False
    if "name" in patch:
        name = (patch.get("name") or "").strip()
        if not name:
            raise ValidationError("QR name required", fields={"name": "required"})
        if any(e is not entry and (e.get("name") or "").lower() == name.lower() for e in entries):
            raise ConflictError(f"QR name '{name}' already exists for this theater")
        renamed = name != entry["name"]
        entry["name"] = name
    if "screen" in patch:
        entry["screen"] = (patch.get("screen") or "").strip() or None
    if renamed:
        entry["seats"] = [_build_seat(tenant_id, entry["name"], s["label"], storage, base_url) for s in entry.get("seats") or []]
    entry["updatedAt"] = iso(now_utc())
    save_json(doc, "qr_names", entries)
    db.session.commit()
    return entry


def delete_qr_name(tenant_id, qr_id) -> dict:
    doc = qr_list(tenant_id)
    entries = copy.deepcopy(doc.qr_names or [])
    entry = _find(entries, qr_id)
    save_json(doc, "qr_names", [e for e in entries if e is not entry])
    db.session.commit()
    return entry


def regenerate(tenant_id, qr_id, storage, base_url) -> dict:
    """Re-render every seat image of one QR name, keeping seat ids."""
    doc = qr_list(tenant_id)
    entries = copy.deepcopy(doc.qr_names or [])
    entry = _find(entries, qr_id)
    for seat in entry.get("seats") or []:
        fresh = _build_seat(tenant_id, entry["name"], seat["label"], storage, base_url)
        fresh["id"] = seat.get("id") or fresh["id"]
        seat.clear()
        seat.update(fresh)
    entry["updatedAt"] = iso(now_utc())
    save_json(doc, "qr_names", entries)
    db.session.commit()
    return entry


def resolve_seat(tenant_id, qr_name, seat):
    """Raise unless `seat` exists under `qr_name` for this tenant."""
    qr_name = (qr_name or "").strip()
    seat = (seat or "").strip() if isinstance(seat, str) else str(seat or "").strip()
    if not qr_name or not seat:
        raise ValidationError("qrName and seat are required for customer orders",
                              fields={"qrName": "required", "seat": "required"})
    for e in list_qr_names(tenant_id):
        if (e.get("name") or "").lower() == qr_name.lower():
            if any((s.get("label") or "").lower() == seat.lower() for s in e.get("seats") or []):
                return e["name"], seat
            raise ValidationError(f"Unknown seat '{seat}' for '{qr_name}'", fields={"seat": "unknown"})
    raise ValidationError(f"Unknown QR name '{qr_name}'", fields={"qrName": "unknown"})
