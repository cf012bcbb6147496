# chat.py
import logging

from sqlalchemy import func

from database import db, iso, Tenant, ChatMessage
from errors import ValidationError, NotFoundError
from storage import is_data_uri, decode_data_uri

logger = logging.getLogger(__name__)

SENDER_ADMIN = "super_admin"
SENDER_THEATER = "theater"
MAX_TEXT = 4000


def _sender_type(principal) -> str:
    return SENDER_ADMIN if getattr(principal, "is_super_admin", False) else SENDER_THEATER


def _other_side(principal) -> str:
    return SENDER_THEATER if _sender_type(principal) == SENDER_ADMIN else SENDER_ADMIN


def list_threads():
    """Every tenant with its latest message and how many theater messages
    the super admin has not read yet."""
    unread = dict(
        db.session.query(ChatMessage.tenant_id, func.count(ChatMessage.id))
        .filter(ChatMessage.sender_type == SENDER_THEATER, ChatMessage.is_read.is_(False))
        .group_by(ChatMessage.tenant_id)
        .all()
    )
    last_ids = dict(
        db.session.query(ChatMessage.tenant_id, func.max(ChatMessage.id))
        .group_by(ChatMessage.tenant_id)
        .all()
    )
    last = {}
    if last_ids:
        for m in ChatMessage.query.filter(ChatMessage.id.in_(list(last_ids.values()))).all():
            last[m.tenant_id] = m

    threads = []
    for t in Tenant.query.order_by(Tenant.name.asc()).all():
        m = last.get(t.id)
        threads.append({
            "theaterId": t.id,
            "theaterName": t.name,
            "logo": (t.documents_json or {}).get("logo"),
            "unreadCount": int(unread.get(t.id, 0)),
            "lastMessage": m.to_dict() if m else None,
            "lastMessageAt": iso(m.created_at) if m else None,
        })
    threads.sort(key=lambda x: x["lastMessageAt"] or "", reverse=True)
    return threads


def get_messages(tenant_id, after_id=None, limit=200):
    if not db.session.get(Tenant, int(tenant_id)):
        raise NotFoundError("Theater not found")
    try:
        after = int(after_id) if after_id not in (None, "") else None
        limit = max(1, min(500, int(limit or 200)))
    except (TypeError, ValueError):
        raise ValidationError("after and limit must be integers")
    q = ChatMessage.query.filter_by(tenant_id=int(tenant_id))
    if after is not None:
        q = q.filter(ChatMessage.id > after)
    rows = q.order_by(ChatMessage.id.desc()).limit(limit).all()
    return [m.to_dict() for m in reversed(rows)]


def send_message(tenant_id, principal, text=None, image=None, storage=None) -> ChatMessage:
    """`image` is either a data URI or a (raw bytes, mime) pair from a multipart upload."""
    if not db.session.get(Tenant, int(tenant_id)):
        raise NotFoundError("Theater not found")
    text = (text or "").strip()
    if len(text) > MAX_TEXT:
        raise ValidationError(f"Message is longer than {MAX_TEXT} characters", fields={"text": "too long"})

    image_url = None
    if image:
        if is_data_uri(image):
            raw, mime = decode_data_uri(image)
        else:
            raw, mime = image
        image_url = storage.upload(raw, mime, "chat")
    if not text and not image_url:
        raise ValidationError("Message needs text or an image", fields={"text": "required"})

    m = ChatMessage(
        tenant_id=int(tenant_id),
        sender_id=principal.id if isinstance(principal.id, int) else None,
        sender_type=_sender_type(principal),
        text=text or None,
        image_url=image_url,
        is_read=False,
    )
    db.session.add(m)
    db.session.commit()
    return m


def mark_read(tenant_id, principal) -> int:
    """Mark the other side's messages in this thread as read."""
    n = (
        ChatMessage.query
        .filter_by(tenant_id=int(tenant_id), sender_type=_other_side(principal), is_read=False)
        .update({"is_read": True}, synchronize_session=False)
    )
    db.session.commit()
    return n


def unread_count(tenant_id, principal) -> int:
    return (
        ChatMessage.query
        .filter_by(tenant_id=int(tenant_id), sender_type=_other_side(principal), is_read=False)
        .count()
    )
