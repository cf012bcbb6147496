# otp.py
import logging
import re
import secrets
from collections import deque
from datetime import timedelta

from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from database import db, now_utc, Tenant, Otp
from errors import ValidationError, AuthenticationError, NotFoundError

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
CODE_DIGITS = 6
OUTBOX_SIZE = 50
PHONE_RE = re.compile(r"^\+?\d{10,15}$")


class LoggingSmsSender:
    """Development SMS collaborator: records messages instead of sending."""

    def __init__(self, maxlen=OUTBOX_SIZE):
        self.outbox = deque(maxlen=maxlen)

    def send(self, phone, message):
        self.outbox.append((phone, message))
        logger.info("SMS queued for %s", mask_phone(phone))


class CustomerPrincipal(UserMixin):
    """A phone-verified customer of one theater. Not stored in the user table."""

    role = "customer"
    is_super_admin = False
    name = None

    def __init__(self, tenant_id, phone):
        self.tenant_id = int(tenant_id)
        self.phone = phone

    @property
    def id(self):
        return f"customer:{self.tenant_id}:{self.phone}"

    def get_id(self):
        return self.id

    def to_dict(self):
        return {"id": self.id, "tenantId": self.tenant_id, "phone": self.phone, "role": self.role}


def mask_phone(phone) -> str:
    phone = str(phone or "")
    return f"{'*' * max(0, len(phone) - 4)}{phone[-4:]}"


def normalize_phone(phone) -> str:
    p = re.sub(r"[\s\-()]", "", str(phone or ""))
    if not PHONE_RE.match(p):
        raise ValidationError("Enter a valid phone number", fields={"phone": "invalid"})
    return p


def generate_code() -> str:
    return f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"


def send_otp(tenant_id, phone, sender, ttl_seconds) -> dict:
    if not db.session.get(Tenant, int(tenant_id)):
        raise NotFoundError("Theater not found")
    phone = normalize_phone(phone)

    Otp.query.filter_by(tenant_id=int(tenant_id), phone=phone, verified_at=None).delete()
    code = generate_code()
    db.session.add(Otp(
        tenant_id=int(tenant_id),
        phone=phone,
        code_hash=generate_password_hash(code),
        attempts=0,
        expires_at=now_utc() + timedelta(seconds=int(ttl_seconds)),
    ))
    db.session.commit()

    sender.send(phone, f"{code} is your verification code. It is valid for {int(ttl_seconds) // 60} minutes.")
    return {"phone": mask_phone(phone), "expiresIn": int(ttl_seconds)}


def verify_otp(tenant_id, phone, code, now=None) -> CustomerPrincipal:
    phone = normalize_phone(phone)
    code = str(code or "").strip()
    if not code:
        raise ValidationError("OTP required", fields={"otp": "required"})

    row = (
        Otp.query.filter_by(tenant_id=int(tenant_id), phone=phone, verified_at=None)
        .order_by(Otp.created_at.desc(), Otp.id.desc())
        .first()
    )
    if row is None:
        raise ValidationError("No OTP was requested for this number", code="OTP_NOT_FOUND")
    if (now or now_utc()) > row.expires_at:
        raise ValidationError("OTP expired, request a new one", code="OTP_EXPIRED")
    if (row.attempts or 0) >= MAX_ATTEMPTS:
        raise AuthenticationError("Too many attempts, request a new OTP", code="OTP_LOCKED", status=429)

    if not check_password_hash(row.code_hash, code):
        row.attempts = (row.attempts or 0) + 1
        db.session.commit()
        logger.info("wrong OTP for %s (attempt %s)", mask_phone(phone), row.attempts)
        raise AuthenticationError("Invalid OTP", code="OTP_INVALID")

    row.verified_at = now_utc()
    db.session.commit()
    return CustomerPrincipal(tenant_id, phone)
