# fanout.py
import logging

import requests

from database import db, now_utc, Tenant, DeviceRegistration, ONLINE_SOURCES
from errors import ValidationError
from events import ORDER_PAID

logger = logging.getLogger(__name__)

FCM_URL = "https://fcm.googleapis.com/fcm/send"
PUSH_TIMEOUT = 10
DEAD_TOKEN_ERRORS = {"NotRegistered", "InvalidRegistration"}


def register_device(tenant_id, token, platform=None, user_id=None) -> DeviceRegistration:
    token = (token or "").strip()
    if not token:
        raise ValidationError("Device token required", fields={"token": "required"})

    row = DeviceRegistration.query.filter_by(tenant_id=int(tenant_id), token=token).first()
    if row is None:
        row = DeviceRegistration(tenant_id=int(tenant_id), token=token)
        db.session.add(row)
    row.platform = (platform or "").strip() or row.platform
    row.registered_by_id = user_id or row.registered_by_id
    row.last_seen_at = now_utc()
    db.session.commit()
    logger.info("device registered for tenant %s (%s)", tenant_id, row.platform or "unknown")
    return row


def unregister_device(tenant_id, token) -> int:
    n = DeviceRegistration.query.filter_by(tenant_id=int(tenant_id), token=(token or "").strip()).delete()
    db.session.commit()
    return n


def device_tokens(tenant_id):
    return [d.token for d in DeviceRegistration.query.filter_by(tenant_id=int(tenant_id)).order_by(DeviceRegistration.id.asc())]


class FcmPushSender:
    """FCM HTTP sender keyed by the tenant's server key."""

    def __init__(self, server_key, session=None, url=FCM_URL, timeout=PUSH_TIMEOUT):
        self.server_key = server_key
        self.session = session or requests.Session()
        self.url = url
        self.timeout = timeout

    def send(self, tokens, data) -> list:
        """Push `data` to `tokens`; returns the tokens FCM reports as dead."""
        if not tokens:
            return []
        try:
            resp = self.session.post(
                self.url,
                json={"registration_ids": list(tokens), "priority": "high", "data": data},
                headers={"Authorization": f"key={self.server_key}"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error("push delivery failed: %s", e)
            return []
        if resp.status_code != 200:
            logger.error("push rejected with HTTP %s", resp.status_code)
            return []
        try:
            results = resp.json().get("results") or []
        except ValueError:
            return []
        return [tok for tok, res in zip(tokens, results) if (res or {}).get("error") in DEAD_TOKEN_ERRORS]


class NullPushSender:
    """Used when a tenant has no push key; keeps what would have been sent."""

    def __init__(self):
        self.sent = []

    def send(self, tokens, data) -> list:
        self.sent.append((list(tokens), dict(data)))
        logger.info("push for tenant %s skipped: no push key configured", data.get("theaterId"))
        return []


def sender_for(tenant: Tenant):
    key = tenant.setting("pushServerKey")
    return FcmPushSender(key) if key else NullPushSender()


def push_payload(event: dict) -> dict:
    return {
        "type": "pos_order",
        "orderId": str(event["orderId"]),
        "orderNumber": event.get("orderNumber") or "",
        "theaterId": str(event["tenantId"]),
        "source": event.get("source") or "",
    }


def on_order_paid(event: dict):
    if event.get("source") not in ONLINE_SOURCES:
        return
    tenant = db.session.get(Tenant, int(event["tenantId"]))
    if tenant is None:
        return
    tokens = device_tokens(tenant.id)
    if not tokens:
        logger.info("order %s paid but tenant %s has no devices", event.get("orderNumber"), tenant.id)
        return

    dead = sender_for(tenant).send(tokens, push_payload(event))
    if dead:
        DeviceRegistration.query.filter(
            DeviceRegistration.tenant_id == tenant.id, DeviceRegistration.token.in_(dead)
        ).delete(synchronize_session=False)
        db.session.commit()
        logger.info("pruned %s dead device token(s) for tenant %s", len(dead), tenant.id)


_unsubscribe = None


def init_fanout(bus):
    global _unsubscribe
    if _unsubscribe is None:
        _unsubscribe = bus.subscribe(ORDER_PAID, on_order_paid)
