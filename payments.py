# payments.py
"""
Payment gateway configuration and the gateway round-trip.

Each tenant keeps one config per channel in `Tenant.payment_gateway_json`:

    {"kiosk":  {"provider": "razorpay",
                "razorpay": {"enabled", "keyId", "keySecret", "webhookSecret", "testMode"},
                "phonepe":  {"enabled", "merchantId", "saltKey"},
                "paytm":    {"enabled", "merchantId", "merchantKey"},
                "acceptedMethods": {"cash", "card", "upi", "netbanking", "wallet"}},
     "online": {...}}

Secrets never leave this module: the public config only carries the key id.
"""
import hashlib
import hmac
import json
import logging
from datetime import timedelta

import requests

import orders as order_service
from database import (
    db, now_utc, money,
    Tenant, Order, PaymentTransaction, PaymentStatus, COUNTER_SOURCES,
)
from errors import ValidationError, NotFoundError, ConflictError, GatewayError

logger = logging.getLogger(__name__)

PROVIDERS = ("razorpay", "phonepe", "paytm")
CHANNELS = ("kiosk", "online")
METHODS = ("cash", "card", "upi", "netbanking", "wallet")
SECRET_FIELDS = {"keySecret", "webhookSecret", "saltKey", "merchantKey"}
MASK = "********"

# fields that must be present for a provider to count as configured
REQUIRED_CREDS = {"razorpay": ("keyId", "keySecret"), "phonepe": ("merchantId", "saltKey"), "paytm": ("merchantId", "merchantKey")}
# providers with a gateway client; the others can be configured but not used for checkout yet
CHECKOUT_PROVIDERS = ("razorpay",)
PROVIDER_METHODS = {
    "razorpay": {"card": True, "upi": True, "netbanking": False, "wallet": False},
    "phonepe": {"card": False, "upi": True, "netbanking": False, "wallet": False},
    "paytm": {"card": True, "upi": True, "netbanking": True, "wallet": True},
}

CHANNEL_ALIASES = {
    "kiosk": "kiosk", "pos": "kiosk", "counter": "kiosk",
    "online": "online", "web": "online", "qr": "online", "qr_order": "online",
    "qr_code": "online", "customer": "online", "app": "online",
}

RAZORPAY_API = "https://api.razorpay.com/v1"
GATEWAY_TIMEOUT = 15


def normalize_channel(channel) -> str:
    ch = CHANNEL_ALIASES.get((channel or "").strip().lower())
    if not ch:
        raise ValidationError("channel must be kiosk or online", fields={"channel": "invalid"})
    return ch


def _tenant(tenant_id) -> Tenant:
    t = db.session.get(Tenant, int(tenant_id))
    if not t:
        raise NotFoundError("Theater not found")
    return t


def channel_config(tenant: Tenant, channel) -> dict:
    return dict((tenant.payment_gateway_json or {}).get(normalize_channel(channel)) or {})


def set_gateway_config(tenant_id, channel, data: dict) -> dict:
    t = _tenant(tenant_id)
    channel = normalize_channel(channel)
    current = channel_config(t, channel)

    provider = (data.get("provider", current.get("provider")) or "none").strip().lower()
    if provider not in PROVIDERS + ("none",):
        raise ValidationError(f"provider must be one of {', '.join(PROVIDERS)}", fields={"provider": "invalid"})

    updated = dict(current, provider=provider)
    for name in PROVIDERS:
        if name not in data:
            continue
        incoming = data.get(name) or {}
        if not isinstance(incoming, dict):
            raise ValidationError(f"{name} must be an object", fields={name: "invalid"})
        merged = dict(current.get(name) or {})
        for k, v in incoming.items():
            # a masked or blank secret keeps the stored one
            if k in SECRET_FIELDS and (v in (None, "") or v == MASK):
                continue
            merged[k] = v.strip() if isinstance(v, str) else v
        merged["enabled"] = bool(merged.get("enabled", False))
        updated[name] = merged

    if "acceptedMethods" in data:
        methods = data.get("acceptedMethods") or {}
        if not isinstance(methods, dict) or set(methods) - set(METHODS):
            raise ValidationError(f"acceptedMethods keys must be among {', '.join(METHODS)}",
                                  fields={"acceptedMethods": "invalid"})
        updated["acceptedMethods"] = {m: bool(methods.get(m, False)) for m in METHODS}

    gateways = dict(t.payment_gateway_json or {})
    gateways[channel] = updated
    t.payment_gateway_json = gateways
    t.updated_at = now_utc()
    db.session.commit()
    logger.info("gateway config for tenant %s channel %s set to %s", t.id, channel, provider)
    return masked_config(updated)


def masked_config(cfg: dict) -> dict:
    out = {}
    for k, v in cfg.items():
        if isinstance(v, dict):
            out[k] = {ik: (MASK if ik in SECRET_FIELDS and iv else iv) for ik, iv in v.items()}
        else:
            out[k] = v
    return out


def _detect_provider(cfg: dict) -> str:
    provider = (cfg.get("provider") or "none").lower()
    if provider != "none":
        return provider
    for name in PROVIDERS:
        sub = cfg.get(name) or {}
        if sub.get("enabled") and sub.get(REQUIRED_CREDS[name][0]):
            return name
    return "none"


def _is_ready(cfg: dict, provider: str) -> bool:
    if provider not in CHECKOUT_PROVIDERS:
        return False
    sub = cfg.get(provider) or {}
    return bool(sub.get("enabled")) and all((sub.get(f) or "").strip() for f in REQUIRED_CREDS[provider])


def _accepted_methods(cfg: dict, provider: str, channel: str, ready: bool) -> dict:
    stored = cfg.get("acceptedMethods") or (cfg.get(provider) or {}).get("acceptedMethods") or {}
    cash_default = channel == "kiosk"
    if ready and (not stored or ("card" not in stored and "upi" not in stored)):
        base = dict(PROVIDER_METHODS[provider])
        base.update({k: bool(v) for k, v in stored.items() if k in ("netbanking", "wallet")})
        return dict(base, cash=bool(stored.get("cash", cash_default)))
    out = {m: bool(stored.get(m, False)) for m in METHODS}
    out["cash"] = bool(stored.get("cash", cash_default))
    return out


def public_config(tenant_id, channel) -> dict:
    t = _tenant(tenant_id)
    channel = normalize_channel(channel)
    cfg = channel_config(t, channel)
    provider = _detect_provider(cfg)
    ready = _is_ready(cfg, provider)

    out = {
        "provider": provider,
        "isEnabled": ready,
        "acceptedMethods": _accepted_methods(cfg, provider, channel, ready),
        "channel": channel,
    }
    if ready:
        sub = cfg["razorpay"]
        out["razorpay"] = {"keyId": sub["keyId"], "testMode": bool(sub.get("testMode", False))}
    return out


# ---------------------------
# Gateway clients
# ---------------------------

def razorpay_signature(provider_order_id, payment_id, key_secret) -> str:
    msg = f"{provider_order_id}|{payment_id}".encode("utf-8")
    return hmac.new(key_secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def webhook_signature(raw_body: bytes, secret) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


class RazorpayGateway:
    name = "razorpay"

    def __init__(self, key_id, key_secret, session=None, base_url=RAZORPAY_API, timeout=GATEWAY_TIMEOUT):
        self.key_id = key_id
        self.key_secret = key_secret
        self.session = session or requests.Session()
        self.base_url = base_url
        self.timeout = timeout

    def create_order(self, amount_paise, currency, receipt, notes=None) -> dict:
        try:
            resp = self.session.post(
                f"{self.base_url}/orders",
                json={"amount": amount_paise, "currency": currency, "receipt": receipt, "notes": notes or {}},
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error("razorpay order create failed: %s", e)
            raise GatewayError("Payment gateway not reachable", code="GATEWAY_UNAVAILABLE", status=503)

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code >= 400 or not body.get("id"):
            desc = ((body.get("error") or {}).get("description")) or f"HTTP {resp.status_code}"
            logger.error("razorpay rejected order %s: %s", receipt, desc)
            raise GatewayError(f"Razorpay order creation failed: {desc}")
        return body

    def verify(self, provider_order_id, payment_id, signature) -> bool:
        if not (provider_order_id and payment_id and signature):
            return False
        expected = razorpay_signature(provider_order_id, payment_id, self.key_secret)
        return hmac.compare_digest(expected, str(signature))


def gateway_for(cfg: dict, provider: str):
    if provider == "razorpay":
        sub = cfg.get("razorpay") or {}
        return RazorpayGateway(sub["keyId"], sub["keySecret"])
    raise GatewayError(f"Provider '{provider}' is not supported for online checkout", code="GATEWAY_NOT_READY")


def amount_in_paise(total) -> int:
    return int((money(total) * 100).to_integral_value())


# ---------------------------
# Orchestration
# ---------------------------

def _order_channel(order: Order, requested=None) -> str:
    if requested:
        return normalize_channel(requested)
    return "kiosk" if order.source in COUNTER_SOURCES else "online"


def create_gateway_order(tenant_id, order_id, method=None, channel=None) -> dict:
    order = order_service.get_order(tenant_id, order_id)
    if order.payment_status != PaymentStatus.PENDING.value:
        raise ConflictError(f"Order is already {order.payment_status}", code="ORDER_NOT_PENDING")

    t = _tenant(tenant_id)
    channel = _order_channel(order, channel)
    cfg = channel_config(t, channel)
    public = public_config(tenant_id, channel)
    if not public["isEnabled"]:
        raise GatewayError("Payment gateway not ready", code="GATEWAY_NOT_READY")

    method = (method or "").strip().lower() or None
    if method and not public["acceptedMethods"].get(method):
        raise ValidationError(f"Payment method '{method}' is not accepted", fields={"method": "not accepted"})

    provider = public["provider"]
    existing = None
    if order.transaction_id:
        existing = db.session.get(PaymentTransaction, order.transaction_id)
    if existing and existing.status == "created" and existing.provider == provider:
        logger.info("order %s reuses gateway order %s", order.order_number, existing.provider_order_id)
        return _checkout_payload(order, existing, public)

    gateway = gateway_for(cfg, provider)
    amount = amount_in_paise(order.total)
    remote = gateway.create_order(amount, "INR", f"order_{order.id}", notes={
        "orderId": str(order.id), "orderNumber": order.order_number,
        "theaterId": str(t.id), "channel": channel,
    })

    tx = PaymentTransaction(
        tenant_id=t.id,
        order_id=order.id,
        provider=provider,
        channel=channel,
        method=method,
        provider_order_id=remote["id"],
        amount=order.total,
        currency=remote.get("currency") or "INR",
        status="created",
    )
    db.session.add(tx)
    db.session.flush()

    order.provider_order_id = remote["id"]
    order.transaction_id = tx.id
    order.payment_provider = provider
    if method:
        order.payment_method = method
    order.updated_at = now_utc()
    db.session.commit()
    logger.info("gateway order %s created for order %s (%s paise)", remote["id"], order.order_number, amount)
    return _checkout_payload(order, tx, public)


def _checkout_payload(order, tx, public) -> dict:
    out = {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "providerOrderId": tx.provider_order_id,
        "transactionId": tx.id,
        "amount": amount_in_paise(tx.amount),
        "currency": tx.currency,
        "provider": tx.provider,
        "channel": tx.channel,
    }
    if tx.provider == "razorpay":
        out["keyId"] = public["razorpay"]["keyId"]
    return out


def _find_transaction(order: Order, transaction_id=None, provider_order_id=None):
    q = PaymentTransaction.query.filter_by(order_id=order.id)
    if transaction_id not in (None, ""):
        try:
            tx = q.filter_by(id=int(transaction_id)).first()
        except (TypeError, ValueError):
            tx = None
        if tx:
            return tx
    if provider_order_id:
        tx = q.filter_by(provider_order_id=provider_order_id).first()
        if tx:
            return tx
    if order.transaction_id:
        return db.session.get(PaymentTransaction, order.transaction_id)
    return None


def verify_payment(tenant_id, data: dict) -> dict:
    """Check the gateway callback signature and settle the order.

    A second call for an already-paid order succeeds without another
    transition or event. Malformed calls and calls naming another
    transaction are rejected without touching the order; only a signature
    that fails against this order's own transaction marks it failed.
    """
    provider_order_id = data.get("providerOrderId") or data.get("razorpay_order_id")
    payment_id = data.get("paymentId") or data.get("razorpay_payment_id")
    signature = data.get("signature") or data.get("razorpay_signature")
    missing = {
        name: "required"
        for name, value in (("providerOrderId", provider_order_id), ("paymentId", payment_id), ("signature", signature))
        if not value
    }
    if missing:
        raise ValidationError("providerOrderId, paymentId and signature are required", fields=missing)

    order = order_service.get_order(tenant_id, data.get("orderId"))
    if order.payment_status in (PaymentStatus.PAID.value, PaymentStatus.COMPLETED.value):
        logger.info("verify replayed for paid order %s", order.order_number)
        return {"verified": True, "alreadyPaid": True, "order": order}
    if order.payment_status != PaymentStatus.PENDING.value:
        raise ConflictError(f"Order is already {order.payment_status}", code="ORDER_NOT_PENDING")

    tx = _find_transaction(order, data.get("transactionId"), provider_order_id)
    if tx is None:
        raise NotFoundError("No gateway transaction for this order")
    if str(provider_order_id) != str(tx.provider_order_id):
        raise ConflictError("Gateway order does not belong to this order", code="TRANSACTION_MISMATCH")

    cfg = channel_config(_tenant(tenant_id), tx.channel)
    gateway = gateway_for(cfg, tx.provider)
    ok = gateway.verify(provider_order_id, payment_id, signature)

    tx.provider_payment_id = payment_id
    tx.signature = signature
    tx.verified_at = now_utc()
    if ok:
        tx.status = "paid"
        order_service.mark_paid(order, provider=tx.provider, provider_payment_id=payment_id)
        return {"verified": True, "alreadyPaid": False, "order": order}

    tx.status = "failed"
    tx.error_json = {"reason": "signature mismatch"}
    order_service.mark_failed(order, reason="Payment signature verification failed")
    logger.warning("signature mismatch for order %s", order.order_number)
    raise GatewayError("Payment verification failed", retry=True)


def handle_razorpay_webhook(tenant_id, raw_body: bytes, signature) -> dict:
    t = _tenant(tenant_id)
    webhook_secrets = [
        ((channel_config(t, ch).get("razorpay") or {}).get("webhookSecret") or "")
        for ch in CHANNELS
    ]
    webhook_secrets = [s for s in webhook_secrets if s]
    if not webhook_secrets:
        raise GatewayError("Webhook secret not configured", code="GATEWAY_NOT_READY")
    if not signature or not any(hmac.compare_digest(webhook_signature(raw_body, s), signature) for s in webhook_secrets):
        raise GatewayError("Invalid webhook signature", code="INVALID_SIGNATURE", status=400)

    try:
        event = json.loads(raw_body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Webhook body is not JSON")

    name = event.get("event")
    entity = (((event.get("payload") or {}).get("payment") or {}).get("entity")) or {}
    provider_order_id = entity.get("order_id")
    if not provider_order_id:
        return {"event": name, "handled": False}

    order = Order.query.filter_by(tenant_id=t.id, provider_order_id=provider_order_id).first()
    if order is None or order.payment_status != PaymentStatus.PENDING.value:
        return {"event": name, "handled": False}

    tx = _find_transaction(order, provider_order_id=provider_order_id)
    if name in ("payment.captured", "order.paid"):
        if tx:
            tx.status = "paid"
            tx.provider_payment_id = entity.get("id")
            tx.verified_at = now_utc()
        try:
            settled = order_service.mark_paid(order, provider="razorpay", provider_payment_id=entity.get("id"))
        except ConflictError:
            settled = False
        return {"event": name, "handled": settled}
    if name == "payment.failed":
        if tx:
            tx.status = "failed"
            tx.error_json = {"code": entity.get("error_code"), "description": entity.get("error_description")}
        try:
            order_service.mark_failed(order, reason=entity.get("error_description") or "payment failed")
        except ConflictError:
            return {"event": name, "handled": False}
        return {"event": name, "handled": True}
    return {"event": name, "handled": False}


def sweep_pending(timeout_minutes, now=None) -> int:
    """Cancel gateway orders that stayed pending past the timeout."""
    cutoff = (now or now_utc()) - timedelta(minutes=int(timeout_minutes))
    stale = Order.query.filter(
        Order.payment_status == PaymentStatus.PENDING.value,
        Order.payment_method != "cash",
        Order.created_at < cutoff,
    ).all()
    swept = 0
    for order in stale:
        try:
            order_service.cancel_order(order.tenant_id, order.id, reason="Payment timed out")
        except ConflictError:
            continue
        swept += 1
    if swept:
        logger.info("swept %s pending order(s) older than %s", swept, cutoff)
    return swept
