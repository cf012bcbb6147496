# offline_queue.py
"""
Counter-device queue for orders placed while the backend is unreachable.

Entries live in one JSON file per tenant and are replayed FIFO by
`SyncScheduler`. Each entry carries a `queueId` that the server uses as the
order's client reference, so replaying an entry that already reached the
server returns the existing order instead of creating a second one.

Retry policy per entry:
  * 2xx                          removed from the queue
  * 5xx with a DB-disconnect body stays pending, retryCount unchanged, next try in 5 s
  * backend unreachable          same as above
  * any other failure            failed, retryCount + 1, next try after 2/4/8 s
  * retryCount above 3           reset to 0 and pending on the next cycle
"""
import json
import logging
import os
import threading
import time
import uuid

from http_client import BACKEND_UNAVAILABLE, TIMEOUT

logger = logging.getLogger(__name__)

SYNC_INTERVAL = 1.0
PROBE_TIMEOUT = 3
RETRY_DELAYS = (2, 4, 8)
MAX_RETRIES = 3
DB_RETRY_DELAY = 5
INTAKE_PATH = "/api/orders/theater"

DB_DISCONNECT_SIGNATURES = (
    "Database connection",
    "not available",
    "Connection was force closed",
    "DB_UNAVAILABLE",
    "OperationalError",
)

PENDING = "pending"
SYNCING = "syncing"
FAILED = "failed"


class OfflineOrderQueue:
    def __init__(self, tenant_id, directory=None, clock=time.time):
        self.tenant_id = tenant_id
        self.clock = clock
        self.path = os.path.join(directory, f"offline_orders_{tenant_id}.json") if directory else None
        self._lock = threading.RLock()
        self._entries = []
        self._load()

    def _load(self):
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                entries = json.load(fh)
        except (OSError, ValueError) as e:
            logger.error("offline queue %s unreadable, starting empty: %s", self.path, e)
            return
        # an entry left mid-upload by a crash is simply retried; saved attempt
        # times belong to the previous boot and are not carried over
        for e in entries:
            if e.get("syncStatus") == SYNCING:
                e["syncStatus"] = PENDING
            e["nextAttemptAt"] = 0
        self._entries = entries

    def _save(self):
        if not self.path:
            return
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(self._entries, fh)
        os.replace(tmp, self.path)

    def enqueue(self, payload: dict) -> dict:
        entry = {
            "queueId": payload.get("queueId") or uuid.uuid4().hex,
            "payload": dict(payload),
            "retryCount": 0,
            "syncStatus": PENDING,
            "lastError": None,
            "lastAttemptAt": None,
            "nextAttemptAt": 0,
            "queuedAt": self.clock(),
        }
        with self._lock:
            self._entries.append(entry)
            self._save()
        logger.info("order queued offline as %s", entry["queueId"])
        return dict(entry)

    def entries(self):
        with self._lock:
            return [dict(e) for e in self._entries]

    def get(self, queue_id):
        with self._lock:
            for e in self._entries:
                if e["queueId"] == queue_id:
                    return dict(e)
        return None

    def update(self, queue_id, **fields):
        with self._lock:
            for e in self._entries:
                if e["queueId"] == queue_id:
                    e.update(fields)
                    self._save()
                    return dict(e)
        return None

    def remove(self, queue_id):
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e["queueId"] != queue_id]
            if len(self._entries) != before:
                self._save()
                return True
        return False

    def retry_failed(self) -> int:
        """Manual "retry failed": clear counters and errors on every failed entry."""
        n = 0
        with self._lock:
            for e in self._entries:
                if e["syncStatus"] == FAILED:
                    e.update(syncStatus=PENDING, retryCount=0, lastError=None, nextAttemptAt=0)
                    n += 1
            if n:
                self._save()
        return n

    def __len__(self):
        with self._lock:
            return len(self._entries)


def transform_order(entry: dict, tenant_id) -> dict:
    """Map a queued cart onto the intake schema."""
    src = entry["payload"]
    items = []
    for item in src.get("items") or []:
        out = {
            "productId": item.get("productId") or item.get("product"),
            "quantity": item.get("quantity"),
            "unitPrice": item.get("unitPrice") or item.get("price") or 0,
            "note": item.get("note") or item.get("specialInstructions") or item.get("notes") or None,
        }
        if item.get("comboId"):
            out["comboId"] = item["comboId"]
            out.pop("productId", None)
        size = item.get("size") or item.get("productSize") or item.get("sizeLabel") or item.get("variant")
        if isinstance(size, dict):
            size = size.get("size") or size.get("label")
        if size:
            out["size"] = str(size)
        items.append(out)

    payload = {
        "theaterId": src.get("theaterId") or tenant_id,
        "queueId": entry["queueId"],
        "items": items,
        "source": src.get("source") or "pos",
        "paymentMethod": src.get("paymentMethod") or "cash",
        "customerName": src.get("customerName") or "POS Customer",
        "notes": src.get("notes") or src.get("orderNotes") or "",
    }
    totals = {k: src[k] for k in ("subtotal", "tax", "total", "totalDiscount") if src.get(k) is not None}
    if totals:
        payload["totals"] = totals
    for k in ("qrName", "seat", "customerPhone"):
        if src.get(k):
            payload[k] = src[k]
    return payload


def is_db_disconnect(response) -> bool:
    if response.status < 500:
        return False
    message = (response.error or {}).get("message") or ""
    haystack = f"{message} {response.text or ''} {response.code or ''}"
    return any(sig in haystack for sig in DB_DISCONNECT_SIGNATURES)


def is_unreachable(response) -> bool:
    return response.status == 0 and response.code in (BACKEND_UNAVAILABLE, TIMEOUT)


class SyncScheduler:
    """Replays the queue every `interval` seconds while the backend answers."""

    def __init__(self, queue: OfflineOrderQueue, client, clock=time.time, interval=SYNC_INTERVAL,
                 on_synced=None):
        self.queue = queue
        self.client = client
        self.clock = clock
        self.interval = interval
        self.on_synced = on_synced
        self._busy = threading.Lock()
        self._stop = threading.Event()
        self._thread = None

    def run_once(self) -> dict:
        if not self._busy.acquire(blocking=False):
            return {"skipped": True}
        try:
            return self._cycle()
        finally:
            self._busy.release()

    def _cycle(self) -> dict:
        report = {"online": False, "synced": 0, "failed": 0, "deferred": 0}
        if not len(self.queue):
            report["online"] = True
            return report
        if not self.client.probe(timeout=PROBE_TIMEOUT):
            return report
        report["online"] = True

        for entry in self.queue.entries():
            if entry["syncStatus"] == SYNCING:
                continue
            if entry["retryCount"] > MAX_RETRIES:
                logger.info("rescuing stuck offline order %s", entry["queueId"])
                entry = self.queue.update(entry["queueId"], retryCount=0, syncStatus=PENDING,
                                          lastError=None, nextAttemptAt=0)
            if (entry.get("nextAttemptAt") or 0) > self.clock():
                report["deferred"] += 1
                continue
            self._send(entry, report)
        return report

    def _send(self, entry, report):
        qid = entry["queueId"]
        now = self.clock()
        self.queue.update(qid, syncStatus=SYNCING, lastAttemptAt=now)
        resp = self.client.post(INTAKE_PATH, json_body=transform_order(entry, self.queue.tenant_id))

        if resp.ok:
            self.queue.remove(qid)
            report["synced"] += 1
            logger.info("offline order %s synced", qid)
            if self.on_synced:
                self.on_synced(qid, resp.data)
            return

        message = (resp.error or {}).get("message") or f"HTTP {resp.status}"
        if is_db_disconnect(resp) or is_unreachable(resp):
            self.queue.update(qid, syncStatus=PENDING, lastError=message, nextAttemptAt=now + DB_RETRY_DELAY)
            report["deferred"] += 1
            logger.warning("offline order %s waiting for backend: %s", qid, message)
            return

        retries = entry["retryCount"] + 1
        delay = RETRY_DELAYS[min(retries, len(RETRY_DELAYS)) - 1]
        self.queue.update(qid, syncStatus=FAILED, retryCount=retries, lastError=message, nextAttemptAt=now + delay)
        report["failed"] += 1
        logger.error("offline order %s rejected (attempt %s): %s", qid, retries, message)

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="offline-sync", daemon=True)
        self._thread.start()

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("offline sync cycle crashed")

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.interval * 2)
            self._thread = None
