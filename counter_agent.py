# counter_agent.py
"""
Counter-device notification subscriber.

One agent per process receives `pos_order` pushes, fetches the order,
plays the alert and prints. A page that wants to handle pushes itself sets
the override first and clears it when done:

    with agent.page_override():
        ...

Two independent de-dup windows apply: a push for the same order within
2 s of the previous one is dropped at ingress, and an order printed in the
last 5 minutes is never printed again.
"""
import io
import logging
import math
import os
import struct
import threading
import time
import wave
from collections import OrderedDict
from contextlib import contextmanager

import printing

logger = logging.getLogger(__name__)

INGRESS_WINDOW = 2.0
PRINT_WINDOW = 5 * 60.0
PRINTABLE_STATUSES = {"paid", "completed"}
ONLINE_SOURCES = {"qr_code", "qr_order", "online", "web", "app", "customer"}

BEEP_FREQUENCY = 2500
BEEP_PULSES = 6
BEEP_PULSE_SECONDS = 0.12
BEEP_GAP_SECONDS = 0.08
BEEP_SAMPLE_RATE = 22050


class ExpiringSet:
    """Recently seen keys, each forgotten `ttl` seconds after it was added."""

    def __init__(self, ttl, clock=time.monotonic, maxsize=512):
        self.ttl = ttl
        self.clock = clock
        self.maxsize = maxsize
        self._items = OrderedDict()
        self._lock = threading.Lock()

    def _expire(self, now):
        while self._items:
            key, added = next(iter(self._items.items()))
            if now - added < self.ttl and len(self._items) <= self.maxsize:
                break
            self._items.popitem(last=False)

    def __contains__(self, key):
        with self._lock:
            self._expire(self.clock())
            return key in self._items

    def add(self, key):
        with self._lock:
            now = self.clock()
            self._items.pop(key, None)
            self._items[key] = now
            self._expire(now)

    def seen_recently(self, key) -> bool:
        """True when `key` was already present; records it either way."""
        with self._lock:
            now = self.clock()
            self._expire(now)
            hit = key in self._items
            self._items.pop(key, None)
            self._items[key] = now
            return hit

    def discard(self, key):
        with self._lock:
            self._items.pop(key, None)

    def clear(self):
        with self._lock:
            self._items.clear()

    def __len__(self):
        with self._lock:
            self._expire(self.clock())
            return len(self._items)


def synth_beep(pulses=BEEP_PULSES, frequency=BEEP_FREQUENCY, rate=BEEP_SAMPLE_RATE) -> bytes:
    """A mono 16-bit WAV of `pulses` short tones."""
    tone = int(rate * BEEP_PULSE_SECONDS)
    gap = int(rate * BEEP_GAP_SECONDS)
    frames = bytearray()
    for p in range(pulses):
        for i in range(tone):
            frames += struct.pack("<h", int(0.6 * 32767 * math.sin(2 * math.pi * frequency * i / rate)))
        if p < pulses - 1:
            frames += b"\x00\x00" * gap

    buf = io.BytesIO()
    with wave.open(buf, "wb") as w:
        w.setnchannels(1)
        w.setsampwidth(2)
        w.setframerate(rate)
        w.writeframes(bytes(frames))
    return buf.getvalue()


class SpoolPrinter:
    """Writes each print job to a spool directory for the OS print service."""

    def __init__(self, spool_dir):
        self.spool_dir = spool_dir

    def print_text(self, text, job_name="receipt"):
        os.makedirs(self.spool_dir, exist_ok=True)
        path = os.path.join(self.spool_dir, f"{int(time.time() * 1000)}_{job_name}.txt")
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(text)
        return path


class LoggingAudio:
    def play_url(self, url):
        logger.info("alert sound %s", url)

    def play_wav(self, data):
        logger.info("alert tone (%s bytes)", len(data))


class CounterAgent:
    def __init__(self, client, printer, audio=None, clock=time.monotonic):
        self.client = client
        self.printer = printer
        self.audio = audio or LoggingAudio()
        self.clock = clock
        self.tenant_id = None
        self.info = {}
        self.running = False
        self.override = False
        self.ingress = ExpiringSet(INGRESS_WINDOW, clock)
        self.printed = ExpiringSet(PRINT_WINDOW, clock)
        self._lock = threading.Lock()

    # ---------------------------
    # lifecycle
    # ---------------------------

    def start(self, tenant_id, info=None):
        """`info` carries the receipt header (name, gstNumber, fssaiNumber)
        and the optional beepAudioUrl from tenant settings."""
        with self._lock:
            if self.running and str(self.tenant_id) == str(tenant_id):
                return
            self.tenant_id = tenant_id
            self.info = dict(info or {})
            self.running = True
            self.ingress.clear()
        logger.info("counter agent started for tenant %s", tenant_id)

    def stop(self):
        with self._lock:
            self.running = False
            self.tenant_id = None
            self.ingress.clear()
            self.printed.clear()
        logger.info("counter agent stopped")

    def set_override(self, value: bool):
        self.override = bool(value)

    @contextmanager
    def page_override(self):
        self.set_override(True)
        try:
            yield self
        finally:
            self.set_override(False)

    # ---------------------------
    # push handling
    # ---------------------------

    def handle_notification(self, data: dict) -> str:
        if not self.running or (data or {}).get("type") != "pos_order":
            return "ignored"
        tenant = data.get("theaterId")
        if tenant is not None and str(tenant) != str(self.tenant_id):
            return "ignored"
        order_id = str(data.get("orderId") or "")
        if not order_id:
            return "ignored"

        if self.ingress.seen_recently(order_id):
            return "duplicate"
        if self.override:
            return "overridden"
        if order_id in self.printed:
            return "already_printed"

        resp = self.client.get(f"/api/orders/theater/{self.tenant_id}/{order_id}")
        if not resp.ok:
            logger.error("order %s fetch failed: %s", order_id, resp.error)
            return "fetch_failed"
        order = (resp.data or {}).get("data") or {}

        status = ((order.get("payment") or {}).get("status") or "").lower()
        if status not in PRINTABLE_STATUSES or order.get("source") not in ONLINE_SOURCES:
            return "skipped"

        self.beep()
        return self.print_order(order)

    def beep(self):
        url = self.info.get("beepAudioUrl")
        if url:
            try:
                self.audio.play_url(url)
                return
            except Exception:
                logger.exception("custom alert %s failed, using built-in tone", url)
        self.audio.play_wav(synth_beep())

    def print_order(self, order: dict) -> str:
        """Main receipt, plus kitchen slips for POS orders; once per order per window."""
        key = str(order.get("id"))
        with self._lock:
            if key in self.printed:
                return "already_printed"
            self.printed.add(key)

        try:
            self.printer.print_text(printing.format_receipt(order, self.info), job_name=f"receipt_{key}")
            if printing.wants_category_slips(order):
                for slip in printing.category_slips(order):
                    self.printer.print_text(slip["text"], job_name=f"slip_{key}")
        except OSError as e:
            logger.error("printing order %s failed: %s", key, e)
            self.printed.discard(key)
            return "print_failed"
        logger.info("order %s printed", order.get("orderNumber"))
        return "printed"


_agent = None


def get_agent(client=None, printer=None, audio=None) -> CounterAgent:
    """The process-wide agent; created on first call."""
    global _agent
    if _agent is None:
        if client is None or printer is None:
            raise RuntimeError("counter agent needs a client and a printer on first use")
        _agent = CounterAgent(client, printer, audio)
    return _agent
