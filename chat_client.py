# chat_client.py
"""
Device-side view of one chat thread.

While a thread is open it is polled every 5 s. A poll that is still running
when the next tick fires is skipped. Marking the thread read is debounced by
500 ms and happens at most once per opened thread.
"""
import logging
import threading

logger = logging.getLogger(__name__)

POLL_INTERVAL = 5.0
MARK_READ_DEBOUNCE = 0.5


class ChatThreadClient:
    def __init__(self, client, interval=POLL_INTERVAL, debounce=MARK_READ_DEBOUNCE,
                 timer_factory=threading.Timer, on_messages=None):
        self.client = client
        self.interval = interval
        self.debounce = debounce
        self.timer_factory = timer_factory
        self.on_messages = on_messages
        self.tenant_id = None
        self.messages = []
        self._lock = threading.Lock()
        self._polling = False
        self._marked = set()
        self._mark_timer = None
        self._stop = threading.Event()
        self._thread = None

    # ---------------------------
    # thread selection
    # ---------------------------

    def open_thread(self, tenant_id):
        with self._lock:
            if self.tenant_id is not None and str(self.tenant_id) == str(tenant_id):
                return
            self._cancel_mark()
            self._marked.discard(str(self.tenant_id))
            self.tenant_id = tenant_id
            self.messages = []
        self.poll_once()
        self.request_mark_read()

    def close_thread(self):
        with self._lock:
            self._cancel_mark()
            self._marked.discard(str(self.tenant_id))
            self.tenant_id = None
            self.messages = []

    # ---------------------------
    # polling
    # ---------------------------

    def poll_once(self):
        """Fetch messages newer than the last one seen. None when skipped."""
        with self._lock:
            if self._polling or self.tenant_id is None:
                return None
            self._polling = True
            tenant_id = self.tenant_id
            after = self.messages[-1]["id"] if self.messages else None

        try:
            params = {"after": after} if after is not None else None
            resp = self.client.get(f"/api/chat/messages/{tenant_id}", params=params)
            if not resp.ok:
                logger.warning("chat poll for %s failed: %s", tenant_id, resp.error)
                return []
            new = (resp.data or {}).get("data") or []
            with self._lock:
                if str(self.tenant_id) != str(tenant_id):
                    return []
                self.messages.extend(new)
            if new and self.on_messages:
                self.on_messages(tenant_id, new)
            return new
        finally:
            with self._lock:
                self._polling = False

    def send(self, text=None, image=None):
        """`image` is (filename, raw bytes, mime); sent as multipart."""
        if self.tenant_id is None:
            raise RuntimeError("no chat thread open")
        if image:
            filename, raw, mime = image
            resp = self.client.post(
                "/api/chat/messages",
                data={"theaterId": str(self.tenant_id), "text": text or ""},
                files={"image": (filename, raw, mime)},
            )
        else:
            resp = self.client.post("/api/chat/messages", json_body={"theaterId": self.tenant_id, "text": text})
        resp.raise_for_error()
        message = (resp.data or {}).get("data")
        if message:
            with self._lock:
                self.messages.append(message)
        return message

    # ---------------------------
    # read receipts
    # ---------------------------

    def _cancel_mark(self):
        if self._mark_timer is not None:
            self._mark_timer.cancel()
            self._mark_timer = None

    def request_mark_read(self):
        with self._lock:
            tenant_id = self.tenant_id
            if tenant_id is None or str(tenant_id) in self._marked:
                return False
            self._cancel_mark()
            self._mark_timer = self.timer_factory(self.debounce, self._flush_mark_read, args=(tenant_id,))
            self._mark_timer.start()
        return True

    def _flush_mark_read(self, tenant_id):
        with self._lock:
            self._mark_timer = None
            if str(self.tenant_id) != str(tenant_id) or str(tenant_id) in self._marked:
                return
        resp = self.client.put(f"/api/chat/messages/{tenant_id}/mark-read")
        if resp.ok:
            with self._lock:
                if str(self.tenant_id) == str(tenant_id):
                    self._marked.add(str(tenant_id))
        else:
            logger.warning("mark-read for %s failed: %s", tenant_id, resp.error)

    # ---------------------------
    # timer
    # ---------------------------

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="chat-poll", daemon=True)
        self._thread.start()

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                self.poll_once()
            except Exception:
                logger.exception("chat poll crashed")

    def stop(self):
        self._stop.set()
        with self._lock:
            self._cancel_mark()
        if self._thread:
            self._thread.join(timeout=self.interval * 2)
            self._thread = None
