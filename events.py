# events.py
import logging
from collections import defaultdict

logger = logging.getLogger(__name__)

ORDER_CREATED = "order.created"
ORDER_PAID = "order.paid"
ORDER_FAILED = "order.failed"
ORDER_CANCELLED = "order.cancelled"


class EventBus:
    """In-process publish/subscribe for order domain events.

    Handlers run synchronously after the emitting transaction commits. A
    failing handler is logged and does not affect the request that emitted
    the event or the other handlers.
    """

    def __init__(self):
        self._handlers = defaultdict(list)

    def subscribe(self, name, handler):
        self._handlers[name].append(handler)
        return lambda: self.unsubscribe(name, handler)

    def unsubscribe(self, name, handler):
        if handler in self._handlers.get(name, []):
            self._handlers[name].remove(handler)

    def emit(self, name, payload):
        logger.info("event %s order=%s", name, payload.get("orderId"))
        for handler in list(self._handlers.get(name, [])):
            try:
                handler(payload)
            except Exception:
                logger.exception("handler for %s failed", name)


bus = EventBus()
