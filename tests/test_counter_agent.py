import wave
import io

from counter_agent import CounterAgent, ExpiringSet, synth_beep
from http_client import ApiResponse

INFO = {"name": "Galaxy Cinemas", "gstNumber": "29ABCDE1234F1Z5"}


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _order(order_id=11, status="paid", source="qr_order"):
    return {
        "id": order_id, "orderNumber": "GA0011", "source": source, "qrName": "Screen-1", "seat": "A1",
        "createdAt": "2026-10-19T18:30:00",
        "items": [
            {"name": "Popcorn", "category": "Snacks", "quantity": 2, "lineTotal": 189.0},
            {"name": "Cola", "category": "Beverages", "quantity": 1, "lineTotal": 60.0, "size": "Large"},
        ],
        "subtotal": 230.0, "cgst": 5.75, "sgst": 5.75, "total": 249.0,
        "payment": {"method": "razorpay", "status": status},
    }


class FakeApi:
    def __init__(self, order):
        self.order = order
        self.calls = []

    def get(self, path, **kw):
        self.calls.append(path)
        return ApiResponse(200, {"success": True, "data": self.order})


class Printer:
    def __init__(self, fail=False):
        self.jobs = []
        self.fail = fail

    def print_text(self, text, job_name="receipt"):
        if self.fail:
            raise OSError("printer offline")
        self.jobs.append((job_name, text))


class Audio:
    def __init__(self, broken_url=False):
        self.played = []
        self.broken_url = broken_url

    def play_url(self, url):
        if self.broken_url:
            raise RuntimeError("cannot decode")
        self.played.append(("url", url))

    def play_wav(self, data):
        self.played.append(("wav", len(data)))


def _agent(order=None, printer=None, audio=None, info=INFO):
    clock = Clock()
    agent = CounterAgent(FakeApi(order or _order()), printer or Printer(), audio or Audio(), clock=clock)
    agent.start(7, info)
    return agent, clock


def _push(order_id=11, theater=7):
    return {"type": "pos_order", "orderId": str(order_id), "theaterId": str(theater), "orderNumber": "GA0011"}


def test_paid_online_order_beeps_and_prints_receipt():
    agent, _ = _agent()
    assert agent.handle_notification(_push()) == "printed"
    assert agent.client.calls == ["/api/orders/theater/7/11"]
    assert agent.audio.played[0][0] == "wav"
    jobs = agent.printer.jobs
    assert len(jobs) == 1
    assert "GSTIN: 29ABCDE1234F1Z5" in jobs[0][1]
    assert "Cola (Large)" in jobs[0][1]


def test_repeated_push_is_dropped_at_ingress_then_print_window():
    agent, clock = _agent()
    assert agent.handle_notification(_push()) == "printed"
    clock.now += 1
    assert agent.handle_notification(_push()) == "duplicate"
    clock.now += 5
    assert agent.handle_notification(_push()) == "already_printed"
    clock.now += 5 * 60
    assert agent.handle_notification(_push()) == "printed"
    assert len(agent.printer.jobs) == 2


def test_other_tenants_and_foreign_messages_are_ignored():
    agent, _ = _agent()
    assert agent.handle_notification(_push(theater=8)) == "ignored"
    assert agent.handle_notification({"type": "chat", "orderId": "11"}) == "ignored"
    agent.stop()
    assert agent.handle_notification(_push()) == "ignored"


def test_unpaid_and_counter_orders_are_skipped():
    agent, _ = _agent(order=_order(status="pending"))
    assert agent.handle_notification(_push()) == "skipped"
    agent, _ = _agent(order=_order(source="pos"))
    assert agent.handle_notification(_push()) == "skipped"
    assert agent.printer.jobs == []


def test_page_override_suppresses_the_agent():
    agent, _ = _agent()
    with agent.page_override():
        assert agent.handle_notification(_push()) == "overridden"
    assert agent.override is False
    assert agent.client.calls == []


def test_print_failure_allows_a_later_reprint():
    printer = Printer(fail=True)
    agent, clock = _agent(printer=printer)
    assert agent.handle_notification(_push()) == "print_failed"
    printer.fail = False
    clock.now += 3
    assert agent.handle_notification(_push()) == "printed"


def test_pos_orders_get_a_slip_per_category():
    agent, _ = _agent()
    assert agent.print_order(_order(source="pos")) == "printed"
    names = [name for name, _ in agent.printer.jobs]
    assert names == ["receipt_11", "slip_11", "slip_11"]
    assert "SNACKS" in agent.printer.jobs[1][1]
    assert "BEVERAGES" in agent.printer.jobs[2][1]
    assert agent.print_order(_order(source="pos")) == "already_printed"


def test_custom_beep_falls_back_to_built_in_tone():
    audio = Audio(broken_url=True)
    agent, _ = _agent(audio=audio, info=dict(INFO, beepAudioUrl="https://cdn/beep.mp3"))
    agent.beep()
    assert audio.played == [("wav", len(synth_beep()))]

    audio = Audio()
    agent, _ = _agent(audio=audio, info=dict(INFO, beepAudioUrl="https://cdn/beep.mp3"))
    agent.beep()
    assert audio.played == [("url", "https://cdn/beep.mp3")]


def test_synth_beep_is_a_valid_wav():
    with wave.open(io.BytesIO(synth_beep()), "rb") as w:
        assert w.getnchannels() == 1
        assert w.getsampwidth() == 2
        assert w.getframerate() == 22050
        assert w.getnframes() > 0


def test_expiring_set_forgets_after_ttl():
    clock = Clock()
    seen = ExpiringSet(2.0, clock)
    assert seen.seen_recently("a") is False
    assert seen.seen_recently("a") is True
    clock.now = 2.5
    assert "a" not in seen
    assert len(seen) == 0
