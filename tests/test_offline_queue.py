from http_client import ApiResponse, BACKEND_UNAVAILABLE
from offline_queue import OfflineOrderQueue, SyncScheduler, transform_order, PENDING, FAILED

DB_DOWN = {
    "success": False,
    "error": "Database connection not available - will retry when connection is restored",
    "code": "DB_UNAVAILABLE",
}


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeApi:
    def __init__(self, *responses, online=True):
        self.responses = list(responses)
        self.online = online
        self.posted = []

    def probe(self, timeout=3):
        return self.online

    def post(self, path, json_body=None, **kw):
        self.posted.append((path, json_body))
        return self.responses.pop(0)


def _db_down():
    return ApiResponse(500, DB_DOWN, text=str(DB_DOWN),
                       error={"code": "DB_UNAVAILABLE", "status": 500, "message": DB_DOWN["error"]})


def _created():
    return ApiResponse(201, {"success": True, "data": {"id": 1}})


def _rejected():
    return ApiResponse(400, {"error": "Order must contain at least one item"},
                       error={"code": "VALIDATION_ERROR", "status": 400, "message": "Order must contain at least one item"})


def _cart():
    return {"items": [{"product": 5, "quantity": 2, "price": 90, "notes": "no salt"}], "paymentMethod": "cash"}


def test_db_disconnect_keeps_entry_pending_then_syncs(tmp_path):
    clock = Clock()
    queue = OfflineOrderQueue(7, str(tmp_path), clock=clock)
    entry = queue.enqueue(_cart())
    api = FakeApi(_db_down(), _created())
    sync = SyncScheduler(queue, api, clock=clock)

    report = sync.run_once()
    assert report["deferred"] == 1
    stored = queue.get(entry["queueId"])
    assert stored["syncStatus"] == PENDING
    assert stored["retryCount"] == 0
    assert "Database connection" in stored["lastError"]

    clock.now += 1
    assert sync.run_once()["deferred"] == 1
    assert len(api.posted) == 1

    clock.now += 5
    report = sync.run_once()
    assert report["synced"] == 1
    assert len(queue) == 0
    assert api.posted[1][1]["queueId"] == entry["queueId"]


def test_unreachable_backend_is_treated_like_db_disconnect(tmp_path):
    clock = Clock()
    queue = OfflineOrderQueue(7, str(tmp_path), clock=clock)
    entry = queue.enqueue(_cart())
    unreachable = ApiResponse(0, error={"code": BACKEND_UNAVAILABLE, "status": 0, "message": "Backend is not reachable"})
    SyncScheduler(queue, FakeApi(unreachable), clock=clock).run_once()
    assert queue.get(entry["queueId"])["retryCount"] == 0


def test_offline_probe_skips_the_cycle(tmp_path):
    queue = OfflineOrderQueue(7, str(tmp_path))
    queue.enqueue(_cart())
    api = FakeApi(online=False)
    assert SyncScheduler(queue, api).run_once()["online"] is False
    assert api.posted == []


def test_rejections_back_off_and_stuck_entries_are_rescued(tmp_path):
    clock = Clock()
    queue = OfflineOrderQueue(7, str(tmp_path), clock=clock)
    entry = queue.enqueue(_cart())
    api = FakeApi(*[_rejected() for _ in range(4)], _created())
    sync = SyncScheduler(queue, api, clock=clock)

    for expected_retries, delay in ((1, 2), (2, 4), (3, 8), (4, 8)):
        sync.run_once()
        stored = queue.get(entry["queueId"])
        assert stored["syncStatus"] == FAILED
        assert stored["retryCount"] == expected_retries
        assert stored["nextAttemptAt"] == clock.now + delay
        clock.now += delay

    # retryCount above the limit is reset and retried on the next cycle
    report = sync.run_once()
    assert report["synced"] == 1
    assert len(queue) == 0


def test_manual_retry_clears_failures(tmp_path):
    clock = Clock()
    queue = OfflineOrderQueue(7, str(tmp_path), clock=clock)
    entry = queue.enqueue(_cart())
    SyncScheduler(queue, FakeApi(_rejected()), clock=clock).run_once()

    assert queue.retry_failed() == 1
    stored = queue.get(entry["queueId"])
    assert (stored["syncStatus"], stored["retryCount"], stored["lastError"]) == (PENDING, 0, None)


def test_queue_survives_restart(tmp_path):
    queue = OfflineOrderQueue(7, str(tmp_path))
    entry = queue.enqueue(_cart())
    queue.update(entry["queueId"], syncStatus="syncing")

    reloaded = OfflineOrderQueue(7, str(tmp_path))
    assert len(reloaded) == 1
    assert reloaded.get(entry["queueId"])["syncStatus"] == PENDING


def test_transform_maps_cart_fields():
    entry = {"queueId": "q-1", "payload": {
        "items": [
            {"product": 5, "quantity": 2, "price": 90, "notes": "no salt", "size": {"size": "Large"}},
            {"comboId": 3, "quantity": 1, "unitPrice": 199},
        ],
        "orderNotes": "table 4",
        "total": 379,
    }}
    payload = transform_order(entry, 7)
    assert payload["theaterId"] == 7
    assert payload["queueId"] == "q-1"
    assert payload["source"] == "pos"
    assert payload["paymentMethod"] == "cash"
    assert payload["notes"] == "table 4"
    assert payload["totals"] == {"total": 379}
    assert payload["items"][0] == {"productId": 5, "quantity": 2, "unitPrice": 90, "note": "no salt", "size": "Large"}
    assert payload["items"][1]["comboId"] == 3
    assert "productId" not in payload["items"][1]


def test_backoff_does_not_survive_a_reboot(tmp_path):
    first_boot = Clock()
    first_boot.now = 864000.0
    queue = OfflineOrderQueue(7, str(tmp_path), clock=first_boot)
    entry = queue.enqueue(_cart())
    SyncScheduler(queue, FakeApi(_rejected()), clock=first_boot).run_once()
    assert queue.get(entry["queueId"])["nextAttemptAt"] == 864002.0

    second_boot = Clock()
    second_boot.now = 30.0
    reloaded = OfflineOrderQueue(7, str(tmp_path), clock=second_boot)
    api = FakeApi(_created())
    report = SyncScheduler(reloaded, api, clock=second_boot).run_once()
    assert report["synced"] == 1
    assert report["deferred"] == 0
    assert len(reloaded) == 0
    assert api.posted[0][1]["queueId"] == entry["queueId"]
