import threading
import time

import pytest
import requests

from http_client import UnifiedFetch, ClientState, ApiError, BACKEND_UNAVAILABLE, TIMEOUT


class FakeResponse:
    def __init__(self, status_code, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else ("" if body is None else "json")

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, **kw):
        self.requests.append((method, url, kw))
        resp = self.responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp

    def head(self, url, timeout=None):
        return self.request("HEAD", url, timeout=timeout)


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _fetch(session, clock=None, token=None):
    state = ClientState()
    state.token = token
    return UnifiedFetch("http://api.test/", state=state, session=session, clock=clock or Clock())


def test_success_attaches_bearer_token():
    session = FakeSession(FakeResponse(200, {"success": True, "data": [1]}))
    resp = _fetch(session, token="abc").get("/api/orders/theater/1")
    assert resp.ok
    assert resp.data["data"] == [1]
    method, url, kw = session.requests[0]
    assert (method, url) == ("GET", "http://api.test/api/orders/theater/1")
    assert kw["headers"]["Authorization"] == "Bearer abc"


def test_connection_error_becomes_backend_unavailable():
    session = FakeSession(requests.exceptions.ConnectionError("refused"))
    resp = _fetch(session).post("/api/orders/theater", json_body={})
    assert not resp.ok
    assert resp.status == 0
    assert resp.code == BACKEND_UNAVAILABLE


def test_timeout_has_its_own_code():
    session = FakeSession(requests.exceptions.ReadTimeout("slow"))
    assert _fetch(session).get("/x").code == TIMEOUT


def test_proxy_unavailable_envelope_is_recognised():
    session = FakeSession(FakeResponse(503, {"error": "backend down", "code": BACKEND_UNAVAILABLE}))
    resp = _fetch(session).get("/x")
    assert resp.code == BACKEND_UNAVAILABLE
    assert resp.error["message"] == "backend down"


def test_error_envelope_carries_server_code_and_raises():
    session = FakeSession(FakeResponse(409, {"success": False, "error": "Some items are out of stock",
                                              "code": "OUT_OF_STOCK"}))
    resp = _fetch(session).post("/api/orders/theater", json_body={})
    assert resp.status == 409
    assert resp.code == "OUT_OF_STOCK"
    with pytest.raises(ApiError) as exc:
        resp.raise_for_error()
    assert "out of stock" in str(exc.value)


def test_non_json_error_body_is_kept_as_text():
    session = FakeSession(FakeResponse(500, None, text="<html>Internal error</html>"))
    resp = _fetch(session).get("/x")
    assert resp.code == "HTTP_500"
    assert resp.text.startswith("<html>")


def test_cached_get_respects_ttl_and_force_refresh():
    clock = Clock()
    session = FakeSession(
        FakeResponse(200, {"data": "first"}),
        FakeResponse(200, {"data": "second"}),
        FakeResponse(200, {"data": "third"}),
    )
    api = _fetch(session, clock)

    assert api.get("/menu", cache_key="menu", cache_ttl=60).data["data"] == "first"
    hit = api.get("/menu", cache_key="menu", cache_ttl=60)
    assert hit.from_cache and hit.data["data"] == "first"

    clock.now = 61
    assert api.get("/menu", cache_key="menu", cache_ttl=60).data["data"] == "second"
    assert api.get("/menu", cache_key="menu", cache_ttl=60, force_refresh=True).data["data"] == "third"
    assert len(session.requests) == 3


def test_concurrent_identical_requests_share_one_call():
    release = threading.Event()
    calls = []

    class SlowSession(FakeSession):
        def request(self, method, url, **kw):
            calls.append(url)
            release.wait(2)
            return FakeResponse(200, {"data": "once"})

    api = _fetch(SlowSession())
    results = []
    threads = [threading.Thread(target=lambda: results.append(api.get("/slow"))) for _ in range(3)]
    threads[0].start()
    while not calls:
        time.sleep(0.01)
    for t in threads[1:]:
        t.start()
    time.sleep(0.2)
    release.set()
    for t in threads:
        t.join()

    assert len(results) == 3
    assert all(r.data["data"] == "once" for r in results)
    assert len(calls) == 1
    assert api.inflight_count == 0


def test_probe_uses_head_and_treats_5xx_as_down():
    assert _fetch(FakeSession(FakeResponse(200))).probe() is True
    assert _fetch(FakeSession(FakeResponse(503))).probe() is False
    assert _fetch(FakeSession(requests.exceptions.ConnectionError())).probe() is False


def test_client_state_persists(tmp_path):
    path = tmp_path / "state.json"
    state = ClientState(str(path))
    state.set_session('"tok-1"', tenant_id=3, user={"username": "counter1"})

    again = ClientState(str(path))
    assert again.token == "tok-1"
    assert again.tenant_id == 3
