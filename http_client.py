# http_client.py
"""
Device-side HTTP layer shared by the counter agent, the offline queue and
the chat poller.

`UnifiedFetch.fetch` never raises for HTTP or network trouble. It returns an
ApiResponse whose `error` carries a `code`; connection failures and the
proxy's 5xx "backend unavailable" envelope both come back as
code BACKEND_UNAVAILABLE so background timers can keep running.
"""
import hashlib
import json
import logging
import os
import threading
import time

import requests

logger = logging.getLogger(__name__)

DEFAULT_TTL = 120.0
DEFAULT_TIMEOUT = 30
MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
UNAVAILABLE_STATUSES = {500, 502, 503, 504}

BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"
TIMEOUT = "TIMEOUT"


class ClientState:
    """Credentials and tenant context persisted across device restarts."""

    def __init__(self, path=None):
        self.path = path
        self.token = None
        self.tenant_id = None
        self.user = None
        self.load()

    def load(self):
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning("client state at %s unreadable: %s", self.path, e)
            return
        self.token = data.get("token")
        self.tenant_id = data.get("tenantId")
        self.user = data.get("user")

    def save(self):
        if not self.path:
            return
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump({"token": self.token, "tenantId": self.tenant_id, "user": self.user}, fh)
        os.replace(tmp, self.path)

    def set_session(self, token, tenant_id=None, user=None):
        self.token = (token or "").strip().strip("\"'") or None
        self.tenant_id = tenant_id
        self.user = user
        self.save()

    def clear(self):
        self.set_session(None)


class ApiResponse:
    def __init__(self, status, data=None, text="", error=None, from_cache=False):
        self.status = status
        self.data = data
        self.text = text
        self.error = error
        self.from_cache = from_cache

    @property
    def ok(self):
        return self.error is None and 200 <= self.status < 300

    @property
    def code(self):
        return (self.error or {}).get("code")

    def raise_for_error(self):
        if not self.ok:
            raise ApiError(self)
        return self

    def __repr__(self):
        return f"<ApiResponse {self.status} {self.code or 'ok'}>"


class ApiError(Exception):
    def __init__(self, response: ApiResponse):
        self.response = response
        super().__init__((response.error or {}).get("message") or f"HTTP {response.status}")


class _Call:
    def __init__(self):
        self.done = threading.Event()
        self.result = None


def _parse(resp):
    text = resp.text or ""
    try:
        return (resp.json() if text else None), text
    except ValueError:
        return None, text


def _error_for(status, data, text):
    body = data if isinstance(data, dict) else {}
    code = body.get("code")
    message = body.get("error") or body.get("message") or (text[:500] if text else f"HTTP {status}")
    if status in UNAVAILABLE_STATUSES and code == BACKEND_UNAVAILABLE:
        return {"code": BACKEND_UNAVAILABLE, "status": status, "message": message}
    return {"code": code or f"HTTP_{status}", "status": status, "message": message}


class UnifiedFetch:
    def __init__(self, base_url, state=None, session=None, clock=time.monotonic,
                 timeout=DEFAULT_TIMEOUT, default_ttl=DEFAULT_TTL):
        self.base_url = base_url.rstrip("/")
        self.state = state or ClientState()
        self.session = session or requests.Session()
        self.clock = clock
        self.timeout = timeout
        self.default_ttl = default_ttl
        self._cache = {}
        self._inflight = {}
        self._lock = threading.Lock()

    def url(self, path):
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    # ---------------------------
    # cache
    # ---------------------------

    def _cached(self, key, ttl):
        with self._lock:
            entry = self._cache.get(key)
        if not entry or ttl <= 0:
            return None
        stored_at, response = entry
        if self.clock() - stored_at < ttl:
            return ApiResponse(response.status, response.data, response.text, from_cache=True)
        return None

    def invalidate(self, prefix=None):
        with self._lock:
            if prefix is None:
                self._cache.clear()
            else:
                for k in [k for k in self._cache if k.startswith(prefix)]:
                    del self._cache[k]

    @property
    def inflight_count(self):
        with self._lock:
            return len(self._inflight)

    # ---------------------------
    # requests
    # ---------------------------

    def _headers(self, headers, has_files):
        out = dict(headers or {})
        if self.state.token and not any(k.lower() == "authorization" for k in out):
            out["Authorization"] = f"Bearer {self.state.token}"
        if not has_files:
            out.setdefault("Accept", "application/json")
        return out

    def _request_key(self, method, url, json_body, params):
        raw = json.dumps([method, url, json_body, params], sort_keys=True, default=str)
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()

    def fetch(self, path, method="GET", json_body=None, data=None, files=None, params=None, headers=None,
              cache_key=None, cache_ttl=None, force_refresh=False, timeout=None) -> ApiResponse:
        method = method.upper()
        url = self.url(path)
        ttl = cache_ttl if cache_ttl is not None else (0 if method in MUTATING_METHODS else self.default_ttl)

        if cache_key and not force_refresh:
            hit = self._cached(cache_key, ttl)
            if hit:
                return hit

        key = cache_key or self._request_key(method, url, json_body, params)
        with self._lock:
            call = self._inflight.get(key)
            owner = call is None
            if owner:
                call = self._inflight[key] = _Call()

        if not owner:
            call.done.wait()
            return call.result

        try:
            result = self._send(method, url, json_body, data, files, params, headers, timeout)
            call.result = result
        finally:
            with self._lock:
                self._inflight.pop(key, None)
            call.done.set()

        if cache_key and result.ok:
            with self._lock:
                if force_refresh:
                    self._cache.pop(cache_key, None)
                if method == "GET" and ttl > 0:
                    self._cache[cache_key] = (self.clock(), result)
        return result

    def _send(self, method, url, json_body, data, files, params, headers, timeout) -> ApiResponse:
        try:
            resp = self.session.request(
                method, url,
                json=json_body, data=data, files=files, params=params,
                headers=self._headers(headers, bool(files)),
                timeout=timeout or self.timeout,
            )
        except requests.exceptions.Timeout:
            logger.warning("%s %s timed out", method, url)
            return ApiResponse(0, error={"code": TIMEOUT, "status": 0, "message": "Request timed out"})
        except requests.exceptions.RequestException as e:
            logger.warning("%s %s failed: %s", method, url, e)
            return ApiResponse(0, error={"code": BACKEND_UNAVAILABLE, "status": 0, "message": "Backend is not reachable"})

        payload, text = _parse(resp)
        if 200 <= resp.status_code < 300:
            return ApiResponse(resp.status_code, payload, text)
        return ApiResponse(resp.status_code, payload, text, error=_error_for(resp.status_code, payload, text))

    def get(self, path, **kw):
        return self.fetch(path, "GET", **kw)

    def post(self, path, json_body=None, **kw):
        return self.fetch(path, "POST", json_body=json_body, **kw)

    def put(self, path, json_body=None, **kw):
        return self.fetch(path, "PUT", json_body=json_body, **kw)

    def delete(self, path, **kw):
        return self.fetch(path, "DELETE", **kw)

    def probe(self, path="/api/health", timeout=3) -> bool:
        """Connectivity check: HEAD on the health endpoint."""
        try:
            resp = self.session.head(self.url(path), timeout=timeout)
        except requests.exceptions.RequestException:
            return False
        return resp.status_code < 500
