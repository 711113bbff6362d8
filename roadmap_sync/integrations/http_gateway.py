"""
Shared HTTP plumbing for the outbound integration gateways.

All outbound HTTP calls to the Source System and the Target System go through
a subclass of HttpGateway. Direct `requests` calls in services or blueprints
are FORBIDDEN.

  - Retry: max 2 attempts, exponential backoff (1 s → 4 s)
  - Timeout: GATEWAY_TIMEOUT_SECONDS (default 30 s, overridable per call)
  - Circuit breaker: ≥5 failures in 60 s → 30 s pause per workspace
  - Structured GatewayResult returned to the caller; never raises

Threading: circuit breaker state is an in-memory dict guarded by a lock.
For multi-worker deployments each worker keeps its own breaker.

Testability: pass a mock `session` to the gateway constructor in tests
instead of letting it create a real requests.Session internally.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import requests
from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

# ── Circuit breaker constants ──────────────────────────────────────────────
_CB_FAILURE_THRESHOLD = 5          # failures within window before opening
_CB_WINDOW_SECONDS = 60            # failure counting window (seconds)
_CB_OPEN_DURATION_SECONDS = 30     # how long circuit stays open

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 4]    # sleep[0] after 1st fail, sleep[1] after 2nd

# 4xx responses that are worth retrying; every other 4xx fails immediately
_RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})

# ── Default request timeout ────────────────────────────────────────────────
_DEFAULT_TIMEOUT = 30


class GatewayResult:
    """Structured return value from gateway calls.

    Attributes:
        ok:             True if the call succeeded (HTTP 2xx + no exception).
        status_code:    HTTP status code (None if network-level failure).
        data:           Parsed JSON response body (dict or list), else None.
        error:          Human-readable error message or None.
        duration_ms:    Round-trip latency in milliseconds.
        payload_hash:   SHA-256 of the serialised request payload (hex).
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: dict | list | None,
        error: str | None,
        duration_ms: int,
        payload_hash: str | None = None,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms
        self.payload_hash = payload_hash

    def __repr__(self):
        return f"<GatewayResult ok={self.ok} status={self.status_code}>"


class HttpGateway:
    """Base class: circuit breaker, retries and result shaping.

    Subclasses provide `_auth_headers(config)` and a `system_name` used in
    log lines and error messages.
    """

    system_name = "external system"
    content_type = "application/json"

    def __init__(self, session: requests.Session | None = None) -> None:
        # Inject custom session for testing; create real one lazily otherwise.
        self._session: requests.Session | None = session

        # Circuit breaker: workspace_id → {"failures": [datetime, ...], "open_until": datetime|None}
        self._cb_state: dict[str, dict] = {}
        self._cb_lock = threading.Lock()

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def _auth_headers(self, config: Any) -> dict:
        raise NotImplementedError

    # ── Circuit breaker ───────────────────────────────────────────────────────

    def _ensure_cb_entry(self, workspace_id: str) -> dict:
        if workspace_id not in self._cb_state:
            self._cb_state[workspace_id] = {"failures": [], "open_until": None}
        return self._cb_state[workspace_id]

    def _circuit_closed(self, workspace_id: str) -> bool:
        """Return True if the circuit allows calls; False if open (paused)."""
        with self._cb_lock:
            state = self._ensure_cb_entry(workspace_id)
            now = datetime.now(timezone.utc)

            if state["open_until"] and now < state["open_until"]:
                logger.warning(
                    "%s circuit open for workspace=%s until %s",
                    self.system_name, workspace_id, state["open_until"],
                )
                return False

            # Prune failures outside the counting window
            window_start = now - timedelta(seconds=_CB_WINDOW_SECONDS)
            state["failures"] = [f for f in state["failures"] if f >= window_start]

            if len(state["failures"]) >= _CB_FAILURE_THRESHOLD:
                state["open_until"] = now + timedelta(seconds=_CB_OPEN_DURATION_SECONDS)
                logger.error(
                    "%s circuit opened for workspace=%s: %d failures in %ds window",
                    self.system_name,
                    workspace_id,
                    len(state["failures"]),
                    _CB_WINDOW_SECONDS,
                )
                return False

            return True

    def _record_failure(self, workspace_id: str) -> None:
        with self._cb_lock:
            state = self._ensure_cb_entry(workspace_id)
            state["failures"].append(datetime.now(timezone.utc))

    def _record_success(self, workspace_id: str) -> None:
        """On success, reset failure history and close the circuit."""
        with self._cb_lock:
            state = self._ensure_cb_entry(workspace_id)
            state["failures"].clear()
            state["open_until"] = None

    def reset_circuit(self, workspace_id: str | None = None) -> None:
        """Forget breaker state for one workspace, or for all of them."""
        with self._cb_lock:
            if workspace_id is None:
                self._cb_state.clear()
            else:
                self._cb_state.pop(workspace_id, None)

    # ── Core request dispatcher ───────────────────────────────────────────────

    def _compute_payload_hash(self, payload: dict | list | None) -> str | None:
        """Return SHA-256 hex digest of the JSON-serialised payload."""
        if payload is None:
            return None
        raw = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(raw).hexdigest()

    @staticmethod
    def _resolve_timeout(timeout: int | None) -> int:
        if timeout is not None:
            return timeout
        if has_app_context():
            return current_app.config.get("GATEWAY_TIMEOUT_SECONDS", _DEFAULT_TIMEOUT)
        return _DEFAULT_TIMEOUT

    def _do_request(
        self,
        method: str,
        url: str,
        headers: dict,
        *,
        json_body: dict | list | None = None,
        params: dict | None = None,
        timeout: int = _DEFAULT_TIMEOUT,
    ) -> requests.Response:
        """Execute a single HTTP request, no retry logic here."""
        kwargs: dict[str, Any] = {"headers": headers, "timeout": timeout}
        if json_body is not None:
            # Serialised by hand so json-patch bodies keep their content type.
            kwargs["data"] = json.dumps(json_body, default=str)
        if params:
            kwargs["params"] = params
        return self.session.request(method, url, **kwargs)

    def request(
        self,
        method: str,
        url: str,
        *,
        config: Any,
        workspace_id: str,
        json_body: dict | list | None = None,
        params: dict | None = None,
        timeout: int | None = None,
        content_type: str | None = None,
    ) -> GatewayResult:
        """Execute an authenticated request with retries.

        Implements:
          1. Circuit breaker check: reject immediately if workspace is paused.
          2. Auth header injection (subclass-specific).
          3. Execute request; on 2xx → return success result.
          4. On failure (5xx, 408/429 or network error):
             - Record failure for circuit breaker.
             - Retry up to _RETRY_MAX times with exponential backoff.
             - If all retries exhausted → return error result.
          5. Any other 4xx fails at once without retrying.

        Returns:
            GatewayResult, always (never raises). Callers check .ok.
        """
        if not self._circuit_closed(workspace_id):
            return GatewayResult(
                ok=False,
                status_code=None,
                data=None,
                error=f"Circuit breaker is open: {self.system_name} calls temporarily suspended",
                duration_ms=0,
            )

        timeout = self._resolve_timeout(timeout)
        payload_hash = self._compute_payload_hash(json_body)
        last_error: str = "Unknown error"
        last_status: int | None = None

        for attempt in range(_RETRY_MAX + 1):  # 0, 1, 2
            try:
                headers = {
                    **self._auth_headers(config),
                    "Content-Type": content_type or self.content_type,
                    "Accept": "application/json",
                }

                t0 = time.perf_counter()
                resp = self._do_request(
                    method, url, headers,
                    json_body=json_body, params=params, timeout=timeout,
                )
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_status = resp.status_code

                if resp.ok:
                    self._record_success(workspace_id)
                    try:
                        data = resp.json() if resp.content else {}
                    except ValueError:
                        data = {}
                    return GatewayResult(
                        ok=True,
                        status_code=resp.status_code,
                        data=data,
                        error=None,
                        duration_ms=duration_ms,
                        payload_hash=payload_hash,
                    )

                last_error = f"HTTP {resp.status_code}: {resp.text[:500]}"
                self._record_failure(workspace_id)
                logger.warning(
                    "%s request failed attempt=%d/%d status=%d url=%s workspace=%s",
                    self.system_name, attempt + 1, _RETRY_MAX + 1,
                    resp.status_code, url, workspace_id,
                )
                if resp.status_code < 500 and resp.status_code not in _RETRYABLE_CLIENT_STATUSES:
                    return GatewayResult(
                        ok=False,
                        status_code=resp.status_code,
                        data=None,
                        error=last_error,
                        duration_ms=duration_ms,
                        payload_hash=payload_hash,
                    )

            except requests.Timeout:
                last_error = f"Request timed out after {timeout}s"
                self._record_failure(workspace_id)
                logger.warning(
                    "%s request timed out attempt=%d/%d url=%s workspace=%s",
                    self.system_name, attempt + 1, _RETRY_MAX + 1, url, workspace_id,
                )

            except requests.RequestException as exc:
                last_error = str(exc)[:500]
                self._record_failure(workspace_id)
                logger.warning(
                    "%s network error attempt=%d/%d url=%s workspace=%s error=%s",
                    self.system_name, attempt + 1, _RETRY_MAX + 1, url, workspace_id, last_error,
                )

            # Sleep before retry (except after last attempt)
            if attempt < _RETRY_MAX:
                sleep_s = _RETRY_BACKOFF_SECONDS[min(attempt, len(_RETRY_BACKOFF_SECONDS) - 1)]
                logger.info("Retrying %s request in %ss (attempt %d)", self.system_name, sleep_s, attempt + 2)
                time.sleep(sleep_s)

        # All retries exhausted
        t_total = sum(_RETRY_BACKOFF_SECONDS[:_RETRY_MAX]) * 1000
        return GatewayResult(
            ok=False,
            status_code=last_status,
            data=None,
            error=last_error,
            duration_ms=t_total,
            payload_hash=payload_hash,
        )
