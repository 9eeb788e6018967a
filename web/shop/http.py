"""Shared outbound HTTP plumbing: circuit breakers, retries, context headers.

The inventory service and the payment gateway are reached through ``httpx``
with the same resilience policy:

- Request correlation: ``X-Request-ID`` is copied from the ContextVar set by
  ``RequestIdMiddleware``.
- One circuit breaker per downstream dependency, opened after
  ``HTTP_CIRCUIT_FAIL_THRESHOLD`` consecutive failures and tried again
  (HALF_OPEN) after ``HTTP_CIRCUIT_RESET_TIMEOUT`` seconds.
- A bounded retry with exponential backoff on transport errors and 5xx.
  Business responses (4xx listed by the caller) are returned immediately and
  do not count as circuit failures.
"""

import logging
import threading
import time
from typing import Iterable, Optional

import httpx
from django.conf import settings

from .middleware import REQUEST_ID_CTX

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful trial call; only one trial call may be in
      flight; a failed trial call opens the circuit again.

    Thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_trial_in_flight = False

    @property
    def state(self) -> str:
        """Current state, applying the OPEN → HALF_OPEN timeout."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_trial_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check the breaker before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            RuntimeError: ``CIRCUIT_OPEN`` when open, ``CIRCUIT_HALF_OPEN_BUSY``
                when a HALF_OPEN trial call is already in flight.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise RuntimeError("CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._half_open_trial_in_flight:
                    raise RuntimeError("CIRCUIT_HALF_OPEN_BUSY")
                self._half_open_trial_in_flight = True
            return st

    def on_success(self):
        """Record a successful call and close the breaker."""
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_trial_in_flight = False

    def on_failure(self):
        """Record a failed call; open the breaker at the threshold."""
        with self._lock:
            self._failures += 1
            if self._failures >= self.fail_threshold and self._state != "OPEN":
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_trial_in_flight = False
                logger.warning("circuit opened", extra={"dependency": self.name, "failures": self._failures})

    def on_finish(self):
        """Release the HALF_OPEN trial flag after a call finishes."""
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_trial_in_flight = False


_breakers: dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def breaker_for(name: str) -> CircuitBreaker:
    """Return the process-wide breaker for a downstream dependency."""
    with _breakers_lock:
        cb = _breakers.get(name)
        if cb is None:
            cb = CircuitBreaker(
                name,
                getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
                getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
            )
            _breakers[name] = cb
        return cb


def request_headers(extra: Optional[dict] = None) -> dict:
    """Build outgoing headers with ``X-Request-ID`` and any extras.

    Args:
        extra: Optional additional headers.

    Returns:
        dict: Headers for the outgoing request.
    """
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def retry_policy() -> tuple[int, float, float]:
    """Return ``(max_retries, backoff_base_seconds, max_sleep_seconds)``."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
        getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
    )


def should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport errors or HTTP 5xx."""
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


def call_with_retry(
    breaker: CircuitBreaker,
    method: str,
    url: str,
    *,
    timeout: float,
    json: Optional[dict] = None,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    business_statuses: Iterable[int] = (),
    max_retries: Optional[int] = None,
):
    """Perform one logical HTTP call under the breaker and retry policy.

    The call is attempted once plus up to ``HTTP_RETRY_MAX`` retries. 2xx
    responses and the caller's ``business_statuses`` are returned as-is and
    reset the breaker; other 4xx raise immediately; transport errors and 5xx
    are retried and, once exhausted, counted as one circuit failure.

    Args:
        breaker: Breaker guarding the dependency.
        method: ``get``, ``post`` or ``put``.
        url: Absolute URL.
        timeout: Client timeout in seconds.
        json: Optional JSON body.
        params: Optional query parameters.
        headers: Optional extra headers.
        business_statuses: Non-2xx statuses the caller maps to domain outcomes.
        max_retries: Overrides ``HTTP_RETRY_MAX`` for calls that must not repeat.

    Returns:
        httpx.Response: The final response.

    Raises:
        RuntimeError: If the circuit is open.
        httpx.RequestError: Transport failure after retries.
        httpx.HTTPStatusError: Non-retriable or exhausted error status.
    """
    default_retries, backoff, cap = retry_policy()
    if max_retries is None:
        max_retries = default_retries
    business = set(business_statuses)
    tries = 0

    state = breaker.before_call()
    hdrs = request_headers({"X-Circuit-State": state, "X-Retry-Count": "0", **(headers or {})})
    kwargs = {"headers": hdrs}
    if json is not None:
        kwargs["json"] = json
    if params is not None:
        kwargs["params"] = params

    try:
        with httpx.Client(timeout=timeout) as client:
            send = getattr(client, method.lower())
            while True:
                resp = None
                exc = None
                try:
                    resp = send(url, **kwargs)
                    if 200 <= resp.status_code < 300 or resp.status_code in business:
                        breaker.on_success()
                        return resp
                    if not should_retry(resp, None):
                        breaker.on_success()  # the dependency answered; the request was wrong
                        resp.raise_for_status()
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                hdrs["X-Retry-Count"] = str(tries)

                if tries > max_retries:
                    breaker.on_failure()
                    logger.warning(
                        "downstream call failed",
                        extra={"dependency": breaker.name, "url": url, "tries": tries},
                    )
                    if exc:
                        raise exc
                    resp.raise_for_status()

                time.sleep(min(backoff * (2 ** (tries - 1)), cap))
    finally:
        breaker.on_finish()
