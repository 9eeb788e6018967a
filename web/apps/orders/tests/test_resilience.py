# web/apps/orders/tests/test_resilience.py
import httpx
import pytest

from apps.orders.domain import StockLine
from apps.orders.http_adapters import HttpInventoryClient
from apps.payments.gateway import ZarinpalGateway
from shop.http import CircuitBreaker


class R:
    def __init__(self, status_code, data=None):
        self.status_code = status_code
        self._data = data or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise httpx.HTTPStatusError("err", request=None, response=None)

    def json(self):
        return self._data


def test_inventory_retries_on_5xx(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 1
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return R(500)
        assert headers["X-Retry-Count"] == "1"
        return R(200, {"reserved": True})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    monkeypatch.setattr("time.sleep", lambda *a, **k: None, raising=True)

    HttpInventoryClient(base_url="http://x").reserve([StockLine("SKU-A", 1)])
    assert calls["n"] == 2


def test_circuit_opens_after_repeated_failures(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 0
    settings.HTTP_CIRCUIT_FAIL_THRESHOLD = 2
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        raise httpx.ConnectError("down")

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    client = HttpInventoryClient(base_url="http://x")
    for _ in range(2):
        with pytest.raises(httpx.ConnectError):
            client.release([StockLine("SKU-A", 1)])

    with pytest.raises(RuntimeError, match="CIRCUIT_OPEN"):
        client.release([StockLine("SKU-A", 1)])
    assert calls["n"] == 2


def test_half_open_allows_one_trial_call(monkeypatch):
    clock = {"t": 100.0}
    monkeypatch.setattr("time.monotonic", lambda: clock["t"])
    cb = CircuitBreaker("x", fail_threshold=1, reset_timeout=10)
    cb.on_failure()
    assert cb.state == "OPEN"

    clock["t"] += 10
    assert cb.before_call() == "HALF_OPEN"
    with pytest.raises(RuntimeError, match="CIRCUIT_HALF_OPEN_BUSY"):
        cb.before_call()
    cb.on_success()
    assert cb.state == "CLOSED"


def test_gateway_refund_is_never_retried(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        return R(502)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    monkeypatch.setattr("time.sleep", lambda *a, **k: None, raising=True)

    with pytest.raises(httpx.HTTPStatusError):
        ZarinpalGateway(merchant_id="m", callback_url="http://cb", sandbox=True).refund("A1", 1000)
    assert calls["n"] == 1
