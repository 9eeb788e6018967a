"""Holoo client tests with ``httpx.Client`` methods monkeypatched."""

import uuid
from datetime import datetime

import httpx
import pytest

from apps.erp.holoo import HolooClient, invoice_payload
from apps.orders.domain import Order, OrderItem, PaymentMethod, ShippingAddress, Totals
from apps.orders.errors import SyncError


class DummyResp:
    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise httpx.HTTPStatusError("err", request=None, response=None)

    def json(self):
        return self._json


class Clock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def holoo(clock):
    return HolooClient(
        base_url="https://holoo.test/v1/",
        username="u",
        password="p",
        dbname="db",
        enabled=True,
        token_lifespan=1500,
        timeout=1,
        clock=clock,
    )


@pytest.fixture
def logins(monkeypatch):
    calls = []

    def fake_post(self, url, json=None, headers=None, **kw):
        if url.endswith("/Login"):
            calls.append(json)
            return DummyResp(200, {"State": True, "Token": f"tok-{len(calls)}"})
        return DummyResp(200, {"ErpCode": 555})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    return calls


def make_order(is_paid=True, full_name="Sara Ahmadi"):
    return Order(
        id=uuid.uuid4(),
        user_id=1,
        items=[OrderItem("SKU-A", "Tea Glass", 100000, 2, erp_code="1001", erp_item_code="A-1")],
        totals=Totals(200000, 15000, 16200, 20000, 211200),
        shipping_address=ShippingAddress(full_name, "street", "123"),
        payment_method=PaymentMethod.ZARINPAL if is_paid else PaymentMethod.COD,
        is_paid=is_paid,
    )


def test_token_is_cached_until_it_expires(holoo, logins, clock, monkeypatch):
    auth = []

    def fake_get(self, url, headers=None, **kw):
        auth.append(headers["Authorization"])
        return DummyResp(200, {"product": [{"ErpCode": 1}]})

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)

    assert holoo.get_products(1, 10) == [{"ErpCode": 1}]
    holoo.get_products(2, 10)
    clock.t += 1500
    holoo.get_products(3, 10)

    assert logins == [{"userinfo": {"username": "u", "userpass": "p", "dbname": "db"}}] * 2
    assert auth == ["tok-1", "tok-1", "tok-2"]


def test_401_logs_in_again_and_retries_once(holoo, logins, monkeypatch):
    responses = [DummyResp(401), DummyResp(200, {"maingroup": [{"ErpCode": "10", "Name": "Tea"}]})]
    monkeypatch.setattr(httpx.Client, "get", lambda self, url, **kw: responses.pop(0), raising=True)

    assert holoo.get_main_groups() == [{"ErpCode": "10", "Name": "Tea"}]
    assert len(logins) == 2


def test_second_401_is_raised(holoo, logins, monkeypatch):
    monkeypatch.setattr(httpx.Client, "get", lambda self, url, **kw: DummyResp(401), raising=True)
    with pytest.raises(httpx.HTTPStatusError):
        holoo.get_side_groups()
    assert len(logins) == 2


def test_rejected_login(holoo, monkeypatch):
    monkeypatch.setattr(
        httpx.Client, "post", lambda self, url, **kw: DummyResp(200, {"State": False, "Error": "bad password"})
    )
    with pytest.raises(SyncError, match="bad password"):
        holoo.login()


def test_unreachable_login_is_a_sync_error(holoo, monkeypatch):
    def boom(self, url, **kw):
        raise httpx.ConnectError("down")

    monkeypatch.setattr(httpx.Client, "post", boom)
    with pytest.raises(SyncError):
        holoo.token()


def test_create_invoice_returns_erp_code(holoo, logins):
    assert holoo.create_invoice(make_order()) == "555"


def test_create_invoice_without_code(holoo, monkeypatch):
    def fake_post(self, url, json=None, headers=None, **kw):
        if url.endswith("/Login"):
            return DummyResp(200, {"State": True, "Token": "t"})
        return DummyResp(200, {"Error": "customer missing"})

    monkeypatch.setattr(httpx.Client, "post", fake_post)
    with pytest.raises(SyncError, match="customer missing"):
        holoo.create_invoice(make_order())


def test_update_inventory_needs_acknowledgement(holoo, logins, monkeypatch):
    sent = []

    def fake_put(self, url, json=None, headers=None, **kw):
        sent.append(json)
        return DummyResp(200, {"ErpCode": json["ErpCode"]} if json["Few"] else {})

    monkeypatch.setattr(httpx.Client, "put", fake_put)
    holoo.update_inventory("1001", 7)
    with pytest.raises(SyncError):
        holoo.update_inventory("1001", 0)
    assert sent[0] == {"ErpCode": "1001", "Few": 7}


def test_disabled_client_never_calls_out(monkeypatch):
    def forbidden(self, url, **kw):
        raise AssertionError("no HTTP expected")

    for method in ("get", "post", "put"):
        monkeypatch.setattr(httpx.Client, method, forbidden)
    client = HolooClient(base_url="https://holoo.test", enabled=False)

    assert client.request("get", "Product/1/10") == {"success": True, "data": []}
    assert client.get_products() == []
    client.update_inventory("1001", 3)
    assert client.token() == "simulated-token"


def test_invoice_payload_for_paid_and_cod_orders():
    now = datetime(2024, 5, 17, 14, 5, 9)
    paid = invoice_payload(make_order(is_paid=True), now)
    cod = invoice_payload(make_order(is_paid=False, full_name=""), now)

    assert paid["Type"] == 2
    assert paid["Date"] == "2024/05/17"
    assert paid["Time"] == "14:05:09"
    assert (paid["SumNaghd"], paid["SumNesiyeh"]) == (211200, 0)
    assert (cod["SumNaghd"], cod["SumNesiyeh"]) == (0, 211200)
    assert cod["CustomerName"] == "Customer"
    assert paid["Detail"] == [
        {
            "Row": 1,
            "ProductCode": "A-1",
            "ProductName": "Tea Glass",
            "ProductErpCode": "1001",
            "Few": 2,
            "Karton": 0,
            "Price": 100000,
            "comment": "",
            "SumPrice": 200000,
            "Levy": 0,
            "Scot": 0,
            "PersentDiscount": 0,
            "Discount": 0,
        }
    ]
