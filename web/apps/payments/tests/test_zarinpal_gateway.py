import httpx
import pytest

from apps.orders.errors import GatewayError
from apps.payments.gateway import ZarinpalGateway, status_message


class DummyResp:
    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise httpx.HTTPStatusError("err", request=None, response=None)

    def json(self):
        return self._json


@pytest.fixture
def gateway():
    return ZarinpalGateway(merchant_id="merchant-1", callback_url="http://shop.test/api/payments/", sandbox=True)


def test_payment_request(monkeypatch, gateway):
    sent = {}

    def fake_post(self, url, json=None, headers=None, **kw):
        sent.update(url=url, json=json)
        return DummyResp(200, {"Status": 100, "Authority": "A0000001"})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    req = gateway.create_payment_request(211200, "Payment for order INV-1", "a@b.c", "0912", "oid-1")

    assert req.authority == "A0000001"
    assert req.redirect_url == "https://sandbox.zarinpal.com/pg/StartPay/A0000001"
    assert sent["url"].endswith("/PaymentRequest.json")
    assert sent["json"]["MerchantID"] == "merchant-1"
    assert sent["json"]["Amount"] == 211200
    assert sent["json"]["CallbackURL"] == "http://shop.test/api/payments/oid-1/verify/"


def test_payment_request_refused(monkeypatch, gateway):
    monkeypatch.setattr(httpx.Client, "post", lambda self, url, **kw: DummyResp(200, {"Status": -3}))
    with pytest.raises(GatewayError) as e:
        gateway.create_payment_request(1, "x", "", "", "oid")
    assert e.value.status == -3
    assert "Shaparak" in e.value.message


@pytest.mark.parametrize("status", [100, 101])
def test_verify_accepts_already_verified(monkeypatch, gateway, status):
    monkeypatch.setattr(httpx.Client, "post", lambda self, url, **kw: DummyResp(200, {"Status": status, "RefID": 4242}))
    assert gateway.verify("A1", 1000) == "4242"


def test_verify_failure_maps_message(monkeypatch, gateway):
    monkeypatch.setattr(httpx.Client, "post", lambda self, url, **kw: DummyResp(200, {"Status": -21}))
    with pytest.raises(GatewayError) as e:
        gateway.verify("A1", 1000)
    assert e.value.status == -21


def test_list_unverified(monkeypatch, gateway):
    body = {"Status": 100, "Authorities": [{"Authority": "A1", "Amount": 1000}]}
    monkeypatch.setattr(httpx.Client, "post", lambda self, url, **kw: DummyResp(200, body))
    assert gateway.list_unverified() == [{"Authority": "A1", "Amount": 1000}]


def test_unmapped_status_message():
    assert status_message(-999) == "unknown error"
    assert status_message(None) == "unknown error"
