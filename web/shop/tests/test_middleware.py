import pytest

from shop.middleware import REQUEST_ID_CTX

pytestmark = pytest.mark.django_db


def test_supplied_request_id_is_echoed(client, inventory):
    r = client.get("/health/", headers={"X-Request-Id": "edge-42.a"})
    assert r.headers["X-Request-ID"] == "edge-42.a"


@pytest.mark.parametrize("supplied", [None, "", "has spaces", "x" * 200])
def test_missing_or_unusable_request_id_is_replaced(client, inventory, supplied):
    headers = {"X-Request-Id": supplied} if supplied is not None else {}
    r = client.get("/health/", headers=headers)
    rid = r.headers["X-Request-ID"]
    assert rid != supplied
    assert len(rid) == 32


def test_request_id_does_not_outlive_the_request(client, inventory):
    client.get("/health/", headers={"X-Request-Id": "short-lived"})
    assert REQUEST_ID_CTX.get() == "-"


def test_oversized_api_body_is_refused(auth_client, stubs, settings):
    settings.API_MAX_BYTES = 64
    r = auth_client.post("/api/cart/items/", {"sku": "SKU-A", "variant": "v" * 100}, content_type="application/json")
    assert r.status_code == 413
    assert r.json()["detail"] == "PAYLOAD_TOO_LARGE"

    small = auth_client.post("/api/cart/items/", {"sku": "SKU-A"}, content_type="application/json")
    assert small.status_code == 200
