import json
import uuid

import pytest
from django.core.management import call_command

from apps.erp import providers as erp_providers
from apps.erp.models import ProductSyncState
from apps.orders import providers as order_providers
from apps.orders.models import OrderModel

pytestmark = pytest.mark.django_db

ADDRESS = {"full_name": "Sara Ahmadi", "address": "12 Valiasr St", "postal_code": "1234567890"}


class EnabledHoloo:
    enabled = True

    def __init__(self):
        self.stock_updates = []

    def create_invoice(self, order):
        return "7788"

    def update_inventory(self, erp_code, stock):
        self.stock_updates.append((erp_code, stock))


def cod_order(client):
    client.post("/api/cart/items/", {"sku": "SKU-A", "quantity": 2}, content_type="application/json")
    r = client.post(
        "/api/orders/", {"shipping_address": ADDRESS, "payment_method": "cod"}, content_type="application/json"
    )
    assert r.status_code == 201
    return r.json()["id"]


def webhook(client, body, key="test-webhook-key"):
    return client.post("/api/erp/webhook/", body, content_type="application/json", headers={"X-API-Key": key})


def test_pending_and_manual_sync(auth_client, admin_client, stubs, monkeypatch):
    oid = cod_order(auth_client)

    body = admin_client.get("/api/erp/pending/").json()
    assert body["count"] == 1
    assert body["results"][0]["order_id"] == oid
    assert body["results"][0]["erp_sync_status"] == "pending"

    holoo = EnabledHoloo()
    monkeypatch.setattr(order_providers, "holoo_client", lambda: holoo)
    r = admin_client.post(f"/api/erp/orders/{oid}/sync/")

    assert r.status_code == 200
    assert r.json()["erp_sync_status"] == "success"
    assert r.json()["erp_invoice_id"] == "7788"
    assert OrderModel.objects.get(id=oid).erp_sync_attempts == 1
    # stock is pushed after the invoice, as the store now holds it
    assert holoo.stock_updates == [("1001", 8)]
    assert ProductSyncState.objects.get(sku="SKU-A").status == "success"
    assert admin_client.get("/api/erp/pending/").json()["count"] == 0


def test_manual_sync_unknown_order(admin_client, stubs):
    r = admin_client.post(f"/api/erp/orders/{uuid.uuid4()}/sync/")
    assert r.status_code == 404
    assert r.json()["detail"] == "ORDER_NOT_FOUND"


def test_erp_endpoints_are_admin_only(auth_client, stubs):
    assert auth_client.get("/api/erp/pending/").status_code == 403


@pytest.mark.parametrize("limit", ["abc", "0", "101"])
def test_pending_rejects_a_bad_limit(admin_client, stubs, limit):
    r = admin_client.get("/api/erp/pending/", {"limit": limit})
    assert r.status_code == 400
    assert r.json()["detail"] == "VALIDATION_ERROR"


def test_webhook_applies_stock(client, inventory):
    changed = json.dumps([{"ErpCode": 1001, "Few": 7}, {"ErpCode": "999", "Few": 1}])
    r = webhook(client, {"operation": "UPDATE", "Table": "Product", "changedfields": changed})

    assert r.status_code == 200
    assert r.json() == {"applied": 1, "unknown": ["999"]}
    assert inventory.stock("SKU-A") == 7


def test_webhook_ignores_other_tables(client, inventory):
    r = webhook(client, {"operation": "INSERT", "Table": "Customer", "changedfields": "[]"})
    assert r.json() == {"applied": 0, "ignored": True}


@pytest.mark.parametrize("key", ["", "wrong", "kl\u00fcssel-\u0645\u0641\u062a\u0627\u062d"])
def test_webhook_rejects_bad_key(client, inventory, key):
    r = webhook(client, {"operation": "UPDATE", "Table": "Product"}, key=key)
    assert r.status_code == 401
    assert r.json()["detail"] == "UNAUTHORIZED"


def test_webhook_disabled_without_configured_key(client, inventory, settings):
    settings.HOLOO_WEBHOOK_API_KEY = ""
    r = webhook(client, {"operation": "UPDATE", "Table": "Product"}, key="")
    assert r.status_code == 401


def test_erp_sync_command_once(inventory, monkeypatch, capsys):
    class Catalog:
        enabled = True

        def get_main_groups(self):
            return [{"ErpCode": "10", "Name": "Tea"}]

        def get_side_groups(self):
            return []

        def get_products(self, page=1, limit=100):
            return [{"ErpCode": "3001", "Name": "Green tea", "SellPrice": 90000, "Few": 12}] if page == 1 else []

    monkeypatch.setattr(erp_providers, "holoo_client", lambda: Catalog())
    call_command("erp_sync", "--once")

    out = capsys.readouterr().out
    assert "'created': 1" in out
    assert inventory.stock("ERP-3001") == 12
