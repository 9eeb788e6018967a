"""Tests for the inventory service API on an in-memory SQLite database."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from main import app, get_repo
from repo import InventoryRepo, init_db, make_engine


@pytest.fixture
def repo():
    engine = make_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(engine)
    return InventoryRepo(engine)


@pytest.fixture
def api(repo):
    app.dependency_overrides[get_repo] = lambda: repo
    # no context manager: the startup hook would wait for PostgreSQL
    yield TestClient(app)
    app.dependency_overrides.clear()


def put_product(api, sku, **fields):
    body = {"name": sku.title(), "price": 100000, "stock": 10, **fields}
    r = api.put(f"/products/{sku}", json=body)
    assert r.status_code == 200, r.text
    return r.json()


def test_health(api):
    assert api.get("/health").json() == {"ok": True}


def test_upsert_and_read_products(api):
    assert put_product(api, "SKU-A", erp_code="1001")["created"] is True
    assert put_product(api, "SKU-A", price=90000, erp_code="1001")["created"] is False

    r = api.get("/products", params={"sku": ["sku-a", "SKU-NOPE"]})
    products = r.json()["products"]
    assert [p["sku"] for p in products] == ["SKU-A"]
    assert products[0]["price"] == 90000
    assert products[0]["in_stock"] is True

    assert api.get("/products/SKU-NOPE").status_code == 404


def test_reserve_is_all_or_nothing(api):
    put_product(api, "SKU-A", stock=5)
    put_product(api, "SKU-B", stock=1)

    r = api.post("/reserve", json={"items": [{"sku": "SKU-A", "quantity": 2}, {"sku": "SKU-B", "quantity": 2}]})

    assert r.status_code == 422
    assert r.json()["detail"] == {"reserved": False, "detail": "INSUFFICIENT_STOCK", "skus": ["SKU-B"]}
    assert api.get("/products/SKU-A").json()["stock"] == 5


def test_reserve_and_release(api):
    put_product(api, "SKU-A", stock=5)

    r = api.post("/reserve", json={"items": [{"sku": "SKU-A", "quantity": 2}, {"sku": "SKU-A", "quantity": 1}]})
    assert r.json() == {"reserved": True, "detail": None}
    product = api.get("/products/SKU-A").json()
    assert (product["stock"], product["sold"]) == (2, 3)

    api.post("/release", json={"items": [{"sku": "SKU-A", "quantity": 5}]})
    product = api.get("/products/SKU-A").json()
    assert (product["stock"], product["sold"]) == (7, 0)


def test_untracked_products_are_never_short(api):
    put_product(api, "SKU-U", stock=0, track_inventory=False)
    r = api.post("/reserve", json={"items": [{"sku": "SKU-U", "quantity": 3}]})
    assert r.status_code == 200
    product = api.get("/products/SKU-U").json()
    assert (product["stock"], product["sold"]) == (0, 3)


def test_unknown_sku_is_short(api):
    r = api.post("/reserve", json={"items": [{"sku": "SKU-NOPE", "quantity": 1}]})
    assert r.status_code == 422
    assert r.json()["detail"]["skus"] == ["SKU-NOPE"]


def test_invalid_items_are_rejected(api):
    assert api.post("/reserve", json={"items": []}).status_code == 422
    assert api.post("/reserve", json={"items": [{"sku": "SKU-A", "quantity": 0}]}).status_code == 422


def test_erp_product_upsert(api):
    api.put("/categories/10", json={"name": "Tea", "is_main": True})
    body = {"name": "Earl Grey", "price": 120000, "stock": 4, "erp_item_code": "EG", "category_code": "10"}

    assert api.put("/erp/products/2001", json=body).json() == {"result": "created"}
    assert api.put("/erp/products/2001", json=body).json() == {"result": "skipped"}
    assert api.put("/erp/products/2001", json={**body, "update_all": True}).json() == {"result": "updated"}
    assert api.put("/erp/products/2001", json={**body, "stock": 6}).json() == {"result": "updated"}

    product = api.get("/products/ERP-2001").json()
    assert (product["stock"], product["category_code"], product["erp_code"]) == (6, "10", "2001")


def test_erp_product_with_unknown_category(api):
    api.put("/erp/products/2002", json={"name": "Loose", "category_code": "404"})
    assert api.get("/products/ERP-2002").json()["category_code"] is None


def test_erp_stock_by_code(api):
    put_product(api, "SKU-A", erp_code="1001")
    assert api.put("/erp/products/1001/stock", json={"stock": 3}).json() == {"sku": "SKU-A"}
    assert api.put("/erp/products/1001/stock", json={"stock": -4}).status_code == 200
    assert api.get("/products/SKU-A").json()["stock"] == 0
    assert api.put("/erp/products/9999/stock", json={"stock": 1}).status_code == 404


def test_categories(api):
    assert api.put("/categories/10", json={"name": "Tea", "is_main": True}).json() == {"created": True}
    api.put("/categories/11", json={"name": "Black", "parent_code": "10"})
    assert api.get("/categories/11").json() == {"code": "11", "name": "Black", "parent_code": "10", "is_main": False}
    assert api.get("/categories/99").status_code == 404


def test_request_id_is_echoed(api):
    r = api.get("/health", headers={"X-Request-ID": "rid-1"})
    assert r.headers["X-Request-ID"] == "rid-1"


def test_product_upsert_is_logged(api, caplog):
    with caplog.at_level("INFO", logger="inventory"):
        put_product(api, "SKU-L")
    record = next(r for r in caplog.records if r.getMessage() == "product upserted")
    assert (record.sku, record.was_created) == ("SKU-L", True)
