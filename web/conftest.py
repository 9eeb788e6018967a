"""Shared fixtures: in-process stubs behind the providers, users and API clients."""

from types import SimpleNamespace

import pytest
from django.contrib.auth import get_user_model
from django.core.cache import cache

from apps.orders import providers as order_providers
from apps.orders.adapters import (
    GatewayStub,
    InMemoryCartStore,
    InMemoryCouponStore,
    InMemoryCustomerStore,
    InMemoryInvoiceCounter,
    InMemoryOrderStore,
    InventoryStub,
    RecordingErpScheduler,
)
from apps.orders.coupons import CouponEvaluator
from apps.orders.domain import ProductSnapshot, ShippingAddress
from apps.orders.inventory import InventoryAdjuster
from apps.orders.invoicing import InvoiceNumbering
from apps.orders.lifecycle import OrderLifecycle
from apps.payments import providers as payment_providers
from apps.payments.service import PaymentService
from shop.http import _breakers


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.HOLOO_ENABLED = False
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    settings.HTTP_RETRY_MAX_SLEEP = 0.0
    settings.HOLOO_WEBHOOK_API_KEY = "test-webhook-key"
    settings.FRONTEND_URL = "http://shop.test"


@pytest.fixture(autouse=True)
def reset_breakers():
    # breakers are process-wide; start every test CLOSED
    _breakers.clear()
    yield
    _breakers.clear()


@pytest.fixture(autouse=True)
def reset_throttles():
    cache.clear()


def seed_products() -> dict:
    return {
        "SKU-A": ProductSnapshot("SKU-A", "Tea Glass", 100000, 10, erp_code="1001", erp_item_code="A-1"),
        "SKU-B": ProductSnapshot("SKU-B", "Saffron", 50000, 3, discount_price=45000),
        "SKU-U": ProductSnapshot("SKU-U", "Gift Card", 20000, 0, track_inventory=False),
    }


@pytest.fixture
def inventory(monkeypatch):
    """Fresh stock store used by every service the providers build."""
    stub = InventoryStub(seed_products())
    monkeypatch.setattr(order_providers, "_stub_inventory", stub)
    return stub


@pytest.fixture
def gateway(monkeypatch):
    stub = GatewayStub()
    monkeypatch.setattr(payment_providers, "_stub_gateway", stub)
    return stub


@pytest.fixture
def erp_scheduler(monkeypatch):
    recorder = RecordingErpScheduler()
    monkeypatch.setattr(order_providers, "erp_scheduler", lambda: recorder)
    return recorder


@pytest.fixture
def user(db):
    return get_user_model().objects.create_user(
        "customer", email="customer@example.com", password="pw", first_name="Sara", last_name="Ahmadi"
    )


@pytest.fixture
def other_user(db):
    return get_user_model().objects.create_user("other", email="other@example.com", password="pw")


@pytest.fixture
def auth_client(client, user):
    client.force_login(user)
    return client


@pytest.fixture
def stubs(inventory, gateway, erp_scheduler):
    """All external collaborators replaced by in-process stubs."""
    return {"inventory": inventory, "gateway": gateway, "erp": erp_scheduler}


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def order_confirmed(self, order):
        self.events.append(("order_confirmed", order.id))

    def order_shipped(self, order):
        self.events.append(("order_shipped", order.id))

    def status_changed(self, order, previous):
        self.events.append(("status_changed", order.id, previous.value, order.status.value))


@pytest.fixture
def memory():
    """Order lifecycle and payment service over in-memory stores only."""
    carts = InMemoryCartStore()
    coupons = InMemoryCouponStore()
    orders = InMemoryOrderStore()
    stock = InventoryStub(seed_products())
    gateway = GatewayStub()
    erp = RecordingErpScheduler()
    customers = InMemoryCustomerStore()
    notifier = RecordingNotifier()
    lifecycle = OrderLifecycle(
        orders=orders,
        carts=carts,
        coupons=coupons,
        evaluator=CouponEvaluator(coupons),
        inventory=InventoryAdjuster(stock),
        invoicing=InvoiceNumbering(InMemoryInvoiceCounter()),
        notifier=notifier,
        erp=erp,
    )
    payments = PaymentService(lifecycle=lifecycle, gateway=gateway, customers=customers, carts=carts)
    return SimpleNamespace(
        carts=carts,
        coupons=coupons,
        orders=orders,
        stock=stock,
        gateway=gateway,
        erp=erp,
        customers=customers,
        notifier=notifier,
        lifecycle=lifecycle,
        payments=payments,
    )


ADDRESS = ShippingAddress("Sara Ahmadi", "12 Valiasr St, Tehran", "1234567890", "09120000000")


@pytest.fixture
def address():
    return ADDRESS
