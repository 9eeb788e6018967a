"""Service provider helpers wiring the order lifecycle with its ports.

Views never build services themselves; they ask the factories here, which
read Django settings once per call and inject the collaborators. The stock
store is the inventory service over HTTP when ``settings.USE_HTTP_ADAPTERS``
is set, and a process-wide in-memory stub otherwise (local development and
tests). The Holoo client and the ERP dispatcher are process-wide: the client
caches its token and the dispatcher owns a thread pool.
"""

import threading
from functools import lru_cache

from django.conf import settings
from django.db import transaction

from apps.erp.dispatch import InlineErpDispatcher, ThreadedErpDispatcher
from apps.erp.holoo import HolooClient
from apps.erp.repository import ProductSyncRepository
from apps.erp.sync import ErpSyncService

from .adapters import InventoryStub, LoggingNotifier
from .cart import CartService
from .coupons import CouponEvaluator
from .http_adapters import HttpInventoryClient
from .inventory import InventoryAdjuster
from .invoicing import InvoiceNumbering
from .lifecycle import OrderLifecycle
from .repository import CartRepository, CouponRepository, InvoiceCounterRepository, OrderRepository

_stub_lock = threading.Lock()
_stub_inventory = None


def inventory_port():
    """Return the stock store: the HTTP client or the shared in-memory stub."""
    global _stub_inventory
    if getattr(settings, "USE_HTTP_ADAPTERS", False):
        return HttpInventoryClient()
    with _stub_lock:
        if _stub_inventory is None:
            _stub_inventory = InventoryStub()
        return _stub_inventory


def get_cart_store() -> CartRepository:
    return CartRepository()


def get_coupon_store() -> CouponRepository:
    return CouponRepository()


def get_order_store() -> OrderRepository:
    return OrderRepository()


@lru_cache(maxsize=1)
def holoo_client() -> HolooClient:
    return HolooClient()


def get_erp_sync_service() -> ErpSyncService:
    return ErpSyncService(
        client=holoo_client(),
        orders=get_order_store(),
        catalog=inventory_port(),
        product_states=ProductSyncRepository(),
        max_attempts=settings.ERP_SYNC_MAX_ATTEMPTS,
    )


@lru_cache(maxsize=1)
def erp_scheduler():
    """Return the process-wide ERP dispatcher chosen by ``ERP_SYNC_DISPATCH``."""
    if settings.ERP_SYNC_DISPATCH == "inline":
        return InlineErpDispatcher(get_erp_sync_service)
    return ThreadedErpDispatcher(get_erp_sync_service, workers=settings.ERP_SYNC_WORKERS)


def get_cart_service() -> CartService:
    return CartService(
        carts=get_cart_store(),
        inventory=inventory_port(),
        evaluator=CouponEvaluator(get_coupon_store()),
    )


def get_order_lifecycle() -> OrderLifecycle:
    """Return an ``OrderLifecycle`` wired from settings.

    Returns:
        OrderLifecycle: Uses the ORM stores, the configured stock store, the
        logging notifier and the ERP dispatcher, with Django's transaction
        boundary and after-commit hook.
    """
    coupons = get_coupon_store()
    return OrderLifecycle(
        orders=get_order_store(),
        carts=get_cart_store(),
        coupons=coupons,
        evaluator=CouponEvaluator(coupons),
        inventory=InventoryAdjuster(inventory_port()),
        invoicing=InvoiceNumbering(InvoiceCounterRepository(), tax_rate=settings.INVOICE_TAX_RATE),
        notifier=LoggingNotifier(),
        erp=erp_scheduler(),
        shipping_rates=settings.SHIPPING_RATES,
        tax_rate=settings.ORDER_TAX_RATE,
        atomic=transaction.atomic,
        on_commit=transaction.on_commit,
    )
