"""Factories for the payment services.

The gateway is the Zarinpal client when ``USE_HTTP_ADAPTERS`` is set and an
in-memory stub that approves everything otherwise, mirroring how the stock
store is chosen in ``apps.orders.providers``.
"""

import threading

from django.conf import settings
from django.db import transaction

from apps.orders.adapters import GatewayStub
from apps.orders.providers import get_cart_store, get_order_lifecycle

from .gateway import ZarinpalGateway
from .repository import CustomerRepository
from .service import PaymentService

_stub_lock = threading.Lock()
_stub_gateway = None


def gateway_port():
    global _stub_gateway
    if getattr(settings, "USE_HTTP_ADAPTERS", False):
        return ZarinpalGateway()
    with _stub_lock:
        if _stub_gateway is None:
            _stub_gateway = GatewayStub()
        return _stub_gateway


def get_payment_service() -> PaymentService:
    return PaymentService(
        lifecycle=get_order_lifecycle(),
        gateway=gateway_port(),
        customers=CustomerRepository(),
        carts=get_cart_store(),
        atomic=transaction.atomic,
        loyalty_unit=settings.LOYALTY_POINT_UNIT,
    )
