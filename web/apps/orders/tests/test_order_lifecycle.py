"""Order lifecycle over in-memory stores: creation, transitions, cancellation."""

from decimal import Decimal

import pytest
from django.utils import timezone

from apps.orders.domain import Coupon, DiscountType, OrderStatus, PaymentMethod, ShippingAddress, ShippingMethod
from apps.orders.errors import (
    CouponNotApplicable,
    InvalidTransition,
    NotFoundError,
    OrderNotCancellable,
    OutOfStock,
    ValidationError,
)

USER = 1


def fill_cart(memory, sku="SKU-A", qty=2, price=100000, coupon=None):
    memory.carts.add_item(USER, sku, qty, price)
    if coupon:
        memory.carts.set_coupon(USER, coupon, 0)


def save10(**kw):
    return Coupon("SAVE10", DiscountType.PERCENTAGE, Decimal("10"), **kw)


def test_create_order_with_coupon_totals(memory, address):
    memory.coupons.add(save10())
    fill_cart(memory, coupon="SAVE10")

    order = memory.lifecycle.create_order(USER, address)

    assert order.totals.subtotal == 200000
    assert order.totals.discount == 20000
    assert order.totals.shipping == 15000
    assert order.totals.tax == 16200
    assert order.totals.total == 211200
    assert order.status == OrderStatus.PENDING_PAYMENT
    assert order.coupon.code == "SAVE10"
    assert order.invoice.number == f"INV-{timezone.localdate():%Y%m%d}-0001"
    # gateway orders take stock only when paid
    assert memory.stock.stock("SKU-A") == 10
    assert memory.carts.get(USER).lines == []
    assert memory.coupons.get("SAVE10").used_count == 1
    assert memory.erp.scheduled == []


def test_items_are_priced_from_the_stock_store(memory, address):
    # the cart line carries a stale price
    fill_cart(memory, sku="SKU-B", qty=1, price=1)
    order = memory.lifecycle.create_order(USER, address)
    assert order.items[0].price == 45000
    assert order.items[0].name == "Saffron"


@pytest.mark.parametrize(
    "method, cost",
    [(ShippingMethod.STANDARD, 15000), (ShippingMethod.EXPRESS, 30000), (ShippingMethod.PICKUP, 15000)],
)
def test_shipping_cost_by_method(memory, address, method, cost):
    fill_cart(memory)
    order = memory.lifecycle.create_order(USER, address, shipping_method=method)
    assert order.totals.shipping == cost


def test_cash_on_delivery_takes_stock_and_is_processing(memory, address):
    fill_cart(memory)
    order = memory.lifecycle.create_order(USER, address, payment_method=PaymentMethod.COD)

    assert order.status == OrderStatus.PROCESSING
    assert order.stock_committed
    assert memory.stock.stock("SKU-A") == 8
    assert memory.erp.scheduled == [order.id]
    assert ("order_confirmed", order.id) in memory.notifier.events


def test_empty_cart_is_rejected(memory, address):
    with pytest.raises(ValidationError) as e:
        memory.lifecycle.create_order(USER, address)
    assert e.value.code == "EMPTY_CART"


@pytest.mark.parametrize("address", [None, ShippingAddress("x", "", "123"), ShippingAddress("x", "street", " ")])
def test_address_and_postal_code_are_required(memory, address):
    fill_cart(memory)
    with pytest.raises(ValidationError) as e:
        memory.lifecycle.create_order(USER, address)
    assert e.value.code == "ADDRESS_REQUIRED"


def test_short_stock_rejects_without_side_effects(memory, address):
    memory.coupons.add(save10())
    fill_cart(memory, qty=11, coupon="SAVE10")

    with pytest.raises(OutOfStock) as e:
        memory.lifecycle.create_order(USER, address, payment_method=PaymentMethod.COD)

    assert e.value.skus == ["SKU-A"]
    assert memory.stock.stock("SKU-A") == 10
    assert len(memory.carts.get(USER).lines) == 1
    assert memory.coupons.get("SAVE10").used_count == 0


def test_unknown_product(memory, address):
    fill_cart(memory, sku="SKU-NOPE")
    with pytest.raises(NotFoundError) as e:
        memory.lifecycle.create_order(USER, address)
    assert e.value.code == "PRODUCT_NOT_FOUND"


def test_untracked_product_is_always_available(memory, address):
    fill_cart(memory, sku="SKU-U", qty=50, price=20000)
    order = memory.lifecycle.create_order(USER, address, payment_method=PaymentMethod.COD)
    assert order.stock_committed
    assert memory.stock.stock("SKU-U") == 0
    assert memory.stock.sold["SKU-U"] == 50


def test_coupon_that_no_longer_applies_blocks_the_order(memory, address):
    memory.coupons.add(save10(min_purchase=500000))
    fill_cart(memory, coupon="SAVE10")
    with pytest.raises(CouponNotApplicable) as e:
        memory.lifecycle.create_order(USER, address)
    assert e.value.code == "COUPON_NOT_APPLICABLE"
    assert e.value.message == "COUPON_MIN_PURCHASE"


def test_failed_write_gives_cod_stock_back(memory, address, monkeypatch):
    fill_cart(memory)

    def broken_add(order):
        raise RuntimeError("db down")

    monkeypatch.setattr(memory.orders, "add", broken_add)
    with pytest.raises(RuntimeError):
        memory.lifecycle.create_order(USER, address, payment_method=PaymentMethod.COD)
    assert memory.stock.stock("SKU-A") == 10


def test_invalid_transition_leaves_order_unchanged(memory, address):
    fill_cart(memory)
    order = memory.lifecycle.create_order(USER, address)

    with pytest.raises(InvalidTransition):
        memory.lifecycle.update_status(order.id, OrderStatus.SHIPPED)

    assert memory.orders.get(order.id).status == OrderStatus.PENDING_PAYMENT


def test_ship_and_deliver(memory, address):
    fill_cart(memory)
    order = memory.lifecycle.create_order(USER, address, payment_method=PaymentMethod.COD)

    shipped = memory.lifecycle.update_status(order.id, OrderStatus.SHIPPED, tracking_code="TRK-1")
    assert shipped.is_shipped and shipped.shipped_at is not None
    assert shipped.tracking_code == "TRK-1"
    assert ("order_shipped", order.id) in memory.notifier.events

    delivered = memory.lifecycle.update_status(order.id, OrderStatus.DELIVERED)
    assert delivered.is_delivered
    assert memory.orders.get(order.id).status == OrderStatus.DELIVERED


def test_cancel_releases_held_stock(memory, address):
    fill_cart(memory)
    order = memory.lifecycle.create_order(USER, address, payment_method=PaymentMethod.COD)
    assert memory.stock.stock("SKU-A") == 8

    cancelled = memory.lifecycle.cancel(order.id, USER, reason="changed my mind")

    assert cancelled.status == OrderStatus.CANCELLED
    assert memory.stock.stock("SKU-A") == 10
    assert memory.stock.sold["SKU-A"] == 0
    assert "changed my mind" in cancelled.notes
    # unpaid orders get no refund request
    assert cancelled.refund is None


def test_cancel_twice_does_not_release_twice(memory, address):
    fill_cart(memory)
    order = memory.lifecycle.create_order(USER, address, payment_method=PaymentMethod.COD)
    memory.lifecycle.cancel(order.id, USER)
    with pytest.raises(InvalidTransition):
        memory.lifecycle.cancel(order.id, USER)
    assert memory.stock.stock("SKU-A") == 10


def test_shipped_order_is_not_cancellable(memory, address):
    fill_cart(memory)
    order = memory.lifecycle.create_order(USER, address, payment_method=PaymentMethod.COD)
    memory.lifecycle.update_status(order.id, OrderStatus.SHIPPED)

    with pytest.raises(OrderNotCancellable):
        memory.lifecycle.cancel(order.id, USER)
    assert memory.orders.get(order.id).status == OrderStatus.SHIPPED


def test_cancel_is_scoped_to_the_owner(memory, address):
    fill_cart(memory)
    order = memory.lifecycle.create_order(USER, address)
    with pytest.raises(NotFoundError):
        memory.lifecycle.cancel(order.id, user_id=99)


def test_paid_order_cancel_records_pending_refund(memory, address):
    fill_cart(memory)
    order = memory.lifecycle.create_order(USER, address)
    req = memory.payments.request_payment(order.id, USER)
    memory.payments.verify_callback(order.id, req.authority, "OK")

    cancelled = memory.lifecycle.cancel(order.id, USER, reason="late")

    assert cancelled.refund.amount == order.totals.total
    assert cancelled.refund.status.value == "pending"
    assert memory.stock.stock("SKU-A") == 10


def test_reactivating_a_cancelled_paid_order_takes_stock_again(memory, address):
    fill_cart(memory)
    order = memory.lifecycle.create_order(USER, address, payment_method=PaymentMethod.COD)
    memory.lifecycle.cancel(order.id)
    assert memory.stock.stock("SKU-A") == 10

    memory.lifecycle.update_status(order.id, OrderStatus.PROCESSING)
    assert memory.stock.stock("SKU-A") == 8
    assert memory.orders.get(order.id).stock_committed


def test_reactivation_fails_when_stock_is_gone(memory, address):
    fill_cart(memory, qty=10)
    order = memory.lifecycle.create_order(USER, address, payment_method=PaymentMethod.COD)
    memory.lifecycle.cancel(order.id)
    memory.stock.reserve(memory.orders.get(order.id).stock_lines()[:1])

    with pytest.raises(OutOfStock):
        memory.lifecycle.update_status(order.id, OrderStatus.PROCESSING)
    assert memory.orders.get(order.id).status == OrderStatus.CANCELLED


def test_issue_invoice_is_stable(memory, address):
    fill_cart(memory)
    order = memory.lifecycle.create_order(USER, address)
    first = memory.lifecycle.issue_invoice(order.id, USER)
    again = memory.lifecycle.issue_invoice(order.id, USER)
    assert first.number == again.number == order.invoice.number
