"""Payment reconciliation over in-memory stores."""

import copy
import threading

import httpx
import pytest

from apps.orders.domain import OrderStatus, PaymentMethod, RefundInfo, RefundStatus
from apps.orders.errors import ConflictError, GatewayError, NotFoundError, ValidationError

USER = 1


@pytest.fixture
def order(memory, address):
    memory.carts.add_item(USER, "SKU-A", 2, 100000)
    return memory.lifecycle.create_order(USER, address)


def pay(memory, order):
    req = memory.payments.request_payment(order.id, USER)
    return req, memory.payments.verify_callback(order.id, req.authority, "OK")


def test_request_payment_stores_authority(memory, order):
    req = memory.payments.request_payment(order.id, USER)
    assert req.redirect_url.endswith(req.authority)
    assert memory.orders.get(order.id).authority == req.authority
    assert memory.gateway.requests[0]["amount"] == order.totals.total


def test_request_payment_for_someone_elses_order(memory, order):
    with pytest.raises(NotFoundError):
        memory.payments.request_payment(order.id, 99)


def test_verify_success_confirms_everything(memory, order):
    memory.carts.add_item(USER, "SKU-B", 1, 45000)
    _, result = pay(memory, order)

    stored = memory.orders.get(order.id)
    assert result.outcome == "success"
    assert result.ref_id == stored.ref_id
    assert stored.is_paid and stored.paid_at is not None
    assert stored.status == OrderStatus.PROCESSING
    assert stored.stock_committed
    assert memory.stock.stock("SKU-A") == 8
    assert memory.erp.scheduled == [order.id]
    assert memory.customers.points[USER] == order.totals.total // 10000
    assert memory.customers.ledger[-1]["amount"] == -order.totals.total
    # the cart is emptied after payment
    assert memory.carts.get(USER).lines == []


def test_duplicate_callback_is_a_no_op(memory, order):
    req, first = pay(memory, order)
    second = memory.payments.verify_callback(order.id, req.authority, "OK")

    assert second.outcome == "success"
    assert second.ref_id == first.ref_id
    assert memory.stock.stock("SKU-A") == 8
    assert memory.erp.scheduled == [order.id]
    assert len(memory.gateway.verified) == 1
    assert len(memory.customers.ledger) == 1


def test_cancelled_callback_changes_nothing(memory, order):
    req = memory.payments.request_payment(order.id, USER)
    result = memory.payments.verify_callback(order.id, req.authority, "NOK")

    stored = memory.orders.get(order.id)
    assert result.outcome == "cancel"
    assert stored.status == OrderStatus.PENDING_PAYMENT
    assert not stored.is_paid
    assert memory.stock.stock("SKU-A") == 10
    assert memory.gateway.verified == []


def test_gateway_refusal_gives_stock_back(memory, order):
    req = memory.payments.request_payment(order.id, USER)
    memory.gateway.fail_verify = "transaction failed"

    result = memory.payments.verify_callback(order.id, req.authority, "OK")

    assert result.outcome == "failed"
    assert result.message == "transaction failed"
    assert memory.stock.stock("SKU-A") == 10
    assert not memory.orders.get(order.id).is_paid


def test_out_of_stock_at_payment_fails_without_verifying(memory, order):
    req = memory.payments.request_payment(order.id, USER)
    memory.stock.reserve(order.stock_lines()[:1] * 5)

    result = memory.payments.verify_callback(order.id, req.authority, "OK")

    assert result.outcome == "failed"
    assert memory.gateway.verified == []


def test_mismatched_authority_is_rejected(memory, order):
    memory.payments.request_payment(order.id, USER)
    result = memory.payments.verify_callback(order.id, "A-forged", "OK")
    assert result.outcome == "failed"
    assert memory.stock.stock("SKU-A") == 10


def test_concurrent_callbacks_pay_once(memory, order):
    req = memory.payments.request_payment(order.id, USER)
    barrier = threading.Barrier(4)
    outcomes = []

    def callback():
        barrier.wait()
        outcomes.append(memory.payments.verify_callback(order.id, req.authority, "OK").outcome)

    threads = [threading.Thread(target=callback) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes == ["success"] * 4
    assert memory.stock.stock("SKU-A") == 8
    assert memory.erp.scheduled == [order.id]


def test_wallet_payment(memory, order):
    memory.customers.balances[USER] = 300000

    paid = memory.payments.pay_with_wallet(order.id, USER)

    assert paid.is_paid
    assert paid.payment_method == PaymentMethod.WALLET
    assert memory.customers.balances[USER] == 300000 - order.totals.total
    assert memory.stock.stock("SKU-A") == 8
    # the wallet debit is the only ledger line
    assert [e["type"] for e in memory.customers.ledger] == ["purchase"]


def test_wallet_payment_with_low_balance(memory, order):
    memory.customers.balances[USER] = 1000

    with pytest.raises(ConflictError) as e:
        memory.payments.pay_with_wallet(order.id, USER)

    assert e.value.code == "INSUFFICIENT_WALLET_BALANCE"
    assert memory.stock.stock("SKU-A") == 10
    assert not memory.orders.get(order.id).is_paid


def test_paying_twice_is_rejected(memory, order):
    pay(memory, order)
    memory.customers.balances[USER] = 10**7
    with pytest.raises(ConflictError) as e:
        memory.payments.pay_with_wallet(order.id, USER)
    assert e.value.code == "ORDER_ALREADY_PAID"


def test_gateway_refund(memory, order):
    req, _ = pay(memory, order)

    refunded = memory.payments.refund(order.id, reason="damaged")

    assert refunded.status == OrderStatus.REFUNDED
    assert refunded.refund.status == RefundStatus.REFUNDED
    assert refunded.refund.amount == order.totals.total
    assert memory.gateway.refunds == [(req.authority, order.totals.total)]
    assert memory.stock.stock("SKU-A") == 10
    assert memory.customers.ledger[-1]["type"] == "refund"


def test_wallet_refund_credits_balance(memory, order):
    memory.customers.balances[USER] = order.totals.total
    memory.payments.pay_with_wallet(order.id, USER)

    memory.payments.refund(order.id, amount=50000)

    assert memory.customers.balances[USER] == 50000
    assert memory.gateway.refunds == []


def test_refund_rules(memory, order):
    with pytest.raises(ConflictError) as e:
        memory.payments.refund(order.id)
    assert e.value.code == "ORDER_NOT_PAID"

    pay(memory, order)
    with pytest.raises(ValidationError):
        memory.payments.refund(order.id, amount=order.totals.total + 1)

    memory.payments.refund(order.id)
    with pytest.raises(ConflictError) as e:
        memory.payments.refund(order.id)
    assert e.value.code == "ALREADY_REFUNDED"


def test_refund_interrupted_after_the_gateway_is_resumed_not_repeated(memory, order, monkeypatch):
    req, _ = pay(memory, order)
    release = memory.stock.release

    def inventory_down(lines):
        raise httpx.ConnectError("inventory down")

    monkeypatch.setattr(memory.stock, "release", inventory_down)
    with pytest.raises(httpx.ConnectError):
        memory.payments.refund(order.id, reason="damaged")

    stored = memory.orders.get(order.id)
    assert stored.status == OrderStatus.PROCESSING
    assert (stored.refund.status, stored.refund.ref_id) == (RefundStatus.APPROVED, "R1")
    assert memory.stock.stock("SKU-A") == 8

    monkeypatch.setattr(memory.stock, "release", release)
    refunded = memory.payments.refund(order.id)

    assert refunded.status == OrderStatus.REFUNDED
    assert (refunded.refund.status, refunded.refund.ref_id) == (RefundStatus.REFUNDED, "R1")
    assert refunded.refund.reason == "damaged"
    assert memory.gateway.refunds == [(req.authority, order.totals.total)]
    assert memory.stock.stock("SKU-A") == 10


def test_refused_gateway_refund_drops_the_claim(memory, order):
    pay(memory, order)
    memory.gateway.fail_refund = "refund not allowed"

    with pytest.raises(GatewayError):
        memory.payments.refund(order.id)
    stored = memory.orders.get(order.id)
    assert stored.refund is None
    assert stored.status == OrderStatus.PROCESSING

    memory.gateway.fail_refund = None
    assert memory.payments.refund(order.id).status == OrderStatus.REFUNDED


def test_refund_without_a_gateway_answer_is_not_sent_again(memory, order):
    pay(memory, order)
    stored = memory.orders.get(order.id)
    stored.refund = RefundInfo(order.totals.total, "", RefundStatus.APPROVED)
    memory.orders.save(stored)

    with pytest.raises(ConflictError) as e:
        memory.payments.refund(order.id)
    assert e.value.code == "REFUND_IN_PROGRESS"
    assert memory.gateway.refunds == []


def test_cancel_decided_before_a_payment_does_not_undo_it(memory, order, monkeypatch):
    before_payment = memory.orders.get(order.id)
    pay(memory, order)
    load = memory.lifecycle.get
    monkeypatch.setattr(memory.lifecycle, "get", lambda order_id, user_id=None: copy.deepcopy(before_payment))

    with pytest.raises(ConflictError) as e:
        memory.lifecycle.cancel(order.id, USER)
    assert e.value.code == "ORDER_MODIFIED"

    stored = memory.orders.get(order.id)
    assert stored.status == OrderStatus.PROCESSING
    assert stored.is_paid and stored.stock_committed
    assert memory.stock.stock("SKU-A") == 8

    # a fresh read cancels and keeps the refund owed
    monkeypatch.setattr(memory.lifecycle, "get", load)
    cancelled = memory.lifecycle.cancel(order.id, USER)
    assert cancelled.refund.status == RefundStatus.PENDING
    assert memory.stock.stock("SKU-A") == 10


def test_admin_status_change_on_a_stale_read_is_refused(memory, order, monkeypatch):
    stale = memory.orders.get(order.id)
    memory.lifecycle.cancel(order.id, USER)
    monkeypatch.setattr(memory.lifecycle, "get", lambda order_id, user_id=None: copy.deepcopy(stale))

    with pytest.raises(ConflictError) as e:
        memory.lifecycle.update_status(order.id, OrderStatus.PROCESSING)
    assert e.value.code == "ORDER_MODIFIED"
    assert memory.orders.get(order.id).status == OrderStatus.CANCELLED
