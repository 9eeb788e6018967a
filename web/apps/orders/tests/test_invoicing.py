import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from apps.orders.adapters import InMemoryInvoiceCounter
from apps.orders.domain import Order, OrderItem, ShippingAddress, Totals
from apps.orders.invoicing import InvoiceNumbering, format_invoice_number, included_tax, parse_invoice_number
from apps.orders.models import OrderModel
from apps.orders.repository import InvoiceCounterRepository

ISSUED = datetime(2024, 5, 17, 8, 30, tzinfo=timezone.utc)


def make_order(total=211200):
    return Order(
        id=uuid.uuid4(),
        user_id=1,
        items=[OrderItem("SKU-A", "Tea Glass", 100000, 2)],
        totals=Totals(200000, 15000, 16200, 20000, total),
        shipping_address=ShippingAddress("Sara", "street", "123"),
    )


def test_numbers_are_dense_per_day():
    numbering = InvoiceNumbering(InMemoryInvoiceCounter(), clock=lambda: ISSUED)
    numbers = [numbering.generate(make_order()) for _ in range(3)]
    assert numbers == ["INV-20240517-0001", "INV-20240517-0002", "INV-20240517-0003"]


def test_generate_is_idempotent():
    counter = InMemoryInvoiceCounter()
    numbering = InvoiceNumbering(counter, clock=lambda: ISSUED)
    order = make_order()
    assert numbering.generate(order) == numbering.generate(order)
    # no sequence value was burnt by the second call
    assert numbering.generate(make_order()).endswith("-0002")


def test_tax_breakdown_is_included_in_total():
    order = make_order()
    InvoiceNumbering(InMemoryInvoiceCounter(), tax_rate="0.09", clock=lambda: ISSUED).generate(order)
    assert order.invoice.tax_amount == 17439
    assert order.invoice.tax_rate == "0.09"
    assert order.invoice.lines[0].amount == 200000
    assert order.invoice.lines[0].tax == included_tax(200000, Decimal("0.09"))


def test_parse_round_trip_and_garbage():
    assert parse_invoice_number(format_invoice_number(date(2024, 1, 2), 42)) == (date(2024, 1, 2), 42)
    assert parse_invoice_number("INV-2024-1") is None
    assert parse_invoice_number("INV-20241399-0001") is None


@pytest.mark.django_db
def test_counter_seeds_from_issued_numbers(user):
    OrderModel.objects.create(
        user=user,
        invoice_number="INV-20240517-0007",
        shipping_address={"full_name": "", "address": "a", "postal_code": "1", "phone": ""},
        created_at=ISSUED,
    )
    counter = InvoiceCounterRepository()
    assert counter.next_value(date(2024, 5, 17)) == 8
    assert counter.next_value(date(2024, 5, 17)) == 9
    assert counter.next_value(date(2024, 5, 18)) == 1
