"""Invoice numbering and tax breakdown.

Invoice numbers look like ``INV-20240517-0042``: the issue date followed by
a per-day sequence, zero padded to four digits and starting at 0001. The
sequence comes from an atomic per-day counter, so concurrent finalization on
the same day never produces duplicates.
"""

import re
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional

from django.utils import timezone

from .domain import Invoice, InvoiceCounterPort, InvoiceLine, Order, round_half_up

INVOICE_PREFIX = "INV"
INVOICE_RE = re.compile(r"^INV-(\d{8})-(\d{4,})$")


def format_invoice_number(day: date, sequence: int) -> str:
    return f"{INVOICE_PREFIX}-{day:%Y%m%d}-{sequence:04d}"


def invoice_prefix(day: date) -> str:
    return f"{INVOICE_PREFIX}-{day:%Y%m%d}-"


def parse_invoice_number(number: str) -> Optional[tuple[date, int]]:
    """Split an invoice number into its date and sequence.

    Returns:
        ``(day, sequence)`` or None when ``number`` is not an invoice number.
    """
    m = INVOICE_RE.match(number or "")
    if not m:
        return None
    try:
        day = datetime.strptime(m.group(1), "%Y%m%d").date()
    except ValueError:
        return None
    return day, int(m.group(2))


def included_tax(amount: int, rate: Decimal) -> int:
    """Tax contained in a tax-inclusive ``amount``: ``round(amount * rate / (1 + rate))``."""
    return round_half_up(Decimal(amount) * rate / (1 + rate))


class InvoiceNumbering:
    """Issues invoices for orders.

    Args:
        counter: Per-day sequence allocator.
        tax_rate: Rate used for the tax breakdown.
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        counter: InvoiceCounterPort,
        tax_rate="0.09",
        clock: Callable[[], datetime] = timezone.now,
    ):
        self.counter = counter
        self.tax_rate = Decimal(str(tax_rate))
        self.clock = clock

    def generate(self, order: Order) -> str:
        """Attach an invoice to ``order`` and return its number.

        Idempotent: an order that already has an invoice keeps it and no
        sequence value is consumed. The caller persists the order.
        """
        if order.invoice is not None:
            return order.invoice.number

        issued_at = self.clock()
        day = timezone.localdate(issued_at) if timezone.is_aware(issued_at) else issued_at.date()
        number = format_invoice_number(day, self.counter.next_value(day))

        lines = tuple(
            InvoiceLine(
                sku=i.sku,
                quantity=i.quantity,
                amount=i.line_total,
                tax=included_tax(i.line_total, self.tax_rate),
            )
            for i in order.items
        )
        order.invoice = Invoice(
            number=number,
            issued_at=issued_at,
            tax_rate=str(self.tax_rate),
            tax_amount=included_tax(order.totals.total, self.tax_rate),
            lines=lines,
        )
        return number

