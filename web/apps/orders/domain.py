"""Domain models, ports and pricing rules for orders.

This module holds the dataclasses that describe orders, carts and coupons,
the order status enumeration together with its transition table, the
protocol definitions (ports) for every collaborator the order lifecycle
talks to, and the pure totals computation. Nothing here touches Django or
the network; persistence and I/O live behind the ports.

Amounts are integers in Tomans.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import List, Optional, Protocol


# ---- Enums ----
class OrderStatus(str, Enum):
    """Lifecycle status of an order.

    Allowed moves are listed in ``ALLOWED_TRANSITIONS``; ``failed`` is
    terminal.
    """

    PENDING_PAYMENT = "pendingPayment"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"
    RETURNED = "returned"

    def can_transition_to(self, target: "OrderStatus") -> bool:
        """Return True when ``self → target`` is in the transition table."""
        return target in ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING_PAYMENT: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.RETURNED, OrderStatus.REFUNDED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNED, OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.REFUNDED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.RETURNED: frozenset({OrderStatus.REFUNDED, OrderStatus.PROCESSING}),
    OrderStatus.FAILED: frozenset(),
}


class PaymentMethod(str, Enum):
    ZARINPAL = "zarinpal"
    WALLET = "wallet"
    COD = "cod"


class ShippingMethod(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    PICKUP = "pickup"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class RefundStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REFUNDED = "refunded"
    REJECTED = "rejected"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class OrderItem:
    """A line of an order, captured when the order is placed.

    Attributes:
        sku: Product reference in the stock store.
        name: Product name at order time.
        price: Unit price at order time.
        quantity: Units ordered.
        variant: Optional variant label (e.g. color).
        erp_code: Product ERP code, when the product is mirrored in the ERP.
        erp_item_code: Product human code in the ERP.

    Frozen: later product edits never change an order.
    """

    sku: str
    name: str
    price: int
    quantity: int
    variant: Optional[str] = None
    erp_code: Optional[str] = None
    erp_item_code: Optional[str] = None

    @property
    def line_total(self) -> int:
        return self.price * self.quantity


@dataclass(frozen=True)
class StockLine:
    """A quantity of one SKU to take from or return to stock."""

    sku: str
    quantity: int


@dataclass(frozen=True)
class ShippingAddress:
    full_name: str
    address: str
    postal_code: str
    phone: str = ""


@dataclass(frozen=True)
class Totals:
    """Order amounts. ``total == subtotal + shipping + tax - discount``."""

    subtotal: int
    shipping: int
    tax: int
    discount: int
    total: int


@dataclass(frozen=True)
class CouponSnapshot:
    code: str
    discount_type: DiscountType
    discount_amount: int


@dataclass(frozen=True)
class InvoiceLine:
    sku: str
    quantity: int
    amount: int
    tax: int


@dataclass(frozen=True)
class Invoice:
    """Invoice issued for an order. Immutable once generated.

    Attributes:
        number: ``INV-YYYYMMDD-NNNN``, unique across all orders.
        issued_at: Generation timestamp.
        tax_rate: Rate used for the breakdown, as a decimal string.
        tax_amount: Tax included in the order total.
        lines: Per-line tax breakdown.
    """

    number: str
    issued_at: datetime
    tax_rate: str
    tax_amount: int
    lines: tuple[InvoiceLine, ...] = ()


@dataclass
class RefundInfo:
    """Refund recorded on an order.

    ``approved`` marks a refund claimed but not yet booked; ``ref_id`` is set
    once the money has gone back (gateway reference, or ``wallet``).
    """

    amount: int
    reason: str
    status: RefundStatus = RefundStatus.PENDING
    date: Optional[datetime] = None
    ref_id: Optional[str] = None


@dataclass
class ErpSyncState:
    """ERP mirror state of an order. Never gates the order status."""

    status: SyncStatus = SyncStatus.PENDING
    error: str = ""
    invoice_id: Optional[str] = None
    synced_at: Optional[datetime] = None
    attempts: int = 0


@dataclass
class Order:
    """An order and everything recorded on it during its life.

    Attributes:
        id: Identifier, assigned when the order is placed.
        user_id: Owning user.
        items: Captured line items.
        totals: Server computed amounts.
        shipping_address: Delivery address.
        shipping_method: Shipping option used to price delivery.
        payment_method: How the order is paid.
        status: Current ``OrderStatus``.
        is_paid: Paid flag; set once by payment confirmation.
        stock_committed: Whether the order currently holds decremented stock.
    """

    id: Optional[uuid.UUID]
    user_id: int
    items: List[OrderItem]
    totals: Totals
    shipping_address: ShippingAddress
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    payment_method: PaymentMethod = PaymentMethod.ZARINPAL
    status: OrderStatus = OrderStatus.PENDING_PAYMENT
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    authority: Optional[str] = None
    ref_id: Optional[str] = None
    transaction_id: Optional[str] = None
    coupon: Optional[CouponSnapshot] = None
    invoice: Optional[Invoice] = None
    erp: ErpSyncState = field(default_factory=ErpSyncState)
    refund: Optional[RefundInfo] = None
    is_shipped: bool = False
    shipped_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    tracking_code: str = ""
    notes: str = ""
    stock_committed: bool = False
    created_at: Optional[datetime] = None

    @property
    def item_count(self) -> int:
        return sum(i.quantity for i in self.items)

    @property
    def claims_stock(self) -> bool:
        """Paid and cash-on-delivery orders are entitled to hold stock."""
        return self.is_paid or self.payment_method == PaymentMethod.COD

    def stock_lines(self) -> List[StockLine]:
        return [StockLine(i.sku, i.quantity) for i in self.items]


@dataclass(frozen=True)
class OrderVersion:
    """The fields a status change was decided on.

    A guarded save only goes through while the stored order still has them,
    so a payment or refund recorded in between is never overwritten.
    """

    status: OrderStatus
    is_paid: bool
    stock_committed: bool
    refund_status: Optional[RefundStatus] = None

    @classmethod
    def of(cls, order: Order) -> "OrderVersion":
        return cls(
            order.status,
            order.is_paid,
            order.stock_committed,
            order.refund.status if order.refund else None,
        )


@dataclass(frozen=True)
class CartLine:
    sku: str
    quantity: int
    price: int
    variant: Optional[str] = None


@dataclass
class Cart:
    """A user's live cart. Created lazily, cleared rather than deleted."""

    user_id: int
    lines: List[CartLine] = field(default_factory=list)
    coupon_code: Optional[str] = None
    coupon_discount: int = 0

    @property
    def total(self) -> int:
        return sum(line.price * line.quantity for line in self.lines)


@dataclass
class Coupon:
    """Discount coupon.

    Attributes:
        code: Unique, upper-cased code.
        discount_type: ``percentage`` or ``fixed``.
        value: Percent in (0, 100] or a positive fixed amount.
        max_discount: Cap for percentage coupons, 0 for none.
        min_purchase: Minimum cart total.
        usage_limit: Global redemption limit, 0 for unlimited.
        used_count: Redemptions so far.
        user_usage_limit: Redemptions allowed per user.
    """

    code: str
    discount_type: DiscountType
    value: Decimal
    max_discount: int = 0
    min_purchase: int = 0
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    is_permanent: bool = False
    usage_limit: int = 0
    used_count: int = 0
    user_usage_limit: int = 1
    is_active: bool = True
    description: str = ""


@dataclass(frozen=True)
class ProductSnapshot:
    """Stock store view of a product at read time."""

    sku: str
    name: str
    price: int
    stock: int
    discount_price: int = 0
    track_inventory: bool = True
    erp_code: Optional[str] = None
    erp_item_code: Optional[str] = None

    @property
    def in_stock(self) -> bool:
        return not self.track_inventory or self.stock > 0

    @property
    def effective_price(self) -> int:
        return self.discount_price or self.price


@dataclass(frozen=True)
class CustomerContact:
    full_name: str = ""
    email: str = ""
    mobile: str = ""


@dataclass(frozen=True)
class PaymentRequest:
    authority: str
    redirect_url: str


# ---- Pricing ----
def round_half_up(value) -> int:
    """Round a number to whole currency units, halves away from zero."""
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_totals(items: List[OrderItem], shipping: int, discount: int, tax_rate) -> Totals:
    """Compute order totals from captured items.

    Tax applies to the discounted subtotal; shipping is not taxed. The
    discount is capped at the subtotal.

    Args:
        items: Captured order items.
        shipping: Shipping cost for the chosen method.
        discount: Coupon discount already computed by the evaluator.
        tax_rate: Rate as a ``Decimal`` or decimal string.

    Returns:
        Totals: Amounts satisfying the grand total identity.
    """
    subtotal = sum(i.line_total for i in items)
    discount = min(discount, subtotal)
    tax = round_half_up((subtotal - discount) * Decimal(str(tax_rate)))
    return Totals(
        subtotal=subtotal,
        shipping=shipping,
        tax=tax,
        discount=discount,
        total=subtotal + shipping + tax - discount,
    )


# ---- Ports (DIP) ----
class InventoryPort(Protocol):
    """Stock store operations used by the domain."""

    def get_products(self, skus: List[str]) -> dict[str, ProductSnapshot]:
        """Return known products keyed by SKU; unknown SKUs are absent."""
        ...

    def reserve(self, lines: List[StockLine]) -> None:
        """Decrement stock for every line or for none.

        Raises:
            OutOfStock: When any tracked product cannot cover its line.
        """
        ...

    def release(self, lines: List[StockLine]) -> None:
        """Return stock for the lines; ``sold`` never drops below zero."""
        ...


class CartStore(Protocol):
    def get(self, user_id: int) -> Cart: ...

    def clear(self, user_id: int) -> None: ...


class CouponStore(Protocol):
    def get(self, code: str) -> Optional[Coupon]: ...

    def user_redemptions(self, code: str, user_id: int) -> int: ...

    def redeem(self, code: str, user_id: int, order_id: uuid.UUID) -> bool:
        """Atomically record one redemption.

        Returns:
            False when the global or the per-user limit is already reached;
            nothing is written in that case.
        """
        ...


class OrderStore(Protocol):
    def add(self, order: Order) -> None: ...

    def get(self, order_id: uuid.UUID) -> Optional[Order]: ...

    def save(self, order: Order, expected: Optional[OrderVersion] = None) -> bool:
        """Write the order; with ``expected``, only if the stored one still matches it.

        Returns:
            False when the guard did not match; nothing is written.
        """
        ...

    def mark_paid(self, order_id: uuid.UUID, paid_at: datetime, ref_id: Optional[str]) -> bool:
        """Set the paid flag only if it is not set yet.

        Returns:
            True when this call flipped the flag.
        """
        ...

    def set_authority(self, order_id: uuid.UUID, authority: str) -> None: ...

    def record_sync(self, order_id: uuid.UUID, state: ErpSyncState) -> None:
        """Persist only the ERP sync fields of an order."""
        ...

    def pending_sync(self, limit: int, max_attempts: int) -> List[Order]:
        """Paid or cash-on-delivery orders not yet mirrored, oldest first."""
        ...


class InvoiceCounterPort(Protocol):
    def next_value(self, day: date) -> int:
        """Atomically allocate the next sequence value for ``day``, starting at 1.

        Implementations seed a new day from invoice numbers already issued for
        it so a number is never handed out twice.
        """
        ...


class CustomerStore(Protocol):
    """User store: contact data, wallet ledger and loyalty points."""

    def contact(self, user_id: int) -> CustomerContact: ...

    def append_ledger(self, user_id: int, amount: int, kind: str, description: str, order_id=None) -> None: ...

    def debit_wallet(self, user_id: int, amount: int, description: str, order_id=None) -> bool: ...

    def credit_wallet(self, user_id: int, amount: int, kind: str, description: str, order_id=None) -> None: ...

    def add_loyalty(self, user_id: int, points: int) -> None: ...


class NotifierPort(Protocol):
    """Fire-and-forget notifications. Implementations must not raise."""

    def order_confirmed(self, order: Order) -> None: ...

    def order_shipped(self, order: Order) -> None: ...

    def status_changed(self, order: Order, previous: OrderStatus) -> None: ...


class PaymentGatewayPort(Protocol):
    def create_payment_request(
        self, amount: int, description: str, email: str, mobile: str, order_id
    ) -> PaymentRequest: ...

    def verify(self, authority: str, amount: int) -> str: ...

    def refund(self, authority: str, amount: int) -> str: ...

    def list_unverified(self) -> list: ...


class ErpSyncScheduler(Protocol):
    def schedule_invoice_sync(self, order_id: uuid.UUID) -> None:
        """Queue the ERP invoice sync to run after the current transaction commits."""
        ...
