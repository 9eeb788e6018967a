"""Order lifecycle service.

``OrderLifecycle`` owns every change to an order's status and the side
effects tied to it: stock commitment and release, invoice issuance, refund
bookkeeping, notifications and scheduling of the ERP invoice sync. It is
constructed with its collaborators (see ``providers.get_order_lifecycle``)
and holds no Django imports of its own: the transaction boundary and the
after-commit hook are injected.

Stock lives in a remote store, so it cannot join the database transaction.
Every path that touches stock does so before the database write and undoes
it if the write fails.
"""

import contextlib
import logging
import uuid
from datetime import datetime
from typing import Callable, Mapping, Optional

from django.utils import timezone

from .coupons import CouponEvaluator
from .domain import (
    CartStore,
    CouponSnapshot,
    CouponStore,
    ErpSyncScheduler,
    Invoice,
    NotifierPort,
    Order,
    OrderItem,
    OrderStatus,
    OrderStore,
    OrderVersion,
    PaymentMethod,
    RefundInfo,
    RefundStatus,
    ShippingAddress,
    ShippingMethod,
    compute_totals,
)
from .errors import (
    ConflictError,
    CouponNotApplicable,
    InvalidTransition,
    NotFoundError,
    OrderNotCancellable,
    OutOfStock,
    ValidationError,
)
from .inventory import InventoryAdjuster
from .invoicing import InvoiceNumbering

logger = logging.getLogger(__name__)

DEFAULT_SHIPPING_RATES = {
    ShippingMethod.STANDARD.value: 15000,
    ShippingMethod.EXPRESS.value: 30000,
    ShippingMethod.PICKUP.value: 15000,
}

REACTIVATING_STATES = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderStatus.RETURNED})
NON_CANCELLABLE_STATES = frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED})


def _run_now(fn: Callable[[], None]) -> None:
    fn()


class OrderLifecycle:
    """Creates orders and drives them through the status table.

    Args:
        orders: Order persistence.
        carts: Cart store read at creation and cleared afterwards.
        coupons: Coupon store used for redemption.
        evaluator: Coupon evaluator.
        inventory: Stock adjuster.
        invoicing: Invoice numbering service.
        notifier: Notification dispatch.
        erp: Scheduler for the ERP invoice sync.
        shipping_rates: Cost per shipping method.
        tax_rate: Rate applied to the discounted subtotal.
        atomic: Context manager factory delimiting one database transaction.
        on_commit: Runs a callable once the current transaction commits.
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        *,
        orders: OrderStore,
        carts: CartStore,
        coupons: CouponStore,
        evaluator: CouponEvaluator,
        inventory: InventoryAdjuster,
        invoicing: InvoiceNumbering,
        notifier: NotifierPort,
        erp: ErpSyncScheduler,
        shipping_rates: Optional[Mapping[str, int]] = None,
        tax_rate="0.09",
        atomic: Callable[[], contextlib.AbstractContextManager] = contextlib.nullcontext,
        on_commit: Callable[[Callable[[], None]], None] = _run_now,
        clock: Callable[[], datetime] = timezone.now,
    ):
        self.orders = orders
        self.carts = carts
        self.coupons = coupons
        self.evaluator = evaluator
        self.inventory = inventory
        self.invoicing = invoicing
        self.notifier = notifier
        self.erp = erp
        self.shipping_rates = dict(shipping_rates or DEFAULT_SHIPPING_RATES)
        self.tax_rate = tax_rate
        self.atomic = atomic
        self.on_commit = on_commit
        self.clock = clock

    # ---- queries ----
    def get(self, order_id: uuid.UUID, user_id: Optional[int] = None) -> Order:
        """Load an order, optionally checking ownership.

        Raises:
            NotFoundError: Unknown id, or owned by someone else.
        """
        order = self.orders.get(order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise NotFoundError("order not found", code="ORDER_NOT_FOUND")
        return order

    def shipping_cost(self, method: ShippingMethod) -> int:
        try:
            return int(self.shipping_rates[method.value])
        except KeyError:
            raise ValidationError(f"no shipping rate for {method.value}", code="INVALID_SHIPPING_METHOD")

    # ---- creation ----
    def create_order(
        self,
        user_id: int,
        address: Optional[ShippingAddress],
        payment_method: PaymentMethod = PaymentMethod.ZARINPAL,
        shipping_method: ShippingMethod = ShippingMethod.STANDARD,
        notes: str = "",
    ) -> Order:
        """Convert the user's cart into an order.

        Prices and names are captured from the stock store, never from the
        cart. The coupon applied to the cart is re-evaluated and redeemed in
        the same transaction that stores the order, issues its invoice number
        and clears the cart. Cash-on-delivery orders take their stock up
        front and start in ``processing``; the others start in
        ``pendingPayment`` and take stock when payment is confirmed.

        Args:
            user_id: Ordering user.
            address: Shipping address; address line and postal code required.
            payment_method: How the order will be paid.
            shipping_method: Used to price delivery.
            notes: Free-form customer notes.

        Returns:
            Order: The stored order.

        Raises:
            ValidationError: Missing address or empty cart.
            NotFoundError: A cart line refers to an unknown product.
            OutOfStock: A product is out of stock or short.
            CouponNotApplicable: The cart's coupon no longer applies.
        """
        if address is None or not address.address.strip() or not address.postal_code.strip():
            raise ValidationError("address and postal code are required", code="ADDRESS_REQUIRED")

        cart = self.carts.get(user_id)
        if not cart.lines:
            raise ValidationError("cart is empty", code="EMPTY_CART")

        items = self._capture_items(cart.lines)
        shipping = self.shipping_cost(shipping_method)
        subtotal = sum(i.line_total for i in items)

        discount, snapshot = 0, None
        if cart.coupon_code:
            coupon = self.coupons.get(cart.coupon_code)
            if coupon is None:
                raise CouponNotApplicable("coupon not found", code="COUPON_NOT_FOUND")
            evaluation = self.evaluator.evaluate(coupon, subtotal, user_id)
            if not evaluation.valid:
                raise CouponNotApplicable(evaluation.reason or "coupon not applicable")
            discount = evaluation.discount_amount
            snapshot = CouponSnapshot(coupon.code, coupon.discount_type, discount)

        is_cod = payment_method == PaymentMethod.COD
        order = Order(
            id=uuid.uuid4(),
            user_id=user_id,
            items=items,
            totals=compute_totals(items, shipping, discount, self.tax_rate),
            shipping_address=address,
            shipping_method=shipping_method,
            payment_method=payment_method,
            status=OrderStatus.PROCESSING if is_cod else OrderStatus.PENDING_PAYMENT,
            coupon=snapshot,
            notes=notes,
            created_at=self.clock(),
        )

        if is_cod:
            self.inventory.commit(order)
        try:
            with self.atomic():
                if snapshot and not self.coupons.redeem(snapshot.code, user_id, order.id):
                    raise CouponNotApplicable("coupon usage limit reached", code="COUPON_USAGE_LIMIT")
                self.invoicing.generate(order)
                self.orders.add(order)
                self.carts.clear(user_id)
                if is_cod:
                    self.erp.schedule_invoice_sync(order.id)
                    self.on_commit(lambda: self.notifier.order_confirmed(order))
        except Exception:
            self.inventory.revert(order)
            raise

        logger.info(
            "order created",
            extra={
                "order_id": str(order.id),
                "user_id": user_id,
                "total": order.totals.total,
                "payment_method": payment_method.value,
                "invoice_number": order.invoice.number,
            },
        )
        return order

    def _capture_items(self, lines) -> list[OrderItem]:
        products = self.inventory.store.get_products(sorted({line.sku for line in lines}))
        wanted: dict[str, int] = {}
        for line in lines:
            if line.quantity <= 0:
                raise ValidationError(f"invalid quantity for {line.sku}", code="INVALID_QUANTITY")
            wanted[line.sku] = wanted.get(line.sku, 0) + line.quantity

        short = []
        for sku, qty in wanted.items():
            product = products.get(sku)
            if product is None:
                raise NotFoundError(f"product {sku} not found", code="PRODUCT_NOT_FOUND")
            if not product.in_stock or (product.track_inventory and qty > product.stock):
                short.append(sku)
        if short:
            raise OutOfStock(short)

        return [
            OrderItem(
                sku=line.sku,
                name=products[line.sku].name,
                price=products[line.sku].effective_price,
                quantity=line.quantity,
                variant=line.variant,
                erp_code=products[line.sku].erp_code,
                erp_item_code=products[line.sku].erp_item_code,
            )
            for line in lines
        ]

    # ---- status changes ----
    def update_status(
        self, order_id: uuid.UUID, target: OrderStatus, tracking_code: Optional[str] = None
    ) -> Order:
        """Move an order to ``target`` (admin status update).

        Raises:
            NotFoundError: Unknown order.
            InvalidTransition: ``target`` is not reachable from the current status.
            OutOfStock: Reactivating an order whose stock is gone.
        """
        order = self.get(order_id)
        expected = OrderVersion.of(order)
        previous = order.status
        if not previous.can_transition_to(target):
            raise InvalidTransition(previous, target)

        now = self.clock()
        if target == OrderStatus.SHIPPED:
            if not order.is_shipped:
                order.is_shipped = True
                order.shipped_at = now
            if tracking_code:
                order.tracking_code = tracking_code
        elif target == OrderStatus.DELIVERED:
            if not order.is_delivered:
                order.is_delivered = True
                order.delivered_at = now
        elif target == OrderStatus.REFUNDED and order.refund is None:
            order.refund = RefundInfo(order.totals.total, "", RefundStatus.REFUNDED, now)

        self._transition(order, target, expected)
        return order

    def cancel(self, order_id: uuid.UUID, user_id: Optional[int] = None, reason: str = "") -> Order:
        """Cancel an order on behalf of its owner (or an admin when ``user_id`` is None).

        A paid order gets a pending refund request for its full total.

        Raises:
            NotFoundError: Unknown order or not owned by ``user_id``.
            OrderNotCancellable: The order is shipped or delivered.
            InvalidTransition: Any other status that cannot be cancelled.
        """
        order = self.get(order_id, user_id)
        expected = OrderVersion.of(order)
        if order.status in NON_CANCELLABLE_STATES:
            raise OrderNotCancellable(f"order is {order.status.value}")
        if not order.status.can_transition_to(OrderStatus.CANCELLED):
            raise InvalidTransition(order.status, OrderStatus.CANCELLED)

        if order.is_paid:
            order.refund = RefundInfo(order.totals.total, reason, RefundStatus.PENDING, self.clock())
        if reason:
            order.notes = f"{order.notes}\n{reason}".strip()
        self._transition(order, OrderStatus.CANCELLED, expected)
        return order

    def save_checked(self, order: Order, expected: Optional[OrderVersion]) -> None:
        """Persist ``order`` unless it changed since ``expected`` was read.

        Raises:
            ConflictError: ``ORDER_MODIFIED``; the caller should reload and retry.
        """
        if not self.orders.save(order, expected):
            raise ConflictError("order was changed by another request", code="ORDER_MODIFIED")

    def _transition(self, order: Order, target: OrderStatus, expected: Optional[OrderVersion] = None) -> None:
        previous = order.status
        took = released = False
        if target == OrderStatus.CANCELLED or target == OrderStatus.REFUNDED:
            released = self.inventory.revert(order)
        elif target == OrderStatus.PROCESSING and previous in REACTIVATING_STATES and order.claims_stock:
            took = self.inventory.commit(order)

        order.status = target
        try:
            with self.atomic():
                self.save_checked(order, expected)
                self.on_commit(lambda: self._notify_status(order, previous))
        except Exception:
            if took:
                self.inventory.revert(order)
            elif released:
                self.inventory.commit(order)
            raise
        logger.info(
            "order status changed",
            extra={"order_id": str(order.id), "from": previous.value, "to": target.value},
        )

    def _notify_status(self, order: Order, previous: OrderStatus) -> None:
        if order.status == OrderStatus.SHIPPED:
            self.notifier.order_shipped(order)
        self.notifier.status_changed(order, previous)

    # ---- payment ----
    def confirm_payment(
        self,
        order: Order,
        ref_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> bool:
        """Record a confirmed payment on ``order``.

        The paid flag is flipped with a conditional write, so of two racing
        confirmations exactly one returns True. The winner advances a
        ``pendingPayment`` order to ``processing``, persists the stock it
        holds and schedules the ERP invoice sync. Stock must already be
        committed by the caller.

        Returns:
            bool: False when the order was already paid; nothing is written.
        """
        paid_at = self.clock()
        with self.atomic():
            if not self.orders.mark_paid(order.id, paid_at, ref_id):
                return False
            order.is_paid = True
            order.paid_at = paid_at
            order.ref_id = ref_id or order.ref_id
            order.transaction_id = transaction_id or order.transaction_id
            if order.status == OrderStatus.PENDING_PAYMENT:
                order.status = OrderStatus.PROCESSING
            self.orders.save(order)
            self.erp.schedule_invoice_sync(order.id)
            self.on_commit(lambda: self.notifier.order_confirmed(order))
        logger.info("payment confirmed", extra={"order_id": str(order.id), "ref_id": ref_id})
        return True

    def refund(self, order: Order, amount: int, reason: str = "", ref_id: Optional[str] = None) -> Order:
        """Apply a completed refund: release stock, record it, mark ``refunded``.

        Refunds follow the payment, not the admin status table, so any paid
        order can be refunded once. ``order`` must be as currently stored.

        Raises:
            ConflictError: ``ORDER_MODIFIED`` if the stored order moved on.
        """
        expected = OrderVersion.of(order)
        order.refund = RefundInfo(amount, reason, RefundStatus.REFUNDED, self.clock(), ref_id)
        if order.status != OrderStatus.REFUNDED:
            self._transition(order, OrderStatus.REFUNDED, expected)
        else:
            with self.atomic():
                self.save_checked(order, expected)
        return order

    # ---- invoice ----
    def issue_invoice(self, order_id: uuid.UUID, user_id: Optional[int] = None) -> Invoice:
        """Return the order's invoice, issuing it first if the order has none."""
        order = self.get(order_id, user_id)
        if order.invoice is None:
            with self.atomic():
                self.invoicing.generate(order)
                self.orders.save(order)
        return order.invoice
