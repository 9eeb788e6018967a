"""Payment reconciliation between orders and the payment gateway.

``PaymentService`` opens gateway payment attempts, reconciles the gateway
callback with the order, pays orders from the customer wallet and processes
refunds. Order state changes go through ``OrderLifecycle``; this service adds
the payment-side bookkeeping: wallet ledger, loyalty points and clearing the
cart.

Callback verification tolerates duplicate delivery. Stock is committed before
the gateway is asked to verify so a verified payment always has its goods;
if verification fails the stock is given back, and of two racing callbacks
only the one that flips the paid flag keeps its stock.
"""

import contextlib
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from apps.orders.domain import (
    CartStore,
    CustomerStore,
    Order,
    OrderStatus,
    OrderVersion,
    PaymentGatewayPort,
    PaymentMethod,
    PaymentRequest,
    RefundInfo,
    RefundStatus,
)
from apps.orders.errors import ConflictError, GatewayError, NotFoundError, OutOfStock, ValidationError
from apps.orders.lifecycle import OrderLifecycle

logger = logging.getLogger(__name__)

CALLBACK_OK = "OK"
WALLET_REFUND_REF = "wallet"


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of a gateway callback.

    Attributes:
        outcome: ``success``, ``cancel`` or ``failed``.
        order_id: The order the callback was for.
        ref_id: Gateway reference id on success.
        message: Failure message for the customer.
    """

    outcome: str
    order_id: uuid.UUID
    ref_id: Optional[str] = None
    message: str = ""


class PaymentService:
    """Reconciles payments with orders.

    Args:
        lifecycle: Order lifecycle service (also gives access to the order
            store and the inventory adjuster).
        gateway: Payment gateway.
        customers: User store.
        carts: Cart store, cleared after a successful payment.
        atomic: Context manager factory delimiting one database transaction.
        loyalty_unit: Amount that earns one loyalty point.
    """

    def __init__(
        self,
        *,
        lifecycle: OrderLifecycle,
        gateway: PaymentGatewayPort,
        customers: CustomerStore,
        carts: CartStore,
        atomic: Callable[[], contextlib.AbstractContextManager] = contextlib.nullcontext,
        loyalty_unit: int = 10000,
    ):
        self.lifecycle = lifecycle
        self.gateway = gateway
        self.customers = customers
        self.carts = carts
        self.atomic = atomic
        self.loyalty_unit = loyalty_unit

    @property
    def inventory(self):
        return self.lifecycle.inventory

    @staticmethod
    def _label(order: Order) -> str:
        return order.invoice.number if order.invoice else str(order.id)

    def _ensure_payable(self, order: Order) -> None:
        if order.is_paid:
            raise ConflictError("order is already paid", code="ORDER_ALREADY_PAID")
        if order.status != OrderStatus.PENDING_PAYMENT:
            raise ConflictError(f"order is {order.status.value}", code="ORDER_NOT_PAYABLE")

    def request_payment(self, order_id: uuid.UUID, user_id: int) -> PaymentRequest:
        """Open a gateway payment attempt for the user's unpaid order.

        The authority is stored on the order so the callback can be matched.

        Raises:
            NotFoundError: Unknown order or owned by someone else.
            ConflictError: Already paid or not awaiting payment.
            GatewayError: The gateway refused the request.
        """
        order = self.lifecycle.get(order_id, user_id)
        self._ensure_payable(order)
        contact = self.customers.contact(user_id)
        request = self.gateway.create_payment_request(
            order.totals.total,
            f"Payment for order {self._label(order)}",
            contact.email,
            contact.mobile or order.shipping_address.phone,
            order.id,
        )
        self.lifecycle.orders.set_authority(order.id, request.authority)
        logger.info(
            "payment requested",
            extra={"order_id": str(order.id), "authority": request.authority, "amount": order.totals.total},
        )
        return request

    def verify_callback(self, order_id: uuid.UUID, authority: str, status: str) -> VerifyResult:
        """Reconcile a gateway callback with its order.

        - already paid: success, nothing changes;
        - status other than ``OK``: the customer cancelled, the order stays
          ``pendingPayment`` and nothing changes;
        - otherwise stock is committed, the gateway verifies the payment and
          the order is marked paid. A gateway failure gives the stock back
          and leaves the order as it was.

        Returns:
            VerifyResult: What to tell the customer.
        """
        try:
            order = self.lifecycle.get(order_id)
        except NotFoundError as e:
            return VerifyResult("failed", order_id, message=e.message)

        if order.is_paid:
            return VerifyResult("success", order.id, ref_id=order.ref_id)
        if status != CALLBACK_OK:
            logger.info("payment cancelled by customer", extra={"order_id": str(order.id), "authority": authority})
            return VerifyResult("cancel", order.id)
        if order.authority and authority != order.authority:
            return VerifyResult("failed", order.id, message="payment authority does not match the order")
        if order.status != OrderStatus.PENDING_PAYMENT:
            return VerifyResult("failed", order.id, message=f"order is {order.status.value}")

        try:
            committed = self.inventory.commit(order)
        except OutOfStock as e:
            return VerifyResult("failed", order.id, message=e.message)

        try:
            ref_id = self.gateway.verify(authority, order.totals.total)
        except GatewayError as e:
            if committed:
                self.inventory.revert(order)
            logger.warning("payment verification failed", extra={"order_id": str(order.id), "status": e.status})
            return VerifyResult("failed", order.id, message=e.message)
        except (httpx.HTTPError, RuntimeError):
            if committed:
                self.inventory.revert(order)
            logger.exception("payment gateway unavailable", extra={"order_id": str(order.id)})
            return VerifyResult("failed", order.id, message="payment gateway unavailable")

        try:
            with self.atomic():
                won = self.lifecycle.confirm_payment(order, ref_id=ref_id, transaction_id=authority)
                if won:
                    self._after_payment(order)
        except Exception:
            if committed:
                self.inventory.revert(order)
            raise

        if not won:
            # A concurrent callback got there first and holds its own stock.
            if committed:
                self.inventory.revert(order)
            current = self.lifecycle.get(order_id)
            return VerifyResult("success", order.id, ref_id=current.ref_id)
        return VerifyResult("success", order.id, ref_id=ref_id)

    def pay_with_wallet(self, order_id: uuid.UUID, user_id: int) -> Order:
        """Pay the user's order from their wallet balance.

        Raises:
            NotFoundError: Unknown order or owned by someone else.
            ConflictError: Already paid, not payable, or insufficient balance.
            OutOfStock: Stock for the order is no longer available.
        """
        order = self.lifecycle.get(order_id, user_id)
        self._ensure_payable(order)
        order.payment_method = PaymentMethod.WALLET
        self.inventory.commit(order)
        try:
            with self.atomic():
                if not self.customers.debit_wallet(
                    user_id, order.totals.total, f"Payment for order {self._label(order)}", order.id
                ):
                    raise ConflictError("insufficient wallet balance", code="INSUFFICIENT_WALLET_BALANCE")
                if not self.lifecycle.confirm_payment(order, transaction_id=f"WALLET-{order.id.hex[:12]}"):
                    raise ConflictError("order is already paid", code="ORDER_ALREADY_PAID")
                self._after_payment(order)
        except Exception:
            self.inventory.revert(order)
            raise
        return order

    def _after_payment(self, order: Order) -> None:
        if order.payment_method != PaymentMethod.WALLET:
            self.customers.append_ledger(
                order.user_id, -order.totals.total, "purchase", f"Payment for order {self._label(order)}", order.id
            )
        self.customers.add_loyalty(order.user_id, order.totals.total // self.loyalty_unit)
        self.carts.clear(order.user_id)

    def refund(self, order_id: uuid.UUID, amount: Optional[int] = None, reason: str = "") -> Order:
        """Refund a paid order, in full unless ``amount`` is given.

        Gateway payments are refunded through the gateway; wallet payments
        are credited back to the wallet. The refund is claimed on the order
        before any money moves and the gateway reference is stored as soon
        as it is known, so a call that fails afterwards (stock store or
        database down) can be repeated: it books the refund without asking
        the gateway again.

        Raises:
            NotFoundError: Unknown order.
            ConflictError: Not paid, already refunded, or a refund is in
                flight with no gateway answer recorded yet.
            ValidationError: Amount out of range.
            GatewayError: The gateway refused the refund.
        """
        order = self.lifecycle.get(order_id)
        if not order.is_paid:
            raise ConflictError("order is not paid", code="ORDER_NOT_PAID")
        claimed = order.refund if order.refund and order.refund.status == RefundStatus.APPROVED else None
        if claimed is None:
            if order.refund and order.refund.status == RefundStatus.REFUNDED:
                raise ConflictError("order is already refunded", code="ALREADY_REFUNDED")
            amount = order.totals.total if amount is None else amount
            if amount <= 0 or amount > order.totals.total:
                raise ValidationError("refund amount out of range", code="INVALID_REFUND_AMOUNT")
            self._send_refund(order, amount, reason)
        elif claimed.ref_id is None:
            raise ConflictError("a refund for this order is in progress", code="REFUND_IN_PROGRESS")
        else:
            logger.info("resuming refund", extra={"order_id": str(order.id), "ref_id": claimed.ref_id})

        refund = order.refund
        description = f"Refund for order {self._label(order)}"
        with self.atomic():
            if order.payment_method == PaymentMethod.WALLET:
                self.customers.credit_wallet(order.user_id, refund.amount, "refund", description, order.id)
            else:
                self.customers.append_ledger(order.user_id, refund.amount, "refund", description, order.id)
            self.lifecycle.refund(order, refund.amount, refund.reason, refund.ref_id)
        logger.info(
            "order refunded", extra={"order_id": str(order.id), "amount": refund.amount, "ref_id": refund.ref_id}
        )
        return order

    def _send_refund(self, order: Order, amount: int, reason: str) -> None:
        # Claim first: a concurrent or repeated call sees the approved refund.
        previous = order.refund
        expected = OrderVersion.of(order)
        order.refund = RefundInfo(amount, reason, RefundStatus.APPROVED, self.lifecycle.clock())
        try:
            with self.atomic():
                self.lifecycle.save_checked(order, expected)
        except ConflictError:
            order.refund = previous
            raise
        claimed = OrderVersion.of(order)

        if order.payment_method == PaymentMethod.WALLET:
            ref_id = WALLET_REFUND_REF
        else:
            try:
                ref_id = self.gateway.refund(order.authority, amount)
            except GatewayError:
                order.refund = previous
                with self.atomic():
                    self.lifecycle.save_checked(order, claimed)
                raise
            logger.info("gateway refund sent", extra={"order_id": str(order.id), "ref_id": ref_id, "amount": amount})

        order.refund.ref_id = ref_id
        with self.atomic():
            self.lifecycle.save_checked(order, claimed)

    def unverified(self) -> list:
        return self.gateway.list_unverified()
