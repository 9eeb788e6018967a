"""Repository layer persisting orders, carts, coupons and invoice counters.

The stores here implement the domain ports on top of the Django ORM. Domain
objects are mapped to rows field by field; nothing from a request payload is
written without passing through a domain object first. The operations that
must hold under concurrency (coupon redemption, the paid flag, invoice
sequence allocation) are single conditional UPDATE statements or run under a
row lock.
"""

import logging
import uuid
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from django.db import transaction
from django.db.models import F, Q
from django.utils.dateparse import parse_datetime

from .domain import (
    Cart,
    CartLine,
    Coupon,
    CouponSnapshot,
    DiscountType,
    ErpSyncState,
    Invoice,
    InvoiceLine,
    Order,
    OrderItem,
    OrderStatus,
    OrderVersion,
    PaymentMethod,
    RefundInfo,
    RefundStatus,
    ShippingAddress,
    ShippingMethod,
    SyncStatus,
    Totals,
)
from .errors import ConflictError
from .invoicing import invoice_prefix, parse_invoice_number
from .models import CartItem, CartModel, CouponModel, CouponRedemption, InvoiceCounter, OrderModel

logger = logging.getLogger(__name__)


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return parse_datetime(value) if value else None


# ---- Order mapping ----
def invoice_to_json(invoice: Optional[Invoice]) -> Optional[dict]:
    if invoice is None:
        return None
    return {
        "number": invoice.number,
        "issued_at": _dt(invoice.issued_at),
        "tax_rate": invoice.tax_rate,
        "tax_amount": invoice.tax_amount,
        "lines": [asdict(line) for line in invoice.lines],
    }


def invoice_from_json(data: Optional[dict]) -> Optional[Invoice]:
    if not data:
        return None
    return Invoice(
        number=data["number"],
        issued_at=_parse_dt(data["issued_at"]),
        tax_rate=data["tax_rate"],
        tax_amount=data["tax_amount"],
        lines=tuple(InvoiceLine(**line) for line in data.get("lines", [])),
    )


def order_from_row(o: OrderModel) -> Order:
    """Build a domain ``Order`` from its row."""
    coupon = None
    if o.coupon_used:
        coupon = CouponSnapshot(
            code=o.coupon_used["code"],
            discount_type=DiscountType(o.coupon_used["discount_type"]),
            discount_amount=o.coupon_used["discount_amount"],
        )
    refund = None
    if o.refund_info:
        refund = RefundInfo(
            amount=o.refund_info["amount"],
            reason=o.refund_info.get("reason", ""),
            status=RefundStatus(o.refund_info["status"]),
            date=_parse_dt(o.refund_info.get("date")),
            ref_id=o.refund_info.get("ref_id"),
        )
    return Order(
        id=o.id,
        user_id=o.user_id,
        items=[OrderItem(**i) for i in o.items],
        totals=Totals(
            subtotal=o.items_price,
            shipping=o.shipping_price,
            tax=o.tax_price,
            discount=o.discount,
            total=o.total_price,
        ),
        shipping_address=ShippingAddress(**o.shipping_address),
        shipping_method=ShippingMethod(o.shipping_method),
        payment_method=PaymentMethod(o.payment_method),
        status=OrderStatus(o.status),
        is_paid=o.is_paid,
        paid_at=o.paid_at,
        authority=o.authority or None,
        ref_id=o.ref_id or None,
        transaction_id=o.transaction_id or None,
        coupon=coupon,
        invoice=invoice_from_json(o.invoice),
        erp=ErpSyncState(
            status=SyncStatus(o.erp_sync_status),
            error=o.erp_sync_error,
            invoice_id=o.erp_invoice_id or None,
            synced_at=o.erp_synced_at,
            attempts=o.erp_sync_attempts,
        ),
        refund=refund,
        is_shipped=o.is_shipped,
        shipped_at=o.shipped_at,
        is_delivered=o.is_delivered,
        delivered_at=o.delivered_at,
        tracking_code=o.tracking_code,
        notes=o.notes,
        stock_committed=o.stock_committed,
        created_at=o.created_at,
    )


def _write_order(obj: OrderModel, order: Order) -> None:
    obj.user_id = order.user_id
    obj.status = order.status.value
    obj.payment_method = order.payment_method.value
    obj.shipping_method = order.shipping_method.value
    obj.items = [asdict(i) for i in order.items]
    obj.shipping_address = asdict(order.shipping_address)
    obj.total_items = order.item_count
    obj.items_price = order.totals.subtotal
    obj.shipping_price = order.totals.shipping
    obj.tax_price = order.totals.tax
    obj.discount = order.totals.discount
    obj.total_price = order.totals.total
    obj.coupon_used = (
        {
            "code": order.coupon.code,
            "discount_type": order.coupon.discount_type.value,
            "discount_amount": order.coupon.discount_amount,
        }
        if order.coupon
        else None
    )
    obj.is_paid = order.is_paid
    obj.paid_at = order.paid_at
    obj.authority = order.authority or ""
    obj.ref_id = order.ref_id or ""
    obj.transaction_id = order.transaction_id or ""
    obj.stock_committed = order.stock_committed
    obj.is_shipped = order.is_shipped
    obj.shipped_at = order.shipped_at
    obj.is_delivered = order.is_delivered
    obj.delivered_at = order.delivered_at
    obj.tracking_code = order.tracking_code
    obj.notes = order.notes
    obj.invoice_number = order.invoice.number if order.invoice else None
    obj.invoice = invoice_to_json(order.invoice)
    obj.refund_info = (
        {
            "amount": order.refund.amount,
            "reason": order.refund.reason,
            "status": order.refund.status.value,
            "date": _dt(order.refund.date),
            "ref_id": order.refund.ref_id,
        }
        if order.refund
        else None
    )
    obj.created_at = order.created_at


def _version(o: OrderModel) -> OrderVersion:
    refund = o.refund_info or {}
    return OrderVersion(
        OrderStatus(o.status),
        o.is_paid,
        o.stock_committed,
        RefundStatus(refund["status"]) if refund.get("status") else None,
    )


class OrderRepository:
    """``OrderStore`` backed by ``OrderModel``.

    ERP sync fields are owned by the sync service and written only through
    ``record_sync``; ``save`` leaves them alone so a status update never
    overwrites a sync result recorded in between.
    """

    def add(self, order: Order) -> None:
        obj = OrderModel(id=order.id)
        _write_order(obj, order)
        obj.save(force_insert=True)

    def get(self, order_id: uuid.UUID) -> Optional[Order]:
        try:
            return order_from_row(OrderModel.objects.get(id=order_id))
        except OrderModel.DoesNotExist:
            return None

    @transaction.atomic
    def save(self, order: Order, expected: Optional[OrderVersion] = None) -> bool:
        obj = OrderModel.objects.select_for_update().get(id=order.id)
        if expected is not None and _version(obj) != expected:
            return False
        _write_order(obj, order)
        obj.save()
        return True

    def mark_paid(self, order_id: uuid.UUID, paid_at: datetime, ref_id: Optional[str]) -> bool:
        updated = OrderModel.objects.filter(id=order_id, is_paid=False).update(
            is_paid=True, paid_at=paid_at, ref_id=ref_id or ""
        )
        return updated == 1

    def set_authority(self, order_id: uuid.UUID, authority: str) -> None:
        OrderModel.objects.filter(id=order_id).update(authority=authority)

    def record_sync(self, order_id: uuid.UUID, state: ErpSyncState) -> None:
        OrderModel.objects.filter(id=order_id).update(
            erp_sync_status=state.status.value,
            erp_sync_error=state.error,
            erp_invoice_id=state.invoice_id or "",
            erp_synced_at=state.synced_at,
            erp_sync_attempts=state.attempts,
        )

    def pending_sync(self, limit: int, max_attempts: int) -> List[Order]:
        qs = (
            OrderModel.objects.filter(Q(is_paid=True) | Q(payment_method=PaymentMethod.COD.value))
            .exclude(erp_sync_status=SyncStatus.SUCCESS.value)
            .filter(erp_sync_attempts__lt=max_attempts)
            .order_by("created_at")[:limit]
        )
        return [order_from_row(o) for o in qs]


# ---- Carts ----
class CartRepository:
    """``CartStore`` backed by ``CartModel``; carts are created lazily."""

    def _cart(self, user_id: int) -> CartModel:
        cart, _ = CartModel.objects.get_or_create(user_id=user_id)
        return cart

    def get(self, user_id: int) -> Cart:
        cart = self._cart(user_id)
        return Cart(
            user_id=user_id,
            lines=[
                CartLine(sku=i.sku, quantity=i.quantity, price=i.price, variant=i.variant or None)
                for i in cart.items.all()
            ],
            coupon_code=cart.coupon_code or None,
            coupon_discount=cart.coupon_discount,
        )

    def clear(self, user_id: int) -> None:
        cart = self._cart(user_id)
        cart.items.all().delete()
        cart.coupon_code = ""
        cart.coupon_discount = 0
        cart.save(update_fields=["coupon_code", "coupon_discount", "updated_at"])

    @transaction.atomic
    def add_item(self, user_id: int, sku: str, quantity: int, price: int, variant: Optional[str] = None) -> Cart:
        """Add units of a product, merging with an existing line for the same variant.

        The line price is refreshed to ``price`` (captured at add time).
        """
        cart = CartModel.objects.select_for_update().get(pk=self._cart(user_id).pk)
        item, created = CartItem.objects.get_or_create(
            cart=cart, sku=sku, variant=variant or "", defaults={"quantity": quantity, "price": price}
        )
        if not created:
            item.quantity = item.quantity + quantity
            item.price = price
            item.save(update_fields=["quantity", "price"])
        return self.get(user_id)

    def set_quantity(self, user_id: int, sku: str, quantity: int, price: int) -> bool:
        updated = CartItem.objects.filter(cart__user_id=user_id, sku=sku).update(quantity=quantity, price=price)
        return updated > 0

    def remove_item(self, user_id: int, sku: str) -> bool:
        deleted, _ = CartItem.objects.filter(cart__user_id=user_id, sku=sku).delete()
        return deleted > 0

    def set_coupon(self, user_id: int, code: Optional[str], discount: int = 0) -> None:
        cart = self._cart(user_id)
        cart.coupon_code = code or ""
        cart.coupon_discount = discount
        cart.save(update_fields=["coupon_code", "coupon_discount", "updated_at"])


# ---- Coupons ----
def coupon_from_row(c: CouponModel) -> Coupon:
    return Coupon(
        code=c.code,
        discount_type=DiscountType(c.discount_type),
        value=Decimal(c.value),
        max_discount=c.max_discount,
        min_purchase=c.min_purchase,
        starts_at=c.starts_at,
        ends_at=c.ends_at,
        is_permanent=c.is_permanent,
        usage_limit=c.usage_limit,
        used_count=c.used_count,
        user_usage_limit=c.user_usage_limit,
        is_active=c.is_active,
        description=c.description,
    )


class CouponRepository:
    """``CouponStore`` backed by ``CouponModel`` and ``CouponRedemption``."""

    def get(self, code: str) -> Optional[Coupon]:
        c = CouponModel.objects.filter(code=code.upper()).first()
        return coupon_from_row(c) if c else None

    def user_redemptions(self, code: str, user_id: int) -> int:
        return CouponRedemption.objects.filter(coupon__code=code.upper(), user_id=user_id).count()

    def redeem(self, code: str, user_id: int, order_id: uuid.UUID) -> bool:
        """Record a redemption if both limits still allow it.

        The coupon row is locked for the per-user count; the global counter
        is bumped with a conditional UPDATE so it can never pass
        ``usage_limit``.
        """
        with transaction.atomic():
            coupon = CouponModel.objects.select_for_update().filter(code=code.upper()).first()
            if coupon is None:
                return False
            used_by_user = CouponRedemption.objects.filter(coupon=coupon, user_id=user_id).count()
            if used_by_user >= coupon.user_usage_limit:
                return False
            bumped = (
                CouponModel.objects.filter(pk=coupon.pk)
                .filter(Q(usage_limit=0) | Q(used_count__lt=F("usage_limit")))
                .update(used_count=F("used_count") + 1)
            )
            if not bumped:
                return False
            CouponRedemption.objects.create(coupon=coupon, user_id=user_id, order_id=order_id)
        logger.info("coupon redeemed", extra={"coupon": coupon.code, "user_id": user_id, "order_id": str(order_id)})
        return True

    def create(self, coupon: Coupon, description: str = "") -> Coupon:
        obj = CouponModel.objects.create(
            code=coupon.code.upper(),
            description=description,
            discount_type=coupon.discount_type.value,
            value=coupon.value,
            max_discount=coupon.max_discount,
            min_purchase=coupon.min_purchase,
            starts_at=coupon.starts_at,
            ends_at=coupon.ends_at,
            is_permanent=coupon.is_permanent,
            usage_limit=coupon.usage_limit,
            user_usage_limit=coupon.user_usage_limit,
            is_active=coupon.is_active,
        )
        return coupon_from_row(obj)

    def update(self, code: str, changes: dict) -> Optional[Coupon]:
        """Write already validated field changes; returns None for an unknown code."""
        obj = CouponModel.objects.filter(code=code.upper()).first()
        if obj is None:
            return None
        for field, value in changes.items():
            setattr(obj, field, value)
        obj.save()
        return coupon_from_row(obj)

    def delete(self, code: str) -> bool:
        """Delete a coupon nobody has redeemed.

        Redeemed coupons are referenced by their redemption rows and orders
        keep a snapshot of them; deactivate those instead.

        Raises:
            ConflictError: The coupon has redemptions.
        """
        obj = CouponModel.objects.filter(code=code.upper()).first()
        if obj is None:
            return False
        if obj.redemptions.exists():
            raise ConflictError(f"coupon {obj.code} has been redeemed", code="COUPON_IN_USE")
        obj.delete()
        logger.info("coupon deleted", extra={"coupon": obj.code})
        return True


# ---- Invoice counter ----
class InvoiceCounterRepository:
    """``InvoiceCounterPort`` using one ``InvoiceCounter`` row per day."""

    def highest_issued(self, day: date) -> int:
        numbers = OrderModel.objects.filter(invoice_number__startswith=invoice_prefix(day)).values_list(
            "invoice_number", flat=True
        )
        parsed = [parse_invoice_number(n) for n in numbers]
        return max((p[1] for p in parsed if p), default=0)

    def next_value(self, day: date) -> int:
        with transaction.atomic():
            InvoiceCounter.objects.get_or_create(day=day, defaults={"last_value": self.highest_issued(day)})
            InvoiceCounter.objects.filter(day=day).update(last_value=F("last_value") + 1)
            return InvoiceCounter.objects.values_list("last_value", flat=True).get(day=day)
