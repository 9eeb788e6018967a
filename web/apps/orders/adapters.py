"""In-process adapters for the orders domain ports.

``LoggingNotifier`` is the production notifier: message delivery (SMS,
e-mail, chat) is an external concern, so notifications are emitted as
structured log lines for the delivery pipeline to pick up.

The remaining classes implement the ports without any network or database
access. They are used by unit tests and by local development when
``USE_HTTP_ADAPTERS`` is off. The stores guard their state with a lock so the
atomic operations (stock batch, coupon redemption, paid flag) hold under
threads the same way the real storage operations do.
"""

import copy
import dataclasses
import logging
import threading
import uuid
from datetime import date, datetime
from typing import Dict, List, Optional

from .domain import (
    Cart,
    CartLine,
    Coupon,
    CustomerContact,
    ErpSyncState,
    Order,
    OrderStatus,
    OrderVersion,
    PaymentMethod,
    PaymentRequest,
    ProductSnapshot,
    StockLine,
    SyncStatus,
)
from .errors import GatewayError, OutOfStock

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Notifier that logs events. Never raises."""

    def _emit(self, event: str, order: Order, **extra) -> None:
        logger.info(
            "notification",
            extra={"event": event, "order_id": str(order.id), "user_id": order.user_id, **extra},
        )

    def order_confirmed(self, order: Order) -> None:
        self._emit("order_confirmed", order, total=order.totals.total)

    def order_shipped(self, order: Order) -> None:
        self._emit("order_shipped", order, tracking_code=order.tracking_code)

    def status_changed(self, order: Order, previous: OrderStatus) -> None:
        self._emit("status_changed", order, previous=previous.value, status=order.status.value)


class InventoryStub:
    """In-memory stock store.

    Args:
        products: Initial products keyed by SKU.
    """

    def __init__(self, products: Optional[Dict[str, ProductSnapshot]] = None):
        self._lock = threading.Lock()
        self.products: Dict[str, ProductSnapshot] = dict(products or {})
        self.sold: Dict[str, int] = {sku: 0 for sku in self.products}
        self.categories: Dict[str, dict] = {}

    def add(self, product: ProductSnapshot) -> None:
        with self._lock:
            self.products[product.sku] = product
            self.sold.setdefault(product.sku, 0)

    def get_products(self, skus: List[str]) -> Dict[str, ProductSnapshot]:
        with self._lock:
            return {s: self.products[s] for s in skus if s in self.products}

    def reserve(self, lines: List[StockLine]) -> None:
        with self._lock:
            short = [
                ln.sku
                for ln in lines
                if ln.sku not in self.products
                or (self.products[ln.sku].track_inventory and self.products[ln.sku].stock < ln.quantity)
            ]
            if short:
                raise OutOfStock(short)
            for ln in lines:
                p = self.products[ln.sku]
                if p.track_inventory:
                    self.products[ln.sku] = _with_stock(p, p.stock - ln.quantity)
                self.sold[ln.sku] = self.sold.get(ln.sku, 0) + ln.quantity

    def release(self, lines: List[StockLine]) -> None:
        with self._lock:
            for ln in lines:
                p = self.products.get(ln.sku)
                if p is None:
                    continue
                if p.track_inventory:
                    self.products[ln.sku] = _with_stock(p, p.stock + ln.quantity)
                self.sold[ln.sku] = max(0, self.sold.get(ln.sku, 0) - ln.quantity)

    def stock(self, sku: str) -> int:
        return self.products[sku].stock

    # catalog calls used by the ERP sync
    def upsert_category(self, erp_code, name, parent_code=None, is_main=False) -> bool:
        created = erp_code not in self.categories
        self.categories[erp_code] = {"name": name, "parent_code": parent_code, "is_main": is_main}
        return created

    def category_exists(self, erp_code) -> bool:
        return erp_code in self.categories

    def upsert_erp_product(self, erp_code, fields, update_all=False) -> str:
        with self._lock:
            current = next((p for p in self.products.values() if p.erp_code == erp_code), None)
            if current is None:
                sku = f"ERP-{erp_code}".upper()
                self.products[sku] = ProductSnapshot(
                    sku=sku,
                    name=fields.get("name", ""),
                    price=int(fields.get("price", 0)),
                    stock=int(fields.get("stock", 0)),
                    erp_code=erp_code,
                    erp_item_code=fields.get("erp_item_code"),
                )
                self.sold.setdefault(sku, 0)
                return "created"
            if not update_all and current.stock == fields.get("stock") and current.price == fields.get("price"):
                return "skipped"
            self.products[current.sku] = ProductSnapshot(
                sku=current.sku,
                name=current.name,
                price=int(fields.get("price", current.price)),
                stock=int(fields.get("stock", current.stock)),
                discount_price=current.discount_price,
                track_inventory=current.track_inventory,
                erp_code=erp_code,
                erp_item_code=current.erp_item_code,
            )
            return "updated"

    def set_stock_by_erp_code(self, erp_code, stock) -> Optional[str]:
        with self._lock:
            current = next((p for p in self.products.values() if p.erp_code == erp_code), None)
            if current is None:
                return None
            self.products[current.sku] = _with_stock(current, max(0, int(stock)))
            return current.sku

    def health(self) -> bool:
        return True


def _with_stock(p: ProductSnapshot, stock: int) -> ProductSnapshot:
    return ProductSnapshot(
        sku=p.sku,
        name=p.name,
        price=p.price,
        stock=stock,
        discount_price=p.discount_price,
        track_inventory=p.track_inventory,
        erp_code=p.erp_code,
        erp_item_code=p.erp_item_code,
    )


class GatewayStub:
    """Payment gateway that approves everything unless told otherwise.

    Attributes:
        fail_verify: When set, ``verify`` raises ``GatewayError`` with this message.
        verified: Authorities verified so far, in call order.
    """

    def __init__(self):
        self.fail_verify: Optional[str] = None
        self.fail_refund: Optional[str] = None
        self.requests: List[dict] = []
        self.verified: List[str] = []
        self.refunds: List[tuple] = []

    def create_payment_request(self, amount, description, email, mobile, order_id) -> PaymentRequest:
        authority = f"A{uuid.uuid4().hex[:35]}"
        self.requests.append({"amount": amount, "order_id": str(order_id), "authority": authority})
        return PaymentRequest(authority=authority, redirect_url=f"https://sandbox.zarinpal.com/pg/StartPay/{authority}")

    def verify(self, authority: str, amount: int) -> str:
        if self.fail_verify:
            raise GatewayError(self.fail_verify, status=-21)
        self.verified.append(authority)
        return str(100000 + len(self.verified))

    def refund(self, authority: str, amount: int) -> str:
        if self.fail_refund:
            raise GatewayError(self.fail_refund)
        self.refunds.append((authority, amount))
        return f"R{len(self.refunds)}"

    def list_unverified(self) -> list:
        done = set(self.verified)
        return [r for r in self.requests if r["authority"] not in done]


class RecordingErpScheduler:
    """ERP scheduler that only records which orders were queued."""

    def __init__(self):
        self.scheduled: List[uuid.UUID] = []

    def schedule_invoice_sync(self, order_id: uuid.UUID) -> None:
        self.scheduled.append(order_id)


class InMemoryOrderStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._orders: Dict[uuid.UUID, Order] = {}

    def add(self, order: Order) -> None:
        with self._lock:
            self._orders[order.id] = copy.deepcopy(order)

    def get(self, order_id: uuid.UUID) -> Optional[Order]:
        with self._lock:
            o = self._orders.get(order_id)
            return copy.deepcopy(o) if o else None

    def save(self, order: Order, expected: Optional[OrderVersion] = None) -> bool:
        with self._lock:
            current = self._orders[order.id]
            if expected is not None and OrderVersion.of(current) != expected:
                return False
            stored = copy.deepcopy(order)
            stored.erp = current.erp
            self._orders[order.id] = stored
            return True

    def mark_paid(self, order_id: uuid.UUID, paid_at: datetime, ref_id: Optional[str]) -> bool:
        with self._lock:
            o = self._orders[order_id]
            if o.is_paid:
                return False
            o.is_paid = True
            o.paid_at = paid_at
            o.ref_id = ref_id
            return True

    def set_authority(self, order_id: uuid.UUID, authority: str) -> None:
        with self._lock:
            self._orders[order_id].authority = authority

    def record_sync(self, order_id: uuid.UUID, state: ErpSyncState) -> None:
        with self._lock:
            self._orders[order_id].erp = copy.deepcopy(state)

    def pending_sync(self, limit: int, max_attempts: int) -> List[Order]:
        with self._lock:
            found = [
                copy.deepcopy(o)
                for o in self._orders.values()
                if (o.is_paid or o.payment_method == PaymentMethod.COD)
                and o.erp.status != SyncStatus.SUCCESS
                and o.erp.attempts < max_attempts
            ]
        return found[:limit]


class InMemoryCartStore:
    def __init__(self):
        self._carts: Dict[int, Cart] = {}

    def get(self, user_id: int) -> Cart:
        return copy.deepcopy(self._carts.setdefault(user_id, Cart(user_id=user_id)))

    def clear(self, user_id: int) -> None:
        self._carts[user_id] = Cart(user_id=user_id)

    def add_item(self, user_id: int, sku: str, quantity: int, price: int, variant: Optional[str] = None) -> Cart:
        cart = self._carts.setdefault(user_id, Cart(user_id=user_id))
        cart.lines.append(CartLine(sku=sku, quantity=quantity, price=price, variant=variant))
        return copy.deepcopy(cart)

    def set_quantity(self, user_id: int, sku: str, quantity: int, price: int) -> bool:
        cart = self._carts.setdefault(user_id, Cart(user_id=user_id))
        found = any(line.sku == sku for line in cart.lines)
        cart.lines = [
            dataclasses.replace(line, quantity=quantity, price=price) if line.sku == sku else line
            for line in cart.lines
        ]
        return found

    def remove_item(self, user_id: int, sku: str) -> bool:
        cart = self._carts.setdefault(user_id, Cart(user_id=user_id))
        kept = [line for line in cart.lines if line.sku != sku]
        removed = len(kept) != len(cart.lines)
        cart.lines = kept
        return removed

    def set_coupon(self, user_id: int, code: Optional[str], discount: int = 0) -> None:
        cart = self._carts.setdefault(user_id, Cart(user_id=user_id))
        cart.coupon_code = code
        cart.coupon_discount = discount


class InMemoryCouponStore:
    def __init__(self, coupons: Optional[List[Coupon]] = None):
        self._lock = threading.Lock()
        self._coupons: Dict[str, Coupon] = {c.code.upper(): c for c in coupons or []}
        self._redemptions: List[tuple] = []

    def add(self, coupon: Coupon) -> None:
        with self._lock:
            self._coupons[coupon.code.upper()] = coupon

    def get(self, code: str) -> Optional[Coupon]:
        with self._lock:
            c = self._coupons.get(code.upper())
            return copy.deepcopy(c) if c else None

    def user_redemptions(self, code: str, user_id: int) -> int:
        with self._lock:
            return sum(1 for c, u, _ in self._redemptions if c == code.upper() and u == user_id)

    def redeem(self, code: str, user_id: int, order_id: uuid.UUID) -> bool:
        key = code.upper()
        with self._lock:
            c = self._coupons.get(key)
            if c is None:
                return False
            if c.usage_limit and c.used_count >= c.usage_limit:
                return False
            if sum(1 for cc, u, _ in self._redemptions if cc == key and u == user_id) >= c.user_usage_limit:
                return False
            c.used_count += 1
            self._redemptions.append((key, user_id, order_id))
            return True


class InMemoryInvoiceCounter:
    def __init__(self):
        self._lock = threading.Lock()
        self._values: Dict[date, int] = {}

    def next_value(self, day: date) -> int:
        with self._lock:
            self._values[day] = self._values.get(day, 0) + 1
            return self._values[day]


class InMemoryCustomerStore:
    """User store with wallet balances, a ledger and loyalty points."""

    def __init__(self):
        self._lock = threading.Lock()
        self.contacts: Dict[int, CustomerContact] = {}
        self.balances: Dict[int, int] = {}
        self.points: Dict[int, int] = {}
        self.ledger: List[dict] = []

    def contact(self, user_id: int) -> CustomerContact:
        return self.contacts.get(user_id, CustomerContact())

    def append_ledger(self, user_id, amount, kind, description, order_id=None) -> None:
        with self._lock:
            self.ledger.append(
                {"user_id": user_id, "amount": amount, "type": kind, "description": description, "order_id": order_id}
            )

    def debit_wallet(self, user_id, amount, description, order_id=None) -> bool:
        with self._lock:
            if self.balances.get(user_id, 0) < amount:
                return False
            self.balances[user_id] = self.balances.get(user_id, 0) - amount
            self.ledger.append(
                {"user_id": user_id, "amount": -amount, "type": "purchase", "description": description, "order_id": order_id}
            )
            return True

    def credit_wallet(self, user_id, amount, kind, description, order_id=None) -> None:
        with self._lock:
            self.balances[user_id] = self.balances.get(user_id, 0) + amount
            self.ledger.append(
                {"user_id": user_id, "amount": amount, "type": kind, "description": description, "order_id": order_id}
            )

    def add_loyalty(self, user_id: int, points: int) -> None:
        with self._lock:
            self.points[user_id] = self.points.get(user_id, 0) + points
