"""Pydantic schemas for the orders, cart and coupon API.

Request schemas validate and normalize incoming payloads before anything
reaches the domain; read schemas shape domain objects into responses.
"""

import re
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .domain import Cart, DiscountType, Invoice, Order, OrderStatus, PaymentMethod, ShippingMethod

SKU_RE = re.compile(r"^[A-Z0-9_-]{3,32}$")


def normalize_sku(v: str) -> str:
    """Uppercase a SKU and check it against ``SKU_RE``.

    Raises:
        ValueError: When the SKU does not match the expected pattern.
    """
    v2 = v.strip().upper()
    if not SKU_RE.match(v2):
        raise ValueError("Invalid SKU format")
    return v2


# ---- Requests ----
class ShippingAddressIn(BaseModel):
    full_name: str = Field(default="", max_length=120)
    address: str = Field(min_length=1, max_length=500)
    postal_code: str = Field(min_length=1, max_length=20)
    phone: str = Field(default="", max_length=20)


class CreateOrderDTO(BaseModel):
    """Schema for placing an order from the user's cart.

    Attributes:
        shipping_address: Delivery address; address line and postal code required.
        payment_method: ``zarinpal`` (default), ``wallet`` or ``cod``.
        shipping_method: ``standard`` (default), ``express`` or ``pickup``.
        notes: Optional customer notes.
    """

    shipping_address: ShippingAddressIn
    payment_method: PaymentMethod = PaymentMethod.ZARINPAL
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    notes: str = Field(default="", max_length=1000)


class AddCartItemDTO(BaseModel):
    sku: str = Field(min_length=3, max_length=32)
    quantity: int = Field(default=1, gt=0, le=1000)
    variant: Optional[str] = Field(default=None, max_length=64)

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, v: str) -> str:
        return normalize_sku(v)


class ApplyCouponDTO(BaseModel):
    code: str = Field(min_length=1, max_length=32)

    @field_validator("code")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.strip().upper()


class CreateCouponDTO(BaseModel):
    """Schema for creating a coupon (admin).

    The value range per discount type is checked by
    ``coupons.validate_terms``; this schema only checks shapes and the
    validity window.
    """

    code: str = Field(min_length=3, max_length=32)
    description: str = Field(default="", max_length=255)
    discount_type: DiscountType
    value: Decimal
    max_discount: int = Field(default=0, ge=0)
    min_purchase: int = Field(default=0, ge=0)
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    is_permanent: bool = False
    usage_limit: int = Field(default=0, ge=0)
    user_usage_limit: int = Field(default=1, ge=1)
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def check_window(self):
        if self.starts_at and self.ends_at and self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be after starts_at")
        return self


class UpdateCouponDTO(BaseModel):
    """Partial coupon update (admin). The code itself cannot change.

    Omitted fields keep their value. Only the validity window can be cleared
    by sending ``null``.
    """

    description: Optional[str] = Field(default=None, max_length=255)
    discount_type: Optional[DiscountType] = None
    value: Optional[Decimal] = None
    max_discount: Optional[int] = Field(default=None, ge=0)
    min_purchase: Optional[int] = Field(default=None, ge=0)
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    is_permanent: Optional[bool] = None
    usage_limit: Optional[int] = Field(default=None, ge=0)
    user_usage_limit: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None

    def changes(self) -> dict:
        sent = self.model_dump(exclude_unset=True)
        return {k: v for k, v in sent.items() if v is not None or k in ("starts_at", "ends_at")}


class ValidateCouponDTO(BaseModel):
    """Coupon check for the current user; ``cart_total`` defaults to their cart."""

    code: str = Field(min_length=1, max_length=32)
    cart_total: Optional[int] = Field(default=None, ge=0)

    @field_validator("code")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.strip().upper()


class CouponListQuery(BaseModel):
    is_active: Optional[bool] = None
    expired: Optional[bool] = None
    search: Optional[str] = Field(default=None, max_length=32)
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class UpdateCartItemDTO(BaseModel):
    quantity: int = Field(gt=0, le=1000)


class UpdateStatusDTO(BaseModel):
    status: OrderStatus
    tracking_code: Optional[str] = Field(default=None, max_length=64)


class CancelOrderDTO(BaseModel):
    reason: str = Field(default="", max_length=500)


class OrderListQuery(BaseModel):
    """Query parameters of the admin order list."""

    status: Optional[OrderStatus] = None
    payment_method: Optional[PaymentMethod] = None
    is_paid: Optional[bool] = None
    user: Optional[int] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search: Optional[str] = Field(default=None, max_length=64)
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class PageQuery(BaseModel):
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


# ---- Responses ----
class CouponReadDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    description: str = ""
    discount_type: DiscountType
    value: Decimal
    max_discount: int
    min_purchase: int
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    is_permanent: bool
    usage_limit: int
    used_count: int
    user_usage_limit: int
    is_active: bool


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sku: str
    name: str
    price: int
    quantity: int
    variant: Optional[str] = None


class InvoiceLineOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sku: str
    quantity: int
    amount: int
    tax: int


class InvoiceReadDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    number: str
    issued_at: datetime
    tax_rate: str
    tax_amount: int
    lines: list[InvoiceLineOut]

    @classmethod
    def from_domain(cls, invoice: Invoice) -> "InvoiceReadDTO":
        return cls.model_validate(invoice)


class OrderReadDTO(BaseModel):
    id: str
    user_id: int
    status: OrderStatus
    payment_method: PaymentMethod
    shipping_method: ShippingMethod
    items: list[OrderItemOut]
    total_items: int
    shipping_address: dict
    items_price: int
    shipping_price: int
    tax_price: int
    discount: int
    total_price: int
    coupon_code: Optional[str] = None
    is_paid: bool
    paid_at: Optional[datetime] = None
    ref_id: Optional[str] = None
    is_shipped: bool
    tracking_code: str = ""
    is_delivered: bool
    invoice_number: Optional[str] = None
    erp_sync_status: str
    refund: Optional[dict] = None
    notes: str = ""
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, order: Order) -> "OrderReadDTO":
        a = order.shipping_address
        refund = order.refund
        return cls(
            id=str(order.id),
            user_id=order.user_id,
            status=order.status,
            payment_method=order.payment_method,
            shipping_method=order.shipping_method,
            items=[OrderItemOut.model_validate(i) for i in order.items],
            total_items=order.item_count,
            shipping_address={
                "full_name": a.full_name,
                "address": a.address,
                "postal_code": a.postal_code,
                "phone": a.phone,
            },
            items_price=order.totals.subtotal,
            shipping_price=order.totals.shipping,
            tax_price=order.totals.tax,
            discount=order.totals.discount,
            total_price=order.totals.total,
            coupon_code=order.coupon.code if order.coupon else None,
            is_paid=order.is_paid,
            paid_at=order.paid_at,
            ref_id=order.ref_id,
            is_shipped=order.is_shipped,
            tracking_code=order.tracking_code,
            is_delivered=order.is_delivered,
            invoice_number=order.invoice.number if order.invoice else None,
            erp_sync_status=order.erp.status.value,
            refund=(
                {"amount": refund.amount, "reason": refund.reason, "status": refund.status.value, "date": refund.date}
                if refund
                else None
            ),
            notes=order.notes,
            created_at=order.created_at,
        )


class CartLineOut(BaseModel):
    sku: str
    quantity: int
    price: int
    variant: Optional[str] = None


class CartReadDTO(BaseModel):
    items: list[CartLineOut]
    total: int
    coupon_code: Optional[str] = None
    coupon_discount: int = 0

    @classmethod
    def from_domain(cls, cart: Cart) -> "CartReadDTO":
        return cls(
            items=[CartLineOut(sku=ln.sku, quantity=ln.quantity, price=ln.price, variant=ln.variant) for ln in cart.lines],
            total=cart.total,
            coupon_code=cart.coupon_code,
            coupon_discount=cart.coupon_discount,
        )
